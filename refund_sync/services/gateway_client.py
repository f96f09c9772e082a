"""
支付网关客户端：使用 MD5 签名调用网关的订单查询与退款接口。

主要功能：
- query_status: 查询订单在网关侧是否已退款
- issue_refund: 发起退款
- 所有网络异常都包装为 GatewayError 子类，挂在返回结果上而不是向外抛出
"""

import json
import logging
import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import httpx

from refund_sync.services.sign import sign_params

logger = logging.getLogger(__name__)

DEFAULT_QUERY_URL = "https://zpayz.cn/api.php?act=query"
DEFAULT_REFUND_URL = "https://zpayz.cn/api.php?act=refund"
DEFAULT_TIMEOUT = 10.0
MIN_TIMEOUT = 10.0
MAX_TIMEOUT = 15.0

# 精确状态字段：出现时直接决定结果，优先于文本匹配
_REFUND_STATUS_FIELDS = {
    "trade_status": {"TRADE_REFUND", "TRADE_REFUNDED"},
    "refund_status": {"success", "refunded"},
    "status": {"refunded"},
}

# 文本退款标识，同时在原始响应文本和结构化响应中匹配
_REFUND_MARKERS = ("已全额退款", "退款成功", "refunded", "refund_success")

# 业务失败时，msg 含这些字样视为签名/凭证问题，而不是"未退款"
_AUTH_FAILURE_MARKERS = ("签名", "sign", "商户", "密钥", "pid")


# ── 异常 ──────────────────────────────────────────────────


class GatewayError(Exception):
    """网关调用异常基类。"""

    code = "GATEWAY_ERROR"

    def __init__(self, message: str, raw_text: str | None = None):
        super().__init__(message)
        self.raw_text = raw_text


class GatewayTimeout(GatewayError):
    """请求超时。"""

    code = "GATEWAY_TIMEOUT"


class GatewayUnreachable(GatewayError):
    """网络不可达、连接被拒绝等。"""

    code = "GATEWAY_UNREACHABLE"


class GatewayMalformedResponse(GatewayError):
    """响应不是 JSON 对象。"""

    code = "GATEWAY_MALFORMED_RESPONSE"


class SignatureOrTransportError(GatewayError):
    """凭证缺失、签名被拒或 HTTP 状态码异常。"""

    code = "SIGNATURE_OR_TRANSPORT_ERROR"


# ── 配置与结果 ────────────────────────────────────────────


@dataclass
class GatewayConfig:
    """网关凭证与连接参数，构造 GatewayClient 时显式注入。"""

    pid: str
    key: str = field(repr=False)
    query_url: str = DEFAULT_QUERY_URL
    refund_url: str = DEFAULT_REFUND_URL
    timeout: float = DEFAULT_TIMEOUT

    def __post_init__(self):
        timeout = float(self.timeout)
        if timeout < MIN_TIMEOUT or timeout > MAX_TIMEOUT:
            clamped = min(max(timeout, MIN_TIMEOUT), MAX_TIMEOUT)
            logger.warning("网关超时 %.1fs 超出允许范围，已调整为 %.1fs", timeout, clamped)
            timeout = clamped
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.pid) and bool(self.key)

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """从环境变量读取网关配置。"""
        return cls(
            pid=os.getenv("GATEWAY_PID", ""),
            key=os.getenv("GATEWAY_KEY", ""),
            query_url=os.getenv("GATEWAY_QUERY_URL", DEFAULT_QUERY_URL),
            refund_url=os.getenv("GATEWAY_REFUND_URL", DEFAULT_REFUND_URL),
            timeout=float(os.getenv("GATEWAY_TIMEOUT", str(DEFAULT_TIMEOUT))),
        )


@dataclass
class QueryResult:
    """订单状态查询结果。出错时 is_refunded 恒为 False。"""

    is_refunded: bool
    raw: Optional[dict] = None
    error: Optional[GatewayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_payload(self) -> dict:
        return _result_payload(self.raw, self.error, is_refunded=self.is_refunded)


@dataclass
class RefundCallResult:
    """退款接口调用结果。"""

    accepted: bool
    raw: Optional[dict] = None
    error: Optional[GatewayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_payload(self) -> dict:
        return _result_payload(self.raw, self.error, accepted=self.accepted)


def _result_payload(raw: dict | None, error: GatewayError | None, **flags) -> dict:
    """构造写入对账日志的网关结果快照。"""
    payload = dict(flags)
    payload["response"] = raw
    if error is not None:
        payload["error"] = error.code
        payload["error_message"] = str(error)
        if error.raw_text:
            payload["raw_text"] = error.raw_text[:500]
    return payload


# ── 响应分析 ──────────────────────────────────────────────


def _status_field_verdict(payload: dict) -> bool | None:
    """
    检查精确状态字段（含一层嵌套 data）。

    Returns:
        True/False 由状态字段决定；None 表示没有可判定的状态字段。
    """
    candidates = [payload]
    nested = payload.get("data")
    if isinstance(nested, dict):
        candidates.append(nested)

    verdict = None
    for item in candidates:
        for name, refunded_values in _REFUND_STATUS_FIELDS.items():
            value = item.get(name)
            # 数字状态（如 status=1 表示已支付）不参与判定
            if not isinstance(value, str) or not value or value.isdigit():
                continue
            if value in refunded_values:
                return True
            verdict = False
    return verdict


def is_refunded_response(payload: dict, text: str) -> bool:
    """根据结构化响应和原始文本判断订单是否已退款。"""
    verdict = _status_field_verdict(payload)
    if verdict is not None:
        return verdict

    haystacks = (
        text.lower(),
        json.dumps(payload, ensure_ascii=False).lower(),
    )
    return any(marker in hay for marker in _REFUND_MARKERS for hay in haystacks)


def _check_business_auth_failure(payload: dict) -> None:
    """业务失败且提示签名/商户问题时抛出 SignatureOrTransportError。"""
    code = payload.get("code")
    if code is None or str(code) == "1":
        return
    msg = str(payload.get("msg", ""))
    lowered = msg.lower()
    if any(marker in lowered for marker in _AUTH_FAILURE_MARKERS):
        raise SignatureOrTransportError(f"网关拒绝请求: [{code}] {msg}")


# ── 客户端 ────────────────────────────────────────────────


class GatewayClient:
    """支付网关 API 客户端。唯一与外部系统通信的组件。"""

    USER_AGENT = "refund-sync/1.0"

    def __init__(self, config: GatewayConfig):
        self.config = config

    def _post(self, url: str, params: dict) -> tuple[dict, str]:
        """
        以表单 POST 发送请求，返回 (JSON 对象, 原始文本)。

        Raises:
            GatewayError 的各个子类。
        """
        if not self.config.is_configured:
            raise SignatureOrTransportError("网关凭证未配置")

        try:
            with httpx.Client(timeout=self.config.timeout) as client:
                response = client.post(
                    url,
                    data=params,
                    headers={"User-Agent": self.USER_AGENT},
                )
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"请求网关超时: {e}")
        except httpx.HTTPStatusError as e:
            raise SignatureOrTransportError(f"网关返回异常状态码: {e}")
        except httpx.HTTPError as e:
            raise GatewayUnreachable(f"请求网关失败: {e}")

        text = response.text or ""
        try:
            data = response.json()
        except (json.JSONDecodeError, ValueError) as e:
            raise GatewayMalformedResponse(f"解析网关响应失败: {e}", raw_text=text)
        if not isinstance(data, dict):
            raise GatewayMalformedResponse("网关响应不是 JSON 对象", raw_text=text)
        return data, text

    def query_status(self, order_number: str) -> QueryResult:
        """
        查询订单在网关侧是否已退款。

        网络失败、超时、非 JSON 响应、签名被拒都返回 is_refunded=False 并携带 error，
        从不因错误判定为"已退款"。
        """
        params = sign_params(
            {"pid": self.config.pid, "out_trade_no": order_number},
            self.config.key,
        )
        try:
            data, text = self._post(self.config.query_url, params)
            _check_business_auth_failure(data)
        except GatewayError as e:
            logger.warning("网关订单查询失败 (order_number=%s): %s", order_number, e)
            return QueryResult(is_refunded=False, raw=None, error=e)

        refunded = is_refunded_response(data, text)
        logger.info("网关订单查询完成: order_number=%s, refunded=%s", order_number, refunded)
        return QueryResult(is_refunded=refunded, raw=data)

    def issue_refund(self, order_number: str, amount: Decimal | str) -> RefundCallResult:
        """
        调用网关退款接口。响应 code == 1 视为网关已受理。

        网关失败只体现在返回结果中，由调用方决定如何处理。
        """
        money = f"{Decimal(str(amount)):.2f}"
        params = sign_params(
            {
                "pid": self.config.pid,
                "key": self.config.key,
                "out_trade_no": order_number,
                "money": money,
            },
            self.config.key,
            sign_type="MD5",
        )
        try:
            data, _ = self._post(self.config.refund_url, params)
        except GatewayError as e:
            logger.warning("网关退款请求失败 (order_number=%s): %s", order_number, e)
            return RefundCallResult(accepted=False, raw=None, error=e)

        accepted = str(data.get("code")) == "1"
        if accepted:
            logger.info("网关已受理退款: order_number=%s, money=%s", order_number, money)
        else:
            logger.warning(
                "网关未受理退款: order_number=%s, code=%s, msg=%s",
                order_number, data.get("code"), data.get("msg"),
            )
        return RefundCallResult(accepted=accepted, raw=data)
