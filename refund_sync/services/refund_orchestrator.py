"""
退款编排：处理一次用户/运营发起的退款请求。

流程：
1. 校验访问码格式并查找访问码
2. 已退款则直接返回（幂等）
3. 查找订单，校验支付状态与 7 天退款期限
4. 占用访问码，拿不到占用的并发请求不会调用网关
5. 调用网关退款接口，记录结果但不据此分支
6. 无条件更新本地状态（访问码 + 订单）并追加 manual_refund 日志
7. 返回"网关已确认"或"本地已更新、网关待确认"

网关侧的不一致由 DriftScanner / VerificationCorrector 在后续对账中纠正。
"""

import logging
import re
from datetime import datetime

from refund_sync.models.schemas import (
    CODE_REFUNDED,
    OP_MANUAL_REFUND,
    OUTCOME_ALREADY_REFUNDED,
    OUTCOME_GATEWAY_CONFIRMED,
    OUTCOME_GATEWAY_PENDING,
    PAYMENT_PAID,
    AccessCode,
    Order,
    RefundResult,
)
from refund_sync.services.gateway_client import GatewayClient
from refund_sync.services.record_store import TIME_FORMAT, RecordStore, normalize_code

logger = logging.getLogger(__name__)

REFUND_WINDOW_DAYS = 7
ACCESS_CODE_PATTERN = re.compile(r"^[A-Z0-9]{6,20}$")


# ── 拒绝类异常 ────────────────────────────────────────────


class RefundRejected(Exception):
    """退款请求被拒绝，不产生任何副作用。"""

    code = "REFUND_REJECTED"


class InvalidAccessCode(RefundRejected):
    code = "INVALID_ACCESS_CODE_FORMAT"


class CodeNotFound(RefundRejected):
    code = "CODE_NOT_FOUND"


class OrderNotFound(RefundRejected):
    code = "ORDER_NOT_FOUND"


class OrderNotPaid(RefundRejected):
    code = "INVALID_ORDER_STATUS"


class PurchaseTimeUnknown(RefundRejected):
    code = "PURCHASE_TIME_UNKNOWN"


class RefundInProgress(RefundRejected):
    code = "REFUND_IN_PROGRESS"


class RefundWindowExpired(RefundRejected):
    code = "REFUND_TIME_EXPIRED"

    def __init__(self, message: str, days_passed: int, purchase_time: str):
        super().__init__(message)
        self.days_passed = days_passed
        self.purchase_time = purchase_time


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, TIME_FORMAT)
    except ValueError:
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None


def days_since_purchase(order: Order, code: AccessCode | None = None, now: datetime | None = None) -> tuple[int, str]:
    """
    计算购买至今的整天数。

    购买时间依次取 订单 paid_at → 订单 created_at → 访问码 created_at。

    Returns:
        (已过天数, 购买时间字符串)

    Raises:
        PurchaseTimeUnknown: 无法确定购买时间。
    """
    candidates = [order.paid_at, order.created_at]
    if code is not None:
        candidates.append(code.created_at)

    for value in candidates:
        purchase = _parse_time(value)
        if purchase is not None:
            now = now or datetime.now()
            return (now - purchase).days, purchase.strftime(TIME_FORMAT)

    raise PurchaseTimeUnknown(f"订单 {order.order_number} 缺少购买时间信息，请联系客服处理")


class RefundOrchestrator:
    """单次退款的端到端处理，按访问码幂等。"""

    def __init__(self, store: RecordStore | None = None, gateway: GatewayClient | None = None):
        self.store = store or RecordStore()
        self._gateway = gateway

    def _get_gateway_client(self) -> GatewayClient:
        """获取网关客户端，未注入时按当前平台配置构造。"""
        if self._gateway is None:
            from refund_sync.services.platform_config import load_gateway_config
            self._gateway = GatewayClient(load_gateway_config())
        return self._gateway

    def refund(self, access_code: str, initiator: str = "user") -> RefundResult:
        """
        按访问码退款。

        Raises:
            InvalidAccessCode / CodeNotFound / OrderNotFound / OrderNotPaid /
            PurchaseTimeUnknown / RefundWindowExpired: 拒绝，不调用网关也不修改状态。
            RefundInProgress: 同一访问码的另一笔退款正在进行。
        """
        code = normalize_code(access_code)
        if not ACCESS_CODE_PATTERN.match(code):
            raise InvalidAccessCode("访问码格式不正确")

        record = self.store.get_access_code(code)
        if record is None:
            raise CodeNotFound(f"访问码不存在: {code}")

        if record.status == CODE_REFUNDED:
            logger.info("访问码已退款，幂等返回: code=%s", code)
            return self._already_refunded(record)

        order = self.store.get_order(record.order_number)
        if order is None:
            raise OrderNotFound(f"访问码对应的订单不存在（订单号: {record.order_number}）")

        return self._refund_record(record, order, initiator)

    def refund_by_order_number(self, order_number: str, initiator: str = "user") -> RefundResult:
        """按订单号退款：解析出对应访问码后走同一流程。"""
        order_number = (order_number or "").strip()
        order = self.store.get_order(order_number)
        if order is None:
            raise OrderNotFound(f"订单不存在: {order_number}")

        record = self.store.get_code_by_order_number(order_number)
        if record is None:
            raise CodeNotFound(f"订单 {order_number} 没有关联的访问码")

        if record.status == CODE_REFUNDED:
            logger.info("订单已退款，幂等返回: order_number=%s", order_number)
            return self._already_refunded(record)

        return self._refund_record(record, order, initiator)

    def _refund_record(self, record: AccessCode, order: Order, initiator: str) -> RefundResult:
        if order.payment_status != PAYMENT_PAID:
            raise OrderNotPaid(
                f"订单状态不允许退款（当前状态: {order.payment_status}，需要: paid）"
            )

        days_passed, purchase_time = days_since_purchase(order, record)
        if days_passed > REFUND_WINDOW_DAYS:
            logger.info(
                "超过退款期限: code=%s, order_number=%s, days_passed=%d",
                record.code, order.order_number, days_passed,
            )
            raise RefundWindowExpired(
                f"订单 {order.order_number} 已超过{REFUND_WINDOW_DAYS}天退款期限（{days_passed}天）",
                days_passed=days_passed,
                purchase_time=purchase_time,
            )

        token = self.store.claim_refund(record.code)
        if token is None:
            current = self.store.get_access_code(record.code)
            if current is not None and current.status == CODE_REFUNDED:
                return self._already_refunded(current)
            raise RefundInProgress(f"访问码 {record.code} 的退款正在处理中，请稍后查询")

        updated = None
        try:
            gateway_result = self._get_gateway_client().issue_refund(order.order_number, order.amount)
            updated = self.store.mark_refunded(
                record.code,
                OP_MANUAL_REFUND,
                performed_by=initiator,
                gateway_payload=gateway_result.to_payload(),
                refund_method="gateway_api" if gateway_result.accepted else "local_pending_gateway",
                reason="用户申请退款",
                claim_token=token,
            )
        finally:
            if updated is None:
                self.store.release_refund_claim(record.code, token)

        if updated is None:
            # 占用已失效并被接管，本次网关调用未入账
            logger.error(
                "退款占用失效，网关结果未写入日志: code=%s, order_number=%s, gateway=%s",
                record.code, order.order_number, gateway_result.to_payload(),
            )
            raise RefundInProgress(f"访问码 {record.code} 的退款正在处理中，请稍后查询")

        outcome = OUTCOME_GATEWAY_CONFIRMED if gateway_result.accepted else OUTCOME_GATEWAY_PENDING
        logger.info(
            "退款处理完成: code=%s, order_number=%s, outcome=%s, initiator=%s",
            updated.code, updated.order_number, outcome, initiator,
        )
        return RefundResult(
            outcome=outcome,
            access_code=updated.code,
            order_number=updated.order_number,
            amount=order.amount,
            refund_order_id=updated.refund_order_id,
            refunded_at=updated.refunded_at,
            gateway_accepted=gateway_result.accepted,
            gateway_error=gateway_result.error.code if gateway_result.error else None,
            gateway_response=gateway_result.raw,
        )

    @staticmethod
    def _already_refunded(record: AccessCode) -> RefundResult:
        return RefundResult(
            outcome=OUTCOME_ALREADY_REFUNDED,
            access_code=record.code,
            order_number=record.order_number,
            amount=record.amount,
            refund_order_id=record.refund_order_id,
            refunded_at=record.refunded_at,
        )
