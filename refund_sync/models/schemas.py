"""
数据模型 / 类型定义，供各模块引用。
使用 dataclass 保持轻量，不引入 ORM。
"""

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Optional

# 访问码状态
CODE_ACTIVE = "active"
CODE_REFUNDED = "refunded"

# 订单支付 / 退款状态
PAYMENT_PENDING = "pending"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
REFUND_NONE = "none"
REFUND_DONE = "refunded"

# 对账日志操作类型
OP_MANUAL_REFUND = "manual_refund"
OP_DRIFT_FIX = "drift_fix"
OP_ROLLBACK = "rollback"
OPERATION_TYPES = (OP_MANUAL_REFUND, OP_DRIFT_FIX, OP_ROLLBACK)

# 退款结果
OUTCOME_GATEWAY_CONFIRMED = "gateway_confirmed"
OUTCOME_GATEWAY_PENDING = "gateway_pending"
OUTCOME_ALREADY_REFUNDED = "already_refunded"


@dataclass
class AccessCode:
    id: int
    code: str
    order_number: str
    amount: Decimal
    status: str = CODE_ACTIVE
    refund_order_id: Optional[str] = None
    refund_reason: Optional[str] = None
    refunded_at: Optional[str] = None
    refund_claim: Optional[str] = None  # 退款进行中的占用标记
    refund_claimed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class Order:
    id: int
    order_number: str  # 即网关 out_trade_no
    amount: Decimal
    payment_status: str = PAYMENT_PENDING
    refund_status: str = REFUND_NONE
    refund_method: Optional[str] = None
    refund_order_id: Optional[str] = None
    refunded_at: Optional[str] = None
    paid_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class ReconciliationLog:
    id: int
    operation_type: str
    access_code: str
    order_number: str
    performed_by: str
    gateway_response: Optional[dict] = None
    performed_at: Optional[str] = None


@dataclass
class JobRun:
    id: int
    job_type: str
    trigger_source: str
    started_at: str
    finished_at: str
    checked: int = 0
    changed: int = 0
    unchanged: int = 0
    errored: int = 0
    params: Optional[dict] = None


@dataclass
class RefundResult:
    """一次退款请求的处理结果，outcome 三种取值都视为成功。"""
    outcome: str
    access_code: str
    order_number: str
    amount: Decimal
    refund_order_id: Optional[str] = None
    refunded_at: Optional[str] = None
    gateway_accepted: bool = False
    gateway_error: Optional[str] = None
    gateway_response: Optional[dict] = None

    @property
    def message(self) -> str:
        if self.outcome == OUTCOME_GATEWAY_CONFIRMED:
            return "退款已处理，支付网关已确认"
        if self.outcome == OUTCOME_GATEWAY_PENDING:
            return "退款已处理，本地状态已更新，网关退款待确认"
        return "该访问码已退款，无需重复申请"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["amount"] = f"{Decimal(str(self.amount)):.2f}"
        data["message"] = self.message
        return data


@dataclass
class SweepReport:
    """漂移扫描（正向纠正）统计。"""
    checked: int = 0
    fixed: int = 0
    errored: int = 0
    details: list[dict] = field(default_factory=list)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class VerifyReport:
    """近期退款核验（反向纠正）统计。"""
    hours_back: float
    verified: int = 0
    correct: int = 0
    rolled_back: int = 0
    errored: int = 0
    details: list[dict] = field(default_factory=list)
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)
