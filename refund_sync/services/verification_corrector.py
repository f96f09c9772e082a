"""
近期退款核验器（反向纠正 / 回滚）。

取出时间窗口内被标记为 refunded 的访问码，逐个向网关核实：
- 网关确认已退款：状态正确，不做修改
- 网关显示未退款：回滚为 active，清除两侧退款字段，记录 rollback 日志
- 网关查询出错：跳过并计入 errored，绝不因错误回滚

只核验近期记录，长期已结算的历史不在范围内。
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Callable

from refund_sync.models.schemas import AccessCode, VerifyReport
from refund_sync.services.batching import run_in_batches
from refund_sync.services.gateway_client import GatewayClient
from refund_sync.services.record_store import RecordStore, RecordStoreError, now_str

logger = logging.getLogger(__name__)

JOB_TYPE = "verify_recent"
DEFAULT_WINDOW = timedelta(hours=24)
DEFAULT_BATCH_SIZE = 3
DEFAULT_BATCH_DELAY = 2.0


class VerificationCorrector:
    """核验近期自动标记的退款，撤销网关未实际执行的标记。"""

    PERFORMED_BY = "verification_system"

    def __init__(
        self,
        store: RecordStore | None = None,
        gateway: GatewayClient | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = DEFAULT_BATCH_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store or RecordStore()
        self._gateway = gateway
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._sleep = sleep

    @classmethod
    def from_settings(cls) -> "VerificationCorrector":
        """按平台对账参数构造核验器。"""
        from refund_sync.services.platform_config import get_reconcile_settings
        settings = get_reconcile_settings()
        return cls(batch_size=settings["verify_batch_size"], batch_delay=settings["batch_delay"])

    def _get_gateway_client(self) -> GatewayClient:
        if self._gateway is None:
            from refund_sync.services.platform_config import load_gateway_config
            self._gateway = GatewayClient(load_gateway_config())
        return self._gateway

    def _verify_one(self, record: AccessCode) -> dict:
        detail = {"access_code": record.code, "order_number": record.order_number}

        result = self._get_gateway_client().query_status(record.order_number)
        if result.error is not None:
            detail.update(status="error", error=result.error.code, message=str(result.error))
            return detail

        if result.is_refunded:
            detail.update(status="correct", message="网关中确实已退款，本地状态正确")
            return detail

        logger.warning(
            "访问码退款标记与网关不符，回滚: code=%s, order_number=%s",
            record.code, record.order_number,
        )
        updated = self.store.rollback_refund(
            record.code,
            performed_by=self.PERFORMED_BY,
            gateway_payload=result.to_payload(),
        )
        if updated is None:
            detail.update(status="skipped", message="核验期间状态已被其他流程修改")
        else:
            detail.update(status="rolled_back", message="网关中未实际退款，已自动回滚为 active")
        return detail

    def verify(self, window: timedelta = DEFAULT_WINDOW, trigger: str = "manual") -> VerifyReport:
        """
        核验 refunded_at 位于 [now - window, now] 内的退款标记。

        Raises:
            ValueError: window 不是正数。
            RecordStoreError: 存储层无法读写，核验终止。
        """
        if window <= timedelta(0):
            raise ValueError("核验时间窗口必须大于 0")

        hours_back = window.total_seconds() / 3600
        report = VerifyReport(hours_back=hours_back, started_at=now_str())
        self._get_gateway_client()

        cutoff = datetime.now() - window
        records = self.store.list_recently_refunded(cutoff)
        logger.info(
            "退款核验开始: %.1f 小时内标记退款的访问码 %d 个, trigger=%s",
            hours_back, len(records), trigger,
        )

        outcomes = run_in_batches(
            records,
            self._verify_one,
            batch_size=self.batch_size,
            delay=self.batch_delay,
            sleep=self._sleep,
            fatal=(RecordStoreError,),
        )

        for outcome in outcomes:
            if outcome.error is not None:
                report.errored += 1
                report.details.append({
                    "access_code": outcome.item.code,
                    "order_number": outcome.item.order_number,
                    "status": "error",
                    "message": str(outcome.error),
                })
                continue

            detail = outcome.result
            report.details.append(detail)
            if detail["status"] == "error":
                report.errored += 1
                continue
            report.verified += 1
            if detail["status"] == "correct":
                report.correct += 1
            elif detail["status"] == "rolled_back":
                report.rolled_back += 1

        report.finished_at = now_str()
        self.store.record_job_run(
            JOB_TYPE,
            trigger,
            report.started_at,
            report.finished_at,
            checked=report.verified,
            changed=report.rolled_back,
            unchanged=report.correct,
            errored=report.errored,
            params={"hours_back": hours_back, "batch_size": self.batch_size},
        )
        logger.info(
            "退款核验完成: 核验 %d 个，正确 %d 个，回滚 %d 个，错误 %d 个",
            report.verified, report.correct, report.rolled_back, report.errored,
        )
        return report
