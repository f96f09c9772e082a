"""
漂移扫描器（正向纠正）：网关显示已退款、本地仍为 active 时同步为 refunded。

核心逻辑：
- 取出全部 active 访问码，按固定批大小分批查询网关
- 批内并发、批间固定延迟，避免触发网关限流
- 网关确认已退款则迁移为 refunded 并记录 drift_fix 日志
- 单条记录的网关错误只计入 errored，不中断扫描；存储层错误终止扫描
"""

import logging
import time
from typing import Callable

from refund_sync.models.schemas import OP_DRIFT_FIX, AccessCode, SweepReport
from refund_sync.services.batching import run_in_batches
from refund_sync.services.gateway_client import GatewayClient
from refund_sync.services.record_store import RecordStore, RecordStoreError, now_str

logger = logging.getLogger(__name__)

JOB_TYPE = "drift_sweep"
DEFAULT_BATCH_SIZE = 5
DEFAULT_BATCH_DELAY = 2.0


class DriftScanner:
    """检测并修复"网关已退款、本地未退款"的状态漂移。"""

    PERFORMED_BY = "drift_scanner"

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
    def from_settings(cls) -> "DriftScanner":
        """按平台对账参数构造扫描器。"""
        from refund_sync.services.platform_config import get_reconcile_settings
        settings = get_reconcile_settings()
        return cls(batch_size=settings["batch_size"], batch_delay=settings["batch_delay"])

    def _get_gateway_client(self) -> GatewayClient:
        if self._gateway is None:
            from refund_sync.services.platform_config import load_gateway_config
            self._gateway = GatewayClient(load_gateway_config())
        return self._gateway

    def _check_one(self, record: AccessCode) -> dict:
        """查询单个访问码的网关状态，必要时修复本地状态。"""
        detail = {"access_code": record.code, "order_number": record.order_number}

        result = self._get_gateway_client().query_status(record.order_number)
        if result.error is not None:
            detail.update(status="error", error=result.error.code, message=str(result.error))
            return detail

        if not result.is_refunded:
            detail.update(status="no_change", message="状态一致，无需修复")
            return detail

        logger.info("发现状态漂移，开始修复: code=%s, order_number=%s", record.code, record.order_number)
        updated = self.store.mark_refunded(
            record.code,
            OP_DRIFT_FIX,
            performed_by=self.PERFORMED_BY,
            gateway_payload=result.to_payload(),
            refund_method="gateway_auto_sync",
            reason="网关检测到退款，自动同步",
        )
        if updated is None:
            detail.update(status="skipped", message="扫描期间状态已被其他流程修改")
        else:
            detail.update(
                status="auto_fixed",
                message="检测到网关退款，已自动修复本地状态",
                refunded_at=updated.refunded_at,
            )
        return detail

    def sweep(self, trigger: str = "manual") -> SweepReport:
        """
        扫描全部 active 访问码。

        Raises:
            RecordStoreError: 存储层无法读写，扫描终止。
        """
        report = SweepReport(started_at=now_str())
        self._get_gateway_client()
        records = self.store.list_active_codes()
        logger.info("漂移扫描开始: active 访问码 %d 个, trigger=%s", len(records), trigger)

        outcomes = run_in_batches(
            records,
            self._check_one,
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
            report.checked += 1
            if detail["status"] == "auto_fixed":
                report.fixed += 1

        report.finished_at = now_str()
        self.store.record_job_run(
            JOB_TYPE,
            trigger,
            report.started_at,
            report.finished_at,
            checked=report.checked,
            changed=report.fixed,
            unchanged=report.checked - report.fixed,
            errored=report.errored,
            params={"batch_size": self.batch_size, "batch_delay": self.batch_delay},
        )
        logger.info(
            "漂移扫描完成: 检查 %d 个，修复 %d 个，错误 %d 个",
            report.checked, report.fixed, report.errored,
        )
        return report
