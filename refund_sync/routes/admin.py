"""
运营后台路由：认证（登录）、对账任务触发、对账日志与运行记录、网关设置。
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from refund_sync.models.schemas import OPERATION_TYPES
from refund_sync.routes.refund import rejection_response
from refund_sync.services.auth import AuthError, authenticate, change_password, get_current_operator
from refund_sync.services.batching import run_in_batches
from refund_sync.services.drift_scanner import DriftScanner
from refund_sync.services.gateway_client import GatewayClient
from refund_sync.services.platform_config import (
    PlatformConfigError,
    get_gateway_settings,
    get_reconcile_settings,
    load_gateway_config,
    save_gateway_credentials,
)
from refund_sync.services.record_store import RecordStore, RecordStoreError, normalize_code
from refund_sync.services.refund_orchestrator import RefundOrchestrator, RefundRejected
from refund_sync.services.verification_corrector import VerificationCorrector

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin")

MAX_STATUS_LOOKUP = 50


def _store_unavailable(e: RecordStoreError) -> JSONResponse:
    logger.error("存储不可用: %s", e)
    return JSONResponse(
        status_code=503,
        content={"code": -1, "error": "STORE_UNAVAILABLE", "msg": f"存储不可用: {e}"},
    )


# ── 认证 ──────────────────────────────────────────────────


class LoginRequest(BaseModel):
    username: str
    password: str


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str


@router.post("/auth/login")
async def login(body: LoginRequest):
    """
    运营人员登录。

    成功返回 {code: 1, token: "..."}，失败返回 {code: -1, msg: "..."}。
    """
    try:
        token = authenticate(body.username, body.password)
        return JSONResponse(content={"code": 1, "token": token})
    except AuthError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})


@router.post("/settings/change-password")
async def change_password_route(
    body: ChangePasswordRequest,
    operator: dict = Depends(get_current_operator),
):
    try:
        change_password(operator["sub"], body.old_password, body.new_password)
    except AuthError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "msg": "密码修改成功"})


# ── 网关设置 ──────────────────────────────────────────────


class GatewayCredentialsRequest(BaseModel):
    pid: str
    key: str
    query_url: Optional[str] = None
    refund_url: Optional[str] = None
    timeout: Optional[float] = None


@router.get("/settings/gateway")
async def gateway_settings(operator: dict = Depends(get_current_operator)):
    """网关配置（密钥脱敏）。"""
    try:
        settings = get_gateway_settings()
    except RecordStoreError as e:
        return _store_unavailable(e)
    return JSONResponse(content={"code": 1, "gateway": settings})


@router.post("/settings/gateway")
def save_gateway_settings(
    body: GatewayCredentialsRequest,
    operator: dict = Depends(get_current_operator),
):
    """保存网关凭证并做一次连通性验证。"""
    try:
        result = save_gateway_credentials(
            body.pid, body.key, body.query_url, body.refund_url, body.timeout,
        )
    except PlatformConfigError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    except RecordStoreError as e:
        return _store_unavailable(e)
    logger.info("运营人员 %s 更新了网关凭证: status=%s", operator["sub"], result["status"])
    return JSONResponse(content={"code": 1, **result})


# ── 对账任务 ──────────────────────────────────────────────


class VerifyRecentRequest(BaseModel):
    hours_back: float = 24


class GatewayStatusRequest(BaseModel):
    order_numbers: Optional[list[str]] = None
    access_codes: Optional[list[str]] = None


class OperatorRefundRequest(BaseModel):
    access_code: str


@router.post("/reconcile/sweep-drift")
def sweep_drift(operator: dict = Depends(get_current_operator)):
    """手动触发漂移扫描（正向纠正）。"""
    try:
        report = DriftScanner.from_settings().sweep(trigger=f"operator:{operator['sub']}")
    except RecordStoreError as e:
        return _store_unavailable(e)
    return JSONResponse(content={"code": 1, "msg": "漂移扫描完成", "report": report.to_dict()})


@router.post("/reconcile/verify-recent")
def verify_recent(
    body: VerifyRecentRequest,
    operator: dict = Depends(get_current_operator),
):
    """手动触发近期退款核验（反向纠正）。"""
    if body.hours_back <= 0:
        return JSONResponse(content={"code": -1, "msg": "hours_back 必须大于 0"})

    try:
        report = VerificationCorrector.from_settings().verify(
            timedelta(hours=body.hours_back),
            trigger=f"operator:{operator['sub']}",
        )
    except RecordStoreError as e:
        return _store_unavailable(e)
    return JSONResponse(content={"code": 1, "msg": "退款状态核验完成", "report": report.to_dict()})


@router.post("/reconcile/gateway-status")
def gateway_status(
    body: GatewayStatusRequest,
    operator: dict = Depends(get_current_operator),
):
    """只读查询：按订单号或访问码批量查看网关侧退款状态，不修改本地数据。"""
    store = RecordStore()
    requested = body.order_numbers or body.access_codes
    if not requested:
        return JSONResponse(content={"code": -1, "msg": "请提供订单号列表或访问码列表"})
    if len(requested) > MAX_STATUS_LOOKUP:
        return JSONResponse(content={"code": -1, "msg": f"单次最多查询 {MAX_STATUS_LOOKUP} 个"})

    try:
        if body.order_numbers:
            targets = [{"order_number": n.strip()} for n in body.order_numbers if n.strip()]
        else:
            targets = []
            for raw in body.access_codes:
                record = store.get_access_code(raw)
                if record is None:
                    targets.append({"access_code": normalize_code(raw), "order_number": None})
                else:
                    targets.append({"access_code": record.code, "order_number": record.order_number})
        client = GatewayClient(load_gateway_config())
        settings = get_reconcile_settings()

        def lookup(target: dict) -> dict:
            if target["order_number"] is None:
                return {**target, "status": "not_found"}
            result = client.query_status(target["order_number"])
            local = store.get_order(target["order_number"])
            return {
                **target,
                "status": "error" if result.error else "ok",
                "gateway_refunded": result.is_refunded,
                "local_refund_status": local.refund_status if local else None,
                "error": result.error.code if result.error else None,
                "response": result.raw,
            }

        outcomes = run_in_batches(
            targets,
            lookup,
            batch_size=settings["batch_size"],
            delay=settings["batch_delay"],
            fatal=(RecordStoreError,),
        )
    except RecordStoreError as e:
        return _store_unavailable(e)

    results = []
    for outcome in outcomes:
        if outcome.error is not None:
            logger.error("网关状态查询异常: target=%s, error=%s", outcome.item, outcome.error)
            results.append({**outcome.item, "status": "error", "error": str(outcome.error)})
        else:
            results.append(outcome.result)
    return JSONResponse(content={"code": 1, "results": results})


@router.post("/refunds")
def operator_refund(
    body: OperatorRefundRequest,
    operator: dict = Depends(get_current_operator),
):
    """运营人员代用户发起退款，走与用户相同的流程。"""
    try:
        result = RefundOrchestrator().refund(body.access_code, initiator=f"operator:{operator['sub']}")
    except RefundRejected as e:
        return rejection_response(e)
    except RecordStoreError as e:
        return _store_unavailable(e)
    return JSONResponse(content={"code": 1, "msg": result.message, "data": result.to_dict()})


# ── 日志与运行记录 ────────────────────────────────────────


@router.get("/reconcile/logs")
async def reconcile_logs(
    access_code: Optional[str] = Query(None),
    order_number: Optional[str] = Query(None),
    operation_type: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    operator: dict = Depends(get_current_operator),
):
    """对账日志列表（按写入顺序）。"""
    if operation_type and operation_type not in OPERATION_TYPES:
        return JSONResponse(content={"code": -1, "msg": f"不支持的操作类型: {operation_type}"})

    try:
        logs, total = RecordStore().list_logs(
            access_code=access_code,
            order_number=order_number,
            operation_type=operation_type,
            page=page,
            page_size=page_size,
        )
    except RecordStoreError as e:
        return _store_unavailable(e)

    return JSONResponse(content={
        "code": 1,
        "total": total,
        "page": page,
        "page_size": page_size,
        "logs": [
            {
                "id": log.id,
                "operation_type": log.operation_type,
                "access_code": log.access_code,
                "order_number": log.order_number,
                "gateway_response": log.gateway_response,
                "performed_by": log.performed_by,
                "performed_at": log.performed_at,
            }
            for log in logs
        ],
    })


@router.get("/reconcile/runs")
async def reconcile_runs(
    job_type: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    operator: dict = Depends(get_current_operator),
):
    """最近的对账任务运行记录。"""
    try:
        runs = RecordStore().list_job_runs(job_type=job_type, limit=limit)
    except RecordStoreError as e:
        return _store_unavailable(e)
    return JSONResponse(content={
        "code": 1,
        "runs": [
            {
                "id": r.id,
                "job_type": r.job_type,
                "trigger_source": r.trigger_source,
                "checked": r.checked,
                "changed": r.changed,
                "unchanged": r.unchanged,
                "errored": r.errored,
                "params": r.params,
                "started_at": r.started_at,
                "finished_at": r.finished_at,
            }
            for r in runs
        ],
    })
