"""
退款接口路由：POST /api/refund

接收 {access_code} 或 {order_no}（二选一），交给 RefundOrchestrator 处理。
网关不可用时仍返回成功，后续由对账任务纠正。
"""

import logging
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from refund_sync.services.record_store import RecordStoreError
from refund_sync.services.refund_orchestrator import (
    RefundOrchestrator,
    RefundRejected,
    RefundWindowExpired,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


class RefundRequest(BaseModel):
    access_code: Optional[str] = None
    order_no: Optional[str] = None


def rejection_response(e: RefundRejected) -> JSONResponse:
    """拒绝类异常统一转为 {code: -1, error, msg}。"""
    content = {"code": -1, "error": e.code, "msg": str(e)}
    if isinstance(e, RefundWindowExpired):
        content["days_passed"] = e.days_passed
        content["purchase_time"] = e.purchase_time
    return JSONResponse(content=content)


@router.post("/refund")
def request_refund(body: RefundRequest):
    """
    用户退款申请。

    成功返回 {code: 1, msg, data}；被拒绝返回 {code: -1, error, msg}。
    """
    if not body.access_code and not body.order_no:
        return JSONResponse(content={
            "code": -1, "error": "MISSING_PARAMETERS", "msg": "请提供访问码或订单号",
        })
    if body.access_code and body.order_no:
        return JSONResponse(content={
            "code": -1, "error": "TOO_MANY_PARAMETERS", "msg": "请只提供访问码或订单号中的一个",
        })

    orchestrator = RefundOrchestrator()
    try:
        if body.access_code:
            result = orchestrator.refund(body.access_code, initiator="user")
        else:
            result = orchestrator.refund_by_order_number(body.order_no, initiator="user")
    except RefundRejected as e:
        logger.info("退款申请被拒绝: %s (%s)", e, e.code)
        return rejection_response(e)
    except RecordStoreError as e:
        logger.error("退款申请处理失败，存储不可用: %s", e)
        return JSONResponse(
            status_code=503,
            content={"code": -1, "error": "STORE_UNAVAILABLE", "msg": "系统繁忙，请稍后重试"},
        )

    return JSONResponse(content={"code": 1, "msg": result.message, "data": result.to_dict()})
