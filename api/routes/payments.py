"""
Payments API routes.

Thin HTTP adapters over PaymentService / ReconciliationService. Gateway
callbacks reply in each gateway's own format; everything else uses the
unified response envelope.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from api.dependencies import (
    CurrentUser,
    get_current_user,
    get_payment_container,
    get_payment_service,
    get_reconciliation_service,
    is_notify_source_allowed,
    require_admin,
)
from api.middleware import get_client_ip
from application.dtos.payments import CreatePaymentRequest, GatewayPayRequest, RefundPaymentRequest
from application.services.payment_service import PaymentService
from application.services.reconciliation_service import ReconciliationService
from core.config import settings
from core.logging_config import get_logger
from core.response import paginated_response, success_response
from domain.common.exceptions import BusinessException
from domain.payment.entity import PaymentMethod, PaymentStatus
from infrastructure.composition import PaymentContainer


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)

WECHAT_ACK_OK = {"code": "SUCCESS", "message": "成功"}


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def _owner(user: CurrentUser) -> Optional[int]:
    """管理员可访问任意支付，普通用户只能访问自己的"""
    return None if user.has_role(settings.ADMIN_ROLE) else user.user_id


# ============= 创建支付 =============

@router.post("/create", summary="创建支付")
async def create_payment(
    payload: CreatePaymentRequest,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.create_payment(
        payload.order_id,
        payload.payment_method,
        payload.amount,
        user.user_id,
        payload.dispatch_params(get_client_ip()),
    )
    return success_response(data=result.model_dump(mode="json"), message="支付已创建")


@router.post("/wechatpay", summary="微信支付")
async def pay_with_wechat(
    payload: GatewayPayRequest,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.pay_with_gateway(
        payload.order_id,
        PaymentMethod.WECHAT,
        payload.amount,
        user.user_id,
        payload.dispatch_params(get_client_ip()),
    )
    return success_response(data=result.model_dump(mode="json"), message="微信支付已发起")


@router.post("/alipay", summary="支付宝支付")
async def pay_with_alipay(
    payload: GatewayPayRequest,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    result = await service.pay_with_gateway(
        payload.order_id,
        PaymentMethod.ALIPAY,
        payload.amount,
        user.user_id,
        payload.dispatch_params(get_client_ip()),
    )
    return success_response(data=result.model_dump(mode="json"), message="支付宝支付已发起")


# ============= 网关回调 =============

@router.post("/alipay/notify", summary="支付宝异步通知", include_in_schema=False)
async def alipay_notify(
    request: Request,
    container: PaymentContainer = Depends(get_payment_container),
    service: PaymentService = Depends(get_payment_service),
):
    if not is_notify_source_allowed(request, container):
        return PlainTextResponse("fail")
    body = await request.body()
    try:
        ack = await service.handle_notify(PaymentMethod.ALIPAY, dict(request.headers), body)
    except BusinessException as exc:
        logger.error("alipay_notify_failed", error_type=exc.error_type, error=exc.message)
        return PlainTextResponse("fail")
    return PlainTextResponse("success" if ack.accepted else "fail")


@router.post("/wechatpay/notify", summary="微信支付异步通知", include_in_schema=False)
async def wechat_notify(
    request: Request,
    container: PaymentContainer = Depends(get_payment_container),
    service: PaymentService = Depends(get_payment_service),
):
    if not is_notify_source_allowed(request, container):
        return JSONResponse(status_code=400, content={"code": "FAIL", "message": "来源不被允许"})
    body = await request.body()
    try:
        ack = await service.handle_notify(PaymentMethod.WECHAT, dict(request.headers), body)
    except BusinessException as exc:
        logger.error("wechat_notify_failed", error_type=exc.error_type, error=exc.message)
        return JSONResponse(status_code=400, content={"code": "FAIL", "message": exc.message})
    if not ack.accepted:
        return JSONResponse(status_code=400, content={"code": "FAIL", "message": ack.message or ack.outcome})
    return JSONResponse(status_code=200, content=WECHAT_ACK_OK)


# ============= 查询 =============

@router.get("/methods/list", summary="支付方式列表")
async def list_payment_methods(service: PaymentService = Depends(get_payment_service)):
    methods = service.list_payment_methods()
    return success_response(data=[m.model_dump(mode="json") for m in methods])


@router.get("/history", summary="支付记录")
async def payment_history(
    page: int = Query(1, ge=1),
    size: int = Query(settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    status: Optional[PaymentStatus] = Query(None),
    payment_method: Optional[PaymentMethod] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    items, total = await service.get_payment_history(
        user.user_id,
        page=page,
        size=size,
        status=status,
        payment_method=payment_method,
        start=_utc(start),
        end=_utc(end),
    )
    return paginated_response([i.model_dump(mode="json") for i in items], total, page, size)


@router.get("/bills", summary="账单汇总")
async def bills(
    month: Optional[str] = Query(None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$"),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    summary = await service.get_bills(user.user_id, month=month, start=_utc(start), end=_utc(end))
    return success_response(data=summary.model_dump(mode="json"))


@router.get("/reconciliation", summary="对账报表")
async def reconciliation(
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    payment_method: Optional[PaymentMethod] = Query(None),
    deep: bool = Query(False),
    _admin: CurrentUser = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    end_at = _utc(end) or datetime.now(timezone.utc)
    start_at = _utc(start) or end_at - timedelta(days=1)
    report = await service.get_reconciliation(start_at, end_at, payment_method, deep=deep)
    return success_response(data=report.model_dump(mode="json"))


@router.get("/{payment_id}/status", summary="支付状态")
async def payment_status(
    payment_id: int,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    view = await service.get_payment_status(payment_id, _owner(user))
    return success_response(data=view.model_dump(mode="json"))


@router.put("/{payment_id}/cancel", summary="取消支付")
async def cancel_payment(
    payment_id: int,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    view = await service.cancel_payment(payment_id, _owner(user))
    return success_response(data=view.model_dump(mode="json"), message="支付已取消")


@router.post("/{payment_id}/refund", summary="申请退款")
async def refund_payment(
    payment_id: int,
    payload: RefundPaymentRequest,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    view = await service.refund_payment(payment_id, payload.amount, payload.reason, _owner(user))
    return success_response(data=view.model_dump(mode="json"), message="退款已受理")


@router.get("/{payment_id}/refund-status", summary="退款状态")
async def refund_status(
    payment_id: int,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    view = await service.get_refund_status(payment_id, _owner(user))
    return success_response(data=view.model_dump(mode="json"))
