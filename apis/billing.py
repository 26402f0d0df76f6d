from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request, status as http_status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from core.auth import get_optional_user, get_user_id
from core.billing_service import (
    create_payment,
    create_settled_order,
    handle_webhook,
    list_orders,
    verify_payment,
)
from core.config import cfg
from core.db import DB
from core.errors import AuthenticationRequired, PermissionDeniedError, StorefrontError
from core.payment_gateway import GatewayConfig, SIGNATURE_HEADERS, XtraGatewayClient
from core.validation import URL_MAX_LENGTH
from .base import http_error, success_response


router = APIRouter(prefix="/payments", tags=["支付对账"])


def get_gateway() -> XtraGatewayClient:
    return XtraGatewayClient(GatewayConfig.from_config(cfg))


def _require_admin(current_user: dict):
    if not get_user_id(current_user):
        raise http_error(AuthenticationRequired("Authentication required"))
    if current_user.get("role") != "admin":
        raise http_error(PermissionDeniedError("Admin access required"))


class CreatePaymentRequest(BaseModel):
    plan_id: Optional[str] = Field(default=None, max_length=64)
    # 整数校验放在业务层，以便返回字段级错误
    quantity: Optional[Any] = None
    guest_email: Optional[str] = Field(default=None, max_length=255)
    phone_number: Optional[str] = Field(default=None, max_length=32)
    success_url: Optional[str] = Field(default=None, max_length=URL_MAX_LENGTH)
    cancel_url: Optional[str] = Field(default=None, max_length=URL_MAX_LENGTH)


class CreateOrderRequest(BaseModel):
    plan_id: Optional[str] = Field(default=None, max_length=64)
    quantity: Optional[Any] = None
    guest_email: Optional[str] = Field(default=None, max_length=255)


class VerifyPaymentRequest(BaseModel):
    order_id: Optional[str] = Field(default=None, max_length=128)
    payment_id: Optional[str] = Field(default=None, max_length=128)


@router.post("/create-payment", status_code=http_status.HTTP_201_CREATED, summary="创建订单并获取支付链接")
def create_payment_api(
    payload: CreatePaymentRequest,
    current_user: dict = Depends(get_optional_user),
    gateway: XtraGatewayClient = Depends(get_gateway),
):
    session = DB.get_session()
    try:
        return create_payment(
            session,
            gateway,
            plan_id=payload.plan_id,
            quantity=payload.quantity,
            user_id=get_user_id(current_user),
            guest_email=payload.guest_email,
            phone_number=payload.phone_number,
            success_url=payload.success_url,
            cancel_url=payload.cancel_url,
        )
    except StorefrontError as e:
        raise http_error(e)
    finally:
        session.close()


@router.post("/create-order", status_code=http_status.HTTP_201_CREATED, summary="同步结算下单")
def create_order_api(payload: CreateOrderRequest, current_user: dict = Depends(get_optional_user)):
    session = DB.get_session()
    try:
        return create_settled_order(
            session,
            plan_id=payload.plan_id,
            quantity=payload.quantity,
            user_id=get_user_id(current_user),
            guest_email=payload.guest_email,
        )
    except StorefrontError as e:
        raise http_error(e)
    finally:
        session.close()


@router.post("/verify-payment", summary="查询网关并同步订单状态")
def verify_payment_api(payload: VerifyPaymentRequest, gateway: XtraGatewayClient = Depends(get_gateway)):
    session = DB.get_session()
    try:
        return verify_payment(session, gateway, order_id=payload.order_id, payment_id=payload.payment_id)
    except StorefrontError as e:
        raise http_error(e)
    finally:
        session.close()


def _process_webhook(gateway, raw_body: bytes, signature: str, params: Optional[dict]):
    session = DB.get_session()
    try:
        return handle_webhook(session, gateway, raw_body=raw_body, signature=signature, params=params)
    finally:
        session.close()


def _signature_header(request: Request) -> str:
    for name in SIGNATURE_HEADERS:
        value = request.headers.get(name)
        if value:
            return value
    return ""


@router.post("/webhook", summary="支付网关回调")
async def webhook_post(request: Request, gateway: XtraGatewayClient = Depends(get_gateway)):
    raw_body = await request.body()
    try:
        return await run_in_threadpool(_process_webhook, gateway, raw_body, _signature_header(request), None)
    except StorefrontError as e:
        raise http_error(e)


@router.get("/webhook", summary="支付网关回调（GET / 可用性探测）")
async def webhook_get(request: Request, gateway: XtraGatewayClient = Depends(get_gateway)):
    params = dict(request.query_params)
    if not params:
        return {"status": "ok"}
    try:
        # GET 回调按原始查询串签名
        raw_query = request.url.query.encode("utf-8")
        return await run_in_threadpool(_process_webhook, gateway, raw_query, _signature_header(request), params)
    except StorefrontError as e:
        raise http_error(e)


@router.get("/orders/admin", summary="管理员查询订单")
def admin_orders_api(
    status: str = Query("", max_length=16),
    limit: int = Query(50),
    offset: int = Query(0),
    current_user: dict = Depends(get_optional_user),
):
    _require_admin(current_user)
    session = DB.get_session()
    try:
        return success_response(list_orders(session, status=status, limit=limit, offset=offset))
    except StorefrontError as e:
        raise http_error(e)
    finally:
        session.close()
