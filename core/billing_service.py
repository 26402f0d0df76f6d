"""
core/billing_service.py — 订单对账引擎

订单状态只在这里改。三个入口共用同一个状态迁移函数 apply_provider_status：
• 下单（create_payment / create_settled_order）
• 客户端轮询（verify_payment）
• 网关回调（handle_webhook）

首次进入 completed 的判定是数据库上的条件更新：
    UPDATE orders SET status='completed', fulfilled_at=:now
    WHERE id=:id AND status NOT IN ('completed','refunded') AND fulfilled_at IS NULL
只有 rowcount == 1 的那次调用执行扣库存、开订阅，回调与轮询并发也只会履约一次。
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from core import stock_service, subscription_service
from core.catalog_service import get_active_plan
from core.errors import (
    GatewayError,
    GatewayUnavailable,
    InsufficientStockError,
    NotFoundError,
    PartialFulfillmentError,
    SignatureError,
    StorefrontError,
    ValidationError,
)
from core.events import E, log_event
from core.log import get_logger
from core.models.order import (
    Order,
    ORDER_STATUSES,
    ORDER_STATUS_COMPLETED,
    ORDER_STATUS_FAILED,
    ORDER_STATUS_PENDING,
    ORDER_STATUS_REFUNDED,
)
from core.models.plan import Plan
from core.models.product import Product
from core.payment_gateway import UNKNOWN_STATUS, ProviderStatus, map_provider_status
from core.validation import (
    FieldErrors,
    QUANTITY_MAX,
    QUANTITY_MIN,
    URL_MAX_LENGTH,
    is_blank,
    normalize_phone,
    validate_email,
    validate_int_range,
    validate_phone,
    validate_required,
    validate_string,
    validate_uuid,
)

logger = get_logger(__name__)

# 进入这些状态后不再被网关状态覆盖
_STICKY_STATUSES = (ORDER_STATUS_COMPLETED, ORDER_STATUS_REFUNDED)

_PROVIDER_TO_ORDER_STATUS = {
    ProviderStatus.COMPLETED: ORDER_STATUS_COMPLETED,
    ProviderStatus.FAILED: ORDER_STATUS_FAILED,
    ProviderStatus.PENDING: ORDER_STATUS_PENDING,
    ProviderStatus.UNKNOWN: ORDER_STATUS_PENDING,
}

SETTLED_PROVIDER = "manual"
SETTLED_PROVIDER_STATUS = "SETTLED"


@dataclass
class ReconcileResult:
    order: Order
    provider_status: str
    previous_status: str
    fulfilled: bool = False
    subscription: Any = None
    stock_remaining: Optional[int] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.order.status


def resolve_order_status(provider_status: Any) -> str:
    return _PROVIDER_TO_ORDER_STATUS[map_provider_status(provider_status)]


def compute_amount(price: Decimal, quantity: int) -> Decimal:
    return (Decimal(price) * int(quantity)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def order_to_dict(order: Order) -> Dict:
    return {
        "id": order.id,
        "plan_id": order.plan_id,
        "quantity": int(order.quantity or 0),
        "amount": f"{Decimal(order.amount or 0):.2f}",
        "currency": order.currency,
        "status": order.status,
        "user_id": order.user_id,
        "guest_email": order.guest_email,
        "phone_number": order.phone_number or "",
        "payment_provider": order.payment_provider or "",
        "payment_provider_id": order.payment_provider_id,
        "provider_status": order.provider_status or "",
        "subscription_id": order.subscription_id,
        "created_at": order.created_at.isoformat() if order.created_at else None,
        "updated_at": order.updated_at.isoformat() if order.updated_at else None,
    }


# ─── 校验 ─────────────────────────────────────────────────────────────────────

def _check_purchase(errors: FieldErrors, plan_id, quantity, user_id, guest_email):
    errors.check("plan_id", validate_required(plan_id, "plan_id"), validate_uuid(plan_id, "plan_id"))
    errors.check("quantity", validate_int_range(quantity, "quantity", QUANTITY_MIN, QUANTITY_MAX))
    if not user_id:
        errors.check(
            "guest_email",
            validate_required(guest_email, "guest_email"),
            validate_email(guest_email),
        )


def _check_payment_fields(errors: FieldErrors, phone_number, success_url, cancel_url):
    errors.check("phone_number", validate_required(phone_number, "phone_number"), validate_phone(phone_number))
    for name, value in (("success_url", success_url), ("cancel_url", cancel_url)):
        errors.check(name, validate_required(value, name), validate_string(value, name, 1, URL_MAX_LENGTH))


def _raise_validation(errors: FieldErrors):
    if errors.errors:
        log_event(logger, E.ORDER_VALIDATION_FAIL, level="warning", fields=",".join(sorted(errors.errors)))
    errors.raise_if_any()


# ─── 订单读写 ─────────────────────────────────────────────────────────────────

def _insert_order(
    session,
    plan,
    quantity: int,
    user_id: Optional[str],
    guest_email: Optional[str],
    phone_number: Optional[str],
    provider: str,
) -> Order:
    now = datetime.now()
    order = Order(
        id=str(uuid.uuid4()),
        plan_id=plan.plan_id,
        quantity=quantity,
        amount=compute_amount(plan.price, quantity),
        currency=plan.currency,
        status=ORDER_STATUS_PENDING,
        user_id=user_id or None,
        guest_email=None if user_id else str(guest_email).strip(),
        phone_number=phone_number,
        payment_provider=provider,
        created_at=now,
        updated_at=now,
    )
    session.add(order)
    session.commit()
    session.refresh(order)
    log_event(
        logger,
        E.ORDER_CREATE,
        order_id=order.id,
        plan_id=order.plan_id,
        quantity=quantity,
        amount=f"{order.amount:.2f}",
        guest=not bool(user_id),
    )
    return order


def get_order(session, order_id: str) -> Optional[Order]:
    if is_blank(order_id):
        return None
    return session.query(Order).filter(Order.id == str(order_id).strip()).first()


def get_order_by_provider_id(session, payment_id: str) -> Optional[Order]:
    if is_blank(payment_id):
        return None
    return session.query(Order).filter(Order.payment_provider_id == str(payment_id).strip()).first()


def _mark_failed(session, order: Order, reason: str):
    """网关下单失败：pending → failed，避免订单永久悬挂。"""
    session.rollback()
    session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status == ORDER_STATUS_PENDING)
        .values(status=ORDER_STATUS_FAILED, note=reason[:500], updated_at=datetime.now())
        .execution_options(synchronize_session=False)
    )
    session.commit()
    session.refresh(order)
    log_event(logger, E.ORDER_MARK_FAILED, level="warning", order_id=order.id, reason=reason)


# ─── 状态迁移 ─────────────────────────────────────────────────────────────────

def apply_provider_status(session, order: Order, provider_status: Any) -> ReconcileResult:
    """
    把网关状态落到订单上，幂等。

    completed/refunded 的订单不会被改回 pending/failed；重复进入 completed
    只返回当前状态，不再产生副作用。
    """
    raw = str(provider_status if provider_status is not None else "")[:64]
    previous = order.status
    if raw == UNKNOWN_STATUS:
        # 查单失败的占位状态，不落库
        log_event(logger, E.ORDER_STATUS_KEEP, order_id=order.id, status=previous, provider_status=raw)
        return ReconcileResult(order=order, provider_status=raw, previous_status=previous)
    target = resolve_order_status(provider_status)
    if target == ORDER_STATUS_COMPLETED:
        return _complete_order(session, order, raw, previous)

    now = datetime.now()
    changed = session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status.notin_(_STICKY_STATUSES))
        .values(status=target, provider_status=raw, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    session.refresh(order)
    if int(changed.rowcount or 0) == 1 and previous != target:
        log_event(logger, E.ORDER_STATUS_CHANGE, order_id=order.id, previous=previous, status=target, provider_status=raw)
    else:
        log_event(logger, E.ORDER_STATUS_KEEP, order_id=order.id, status=order.status, provider_status=raw)
    return ReconcileResult(order=order, provider_status=raw, previous_status=previous)


def _claim_completion(session, order_id: str, raw: str, now: datetime) -> bool:
    claimed = session.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.status.notin_(_STICKY_STATUSES),
            Order.fulfilled_at.is_(None),
        )
        .values(
            status=ORDER_STATUS_COMPLETED,
            provider_status=raw,
            fulfilled_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return int(claimed.rowcount or 0) == 1


def _complete_order(session, order: Order, raw: str, previous: str) -> ReconcileResult:
    now = datetime.now()
    result = ReconcileResult(order=order, provider_status=raw, previous_status=previous)
    if not _claim_completion(session, order.id, raw, now):
        session.commit()
        session.refresh(order)
        log_event(logger, E.FULFIL_ALREADY_DONE, order_id=order.id, status=order.status)
        return result

    result.fulfilled = True
    log_event(logger, E.FULFIL_CLAIM, order_id=order.id, previous=previous, provider_status=raw)
    plan = session.query(Plan).filter(Plan.id == order.plan_id).first()
    if plan is None:
        session.commit()
        session.refresh(order)
        raise _partial(order, "plan missing, subscription not issued", plan_id=order.plan_id)

    _fulfil_stock(session, order, plan, result)

    try:
        with session.begin_nested():
            subscription = subscription_service.issue(
                session,
                plan_id=plan.id,
                interval=plan.interval,
                user_id=order.user_id,
                guest_email=order.guest_email,
                now=now,
            )
            session.execute(
                update(Order)
                .where(Order.id == order.id)
                .values(subscription_id=subscription.id)
                .execution_options(synchronize_session=False)
            )
    except (SQLAlchemyError, ValueError) as e:
        session.commit()
        session.refresh(order)
        raise _partial(order, "subscription issuance failed", error=str(e)) from e

    session.commit()
    session.refresh(order)
    result.subscription = subscription
    log_event(
        logger,
        E.FULFIL_SUBSCRIPTION_ISSUE,
        order_id=order.id,
        subscription_id=subscription.id,
        period_end=subscription.current_period_end.isoformat(),
    )
    log_event(logger, E.ORDER_STATUS_CHANGE, order_id=order.id, previous=previous, status=order.status, provider_status=raw)
    return result


def _fulfil_stock(session, order: Order, plan: Plan, result: ReconcileResult):
    """扣减库存；失败只记录，不影响订单 completed。"""
    quantity = int(order.quantity or 1)
    try:
        with session.begin_nested():
            result.stock_remaining = stock_service.decrement(session, plan.product_id, quantity)
    except (InsufficientStockError, NotFoundError) as e:
        result.warnings.append(f"stock not decremented: {e.message}")
        log_event(
            logger,
            E.FULFIL_STOCK_SKIP,
            level="warning",
            order_id=order.id,
            product_id=plan.product_id,
            requested=quantity,
            details=json.dumps(e.details, ensure_ascii=False),
        )
        _partial(order, f"stock not decremented: {e.message}")
        return
    except SQLAlchemyError as e:
        result.warnings.append("stock decrement failed")
        _partial(order, f"stock decrement failed: {e}")
        return
    log_event(
        logger,
        E.FULFIL_STOCK_DECREMENT,
        order_id=order.id,
        product_id=plan.product_id,
        quantity=quantity,
        remaining="unmetered" if result.stock_remaining is None else result.stock_remaining,
    )


def _partial(order: Order, message: str, **details) -> PartialFulfillmentError:
    error = PartialFulfillmentError(message, order_id=order.id, details=details)
    log_event(logger, E.FULFIL_PARTIAL, level="error", order_id=order.id, kind=error.kind, reason=message)
    return error


# ─── 入口 1：下单 ─────────────────────────────────────────────────────────────

def create_payment(
    session,
    gateway,
    plan_id: str,
    phone_number: str,
    success_url: str,
    cancel_url: str,
    quantity: Any = None,
    user_id: Optional[str] = None,
    guest_email: Optional[str] = None,
) -> Dict:
    """创建 pending 订单并向网关申请支付链接，网关失败时订单置为 failed。"""
    quantity = 1 if quantity is None else quantity
    errors = FieldErrors()
    _check_purchase(errors, plan_id, quantity, user_id, guest_email)
    _check_payment_fields(errors, phone_number, success_url, cancel_url)
    _raise_validation(errors)

    if not gateway.is_configured:
        raise GatewayUnavailable("Payment gateway not configured")

    plan = get_active_plan(session, plan_id)
    try:
        stock_service.ensure_available(plan.product_stock_quantity, quantity)
    except InsufficientStockError as e:
        log_event(logger, E.ORDER_STOCK_INSUFFICIENT, level="warning", plan_id=plan.plan_id, **e.details)
        raise

    phone = normalize_phone(phone_number)
    order = _insert_order(session, plan, quantity, user_id, guest_email, phone, gateway.name)
    try:
        payment = gateway.initiate(
            order_id=order.id,
            amount=order.amount,
            phone_number=phone,
            success_url=success_url,
            product_name=plan.product_name,
            plan_id=plan.plan_id,
        )
    except GatewayError as e:
        _mark_failed(session, order, f"{e.kind}: {e.message}")
        raise

    try:
        order.payment_provider_id = payment.provider_order_id
        order.updated_at = datetime.now()
        session.commit()
    except SQLAlchemyError as e:
        _mark_failed(session, order, f"provider id not stored: {e.__class__.__name__}")
        raise
    return {
        "order_id": order.id,
        "payment_id": payment.provider_order_id,
        "payment_url": payment.payment_url,
    }


def create_settled_order(
    session,
    plan_id: str,
    quantity: Any = None,
    user_id: Optional[str] = None,
    guest_email: Optional[str] = None,
) -> Dict:
    """同步结算的下单：写入订单后立即走同一条 completed 迁移。"""
    quantity = 1 if quantity is None else quantity
    errors = FieldErrors()
    _check_purchase(errors, plan_id, quantity, user_id, guest_email)
    _raise_validation(errors)

    plan = get_active_plan(session, plan_id)
    stock_service.ensure_available(plan.product_stock_quantity, quantity)
    order = _insert_order(session, plan, quantity, user_id, guest_email, None, SETTLED_PROVIDER)
    result = _complete_order(session, order, SETTLED_PROVIDER_STATUS, order.status)
    return {
        "order": order_to_dict(result.order),
        "subscription": subscription_service.subscription_to_dict(result.subscription) if result.subscription else None,
        "stock_remaining": result.stock_remaining,
        "warnings": result.warnings,
    }


# ─── 入口 2：客户端轮询 ──────────────────────────────────────────────────────

def verify_payment(session, gateway, order_id: str = None, payment_id: str = None) -> Dict:
    """向网关查单并落状态；网关不可用时直接抛出，订单不变。"""
    if is_blank(order_id) and is_blank(payment_id):
        raise ValidationError(errors={"order_id": "payment_id or order_id is required"})
    if not gateway.is_configured:
        raise GatewayUnavailable("Payment gateway not configured")

    order = get_order(session, order_id) if not is_blank(order_id) else get_order_by_provider_id(session, payment_id)
    if not order:
        raise NotFoundError("Order not found", {"order_id": order_id, "payment_id": payment_id})

    provider_status = gateway.check_status(order.payment_provider_id or order.id)
    result = apply_provider_status(session, order, provider_status)
    return {
        "order_id": order.id,
        "status": result.status,
        "provider_status": result.provider_status,
        "verified": True,
        "warnings": result.warnings,
    }


# ─── 入口 3：网关回调 ─────────────────────────────────────────────────────────

def _parse_webhook_payload(raw_body: bytes, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if params:
        return dict(params)
    try:
        payload = json.loads((raw_body or b"").decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError("Invalid JSON payload")
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload")
    return payload


def _first_present(data: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if not is_blank(value):
            return str(value).strip()
    return None


def handle_webhook(
    session,
    gateway,
    raw_body: bytes = b"",
    signature: str = "",
    params: Optional[Dict[str, Any]] = None,
) -> Dict:
    """
    处理网关推送。按网关侧 payment_id（payment_provider_id）定位订单。

    配置了 webhook_secret 才校验签名；未配置时跳过并记录日志。
    """
    if gateway.signature_required:
        if not gateway.verify_webhook_signature(raw_body or b"", signature):
            log_event(logger, E.WEBHOOK_SIGNATURE_FAIL, level="warning", has_signature=bool(signature))
            raise SignatureError("Invalid signature")
    else:
        log_event(logger, E.WEBHOOK_SIGNATURE_SKIP, level="debug")

    payload = _parse_webhook_payload(raw_body, params)
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    payment_id = _first_present(data, "payment_id", "id", "transaction_id")
    status = _first_present(data, "status", "payment_status") or _first_present(payload, "event")
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    provider_order_id = _first_present(metadata, "order_id") or _first_present(data, "order_id")

    errors = FieldErrors()
    errors.check("payment_id", validate_required(payment_id, "payment_id"))
    errors.check("status", validate_required(status, "status"))
    errors.raise_if_any("Invalid webhook payload")
    log_event(logger, E.WEBHOOK_RECEIVE, payment_id=payment_id, status=status)

    order = get_order_by_provider_id(session, payment_id)
    if not order:
        log_event(logger, E.WEBHOOK_ORDER_MISSING, level="warning", payment_id=payment_id)
        raise NotFoundError("Order not found", {"payment_id": payment_id})

    result = apply_provider_status(session, order, status)
    return {
        "success": True,
        "order_id": order.id,
        "status": result.status,
        "payment_id": payment_id,
        "provider_order_id": provider_order_id,
    }


# ─── 后台对账 & 管理查询 ─────────────────────────────────────────────────────

def reconcile_stale_orders(session, gateway, min_age_seconds: int = 300, limit: int = 100) -> Dict:
    """对超过 min_age_seconds 仍为 pending 的网关订单逐个查单。"""
    cutoff = datetime.now() - timedelta(seconds=max(0, int(min_age_seconds)))
    orders = (
        session.query(Order)
        .filter(
            Order.status == ORDER_STATUS_PENDING,
            Order.payment_provider_id.isnot(None),
            Order.created_at <= cutoff,
        )
        .order_by(Order.created_at.asc())
        .limit(max(1, min(int(limit or 100), 1000)))
        .all()
    )
    summary = {"total": len(orders), "completed": 0, "failed": 0, "pending": 0, "errors": 0}
    for order in orders:
        try:
            outcome = verify_payment(session, gateway, order_id=order.id)
        except StorefrontError as e:
            session.rollback()
            summary["errors"] += 1
            log_event(logger, E.RECONCILE_ORDER_FAIL, level="warning", order_id=order.id, kind=e.kind, error=e.message)
            continue
        summary[outcome["status"]] = summary.get(outcome["status"], 0) + 1
    return summary


def list_orders(session, status: str = "", limit: int = 50, offset: int = 0) -> Dict:
    errors = FieldErrors()
    status_text = str(status or "").strip().lower()
    if status_text and status_text not in ORDER_STATUSES:
        errors.add("status", f"status must be one of: {', '.join(ORDER_STATUSES)}")
    errors.check("limit", validate_int_range(limit, "limit", 1, 100))
    errors.check("offset", validate_int_range(offset, "offset", 0))
    errors.raise_if_any("Invalid query parameters")

    query = (
        session.query(Order, Plan, Product)
        .outerjoin(Plan, Plan.id == Order.plan_id)
        .outerjoin(Product, Product.id == Plan.product_id)
    )
    if status_text:
        query = query.filter(Order.status == status_text)
    total = query.count()
    rows = query.order_by(Order.created_at.desc()).offset(offset).limit(limit).all()
    items = []
    for order, plan, product in rows:
        item = order_to_dict(order)
        item["plan"] = {
            "id": plan.id if plan else order.plan_id,
            "name": plan.name if plan else "",
            "interval": plan.interval if plan else "",
            "product": {"id": product.id, "name": product.name} if product else None,
        }
        items.append(item)
    return {
        "orders": items,
        "count": total,
        "limit": limit,
        "offset": offset,
        "has_more": offset + limit < total,
    }
