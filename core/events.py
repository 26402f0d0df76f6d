"""
core/events.py — 结构化事件日志

格式：event=xxx | key=val | key=val

    from core.log import get_logger
    from core.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.ORDER_CREATE, order_id="...", plan_id="...", amount="1000.00")
    # 输出：event=order.create | order_id=... | plan_id=... | amount=1000.00
"""

import logging
from typing import Any


class E:
    """事件类型常量，按模块分组。"""

    # ── 订单 Order ─────────────────────────────────────────────────────────────
    ORDER_CREATE = "order.create"
    ORDER_VALIDATION_FAIL = "order.validation.fail"
    ORDER_STOCK_INSUFFICIENT = "order.stock.insufficient"
    ORDER_STATUS_CHANGE = "order.status.change"
    ORDER_STATUS_KEEP = "order.status.keep"
    ORDER_MARK_FAILED = "order.mark_failed"

    # ── 支付网关 Gateway ───────────────────────────────────────────────────────
    GATEWAY_INITIATE_START = "gateway.initiate.start"
    GATEWAY_INITIATE_COMPLETE = "gateway.initiate.complete"
    GATEWAY_INITIATE_REJECT = "gateway.initiate.reject"
    GATEWAY_CHECK_STATUS = "gateway.check_status"
    GATEWAY_CHECK_MALFORMED = "gateway.check_status.malformed"
    GATEWAY_UNAVAILABLE = "gateway.unavailable"

    # ── 回调 Webhook ───────────────────────────────────────────────────────────
    WEBHOOK_RECEIVE = "webhook.receive"
    WEBHOOK_SIGNATURE_SKIP = "webhook.signature.skip"
    WEBHOOK_SIGNATURE_FAIL = "webhook.signature.fail"
    WEBHOOK_ORDER_MISSING = "webhook.order.missing"

    # ── 履约 Fulfilment ────────────────────────────────────────────────────────
    FULFIL_CLAIM = "fulfil.claim"
    FULFIL_ALREADY_DONE = "fulfil.already_done"
    FULFIL_STOCK_DECREMENT = "fulfil.stock.decrement"
    FULFIL_STOCK_SKIP = "fulfil.stock.skip"
    FULFIL_SUBSCRIPTION_ISSUE = "fulfil.subscription.issue"
    FULFIL_PARTIAL = "fulfil.partial"

    # ── 对账任务 Reconcile Job ────────────────────────────────────────────────
    RECONCILE_SWEEP_START = "reconcile.sweep.start"
    RECONCILE_SWEEP_COMPLETE = "reconcile.sweep.complete"
    RECONCILE_ORDER_FAIL = "reconcile.order.fail"

    # ── 系统 System ────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    记录结构化事件日志。

        log_event(logger, E.FULFIL_STOCK_SKIP, level="warning",
                  product_id="p1", available=0, requested=1)
        # → event=fulfil.stock.skip | product_id=p1 | available=0 | requested=1
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = v if isinstance(v, str) else str(v)
        # 截断超长字段，避免单行日志过大
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    getattr(logger, level)(" | ".join(parts), stacklevel=2)
