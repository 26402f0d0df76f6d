import time
from threading import Thread

from core.billing_service import reconcile_stale_orders
from core.config import cfg
from core.db import DB
from core.events import E, log_event
from core.log import get_logger, trace_ctx
from core.payment_gateway import GatewayConfig, XtraGatewayClient

logger = get_logger(__name__)


def run_reconcile_once(gateway: XtraGatewayClient = None):
    gateway = gateway or XtraGatewayClient(GatewayConfig.from_config(cfg))
    min_age = int(cfg.get("billing.reconcile_min_age_seconds", 300) or 300)
    batch = int(cfg.get("billing.reconcile_batch_size", 100) or 100)
    session = DB.get_session()
    try:
        log_event(logger, E.RECONCILE_SWEEP_START, min_age=min_age, batch=batch)
        result = reconcile_stale_orders(session, gateway, min_age_seconds=min_age, limit=batch)
        log_event(logger, E.RECONCILE_SWEEP_COMPLETE, **result)
        return result
    finally:
        session.close()


def _worker_loop():
    interval = max(30, int(cfg.get("billing.reconcile_interval_seconds", 300) or 300))
    while True:
        with trace_ctx():
            try:
                run_reconcile_once()
            except Exception:
                logger.exception("pending 订单对账异常")
        time.sleep(interval)


def start_reconcile_worker():
    t = Thread(target=_worker_loop, name="reconcile-worker", daemon=True)
    t.start()
    return t
