import calendar
import uuid
from datetime import datetime
from typing import Dict, Optional

from core.models.plan import PLAN_INTERVAL_MONTH, PLAN_INTERVAL_YEAR
from core.models.subscription import Subscription, SUBSCRIPTION_STATUS_ACTIVE


def _add_months(dt: datetime, months: int) -> datetime:
    """按自然月累加，目标月份没有该日时取月末（1/31 + 1 月 → 2/28 或 2/29）。"""
    month = dt.month - 1 + months
    year = dt.year + month // 12
    month = month % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def add_interval(start: datetime, interval: str) -> datetime:
    if interval == PLAN_INTERVAL_MONTH:
        return _add_months(start, 1)
    if interval == PLAN_INTERVAL_YEAR:
        return _add_months(start, 12)
    raise ValueError(f"unsupported plan interval: {interval}")


def issue(
    session,
    plan_id: str,
    interval: str,
    user_id: Optional[str] = None,
    guest_email: Optional[str] = None,
    now: datetime = None,
) -> Subscription:
    """创建一条 active 订阅，不提交事务。"""
    if bool(user_id) == bool(guest_email):
        raise ValueError("exactly one of user_id / guest_email is required")
    start = now or datetime.now()
    subscription = Subscription(
        id=str(uuid.uuid4()),
        plan_id=plan_id,
        user_id=user_id or None,
        guest_email=None if user_id else guest_email,
        status=SUBSCRIPTION_STATUS_ACTIVE,
        current_period_start=start,
        current_period_end=add_interval(start, interval),
        created_at=start,
        updated_at=start,
    )
    session.add(subscription)
    session.flush()
    return subscription


def subscription_to_dict(subscription: Subscription) -> Dict:
    return {
        "id": subscription.id,
        "plan_id": subscription.plan_id,
        "user_id": subscription.user_id,
        "guest_email": subscription.guest_email,
        "status": subscription.status,
        "current_period_start": subscription.current_period_start.isoformat(),
        "current_period_end": subscription.current_period_end.isoformat(),
    }
