from .base import Base, Column, String, DateTime, ForeignKey


SUBSCRIPTION_STATUS_ACTIVE = "active"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(64), primary_key=True, index=True)
    plan_id = Column(String(64), ForeignKey("plans.id"), index=True, nullable=False)
    user_id = Column(String(64), index=True, nullable=True)
    guest_email = Column(String(255), index=True, nullable=True)
    status = Column(String(16), nullable=False, default=SUBSCRIPTION_STATUS_ACTIVE)
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
