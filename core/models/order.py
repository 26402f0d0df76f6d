from .base import Base, Column, String, Integer, DateTime, Text, Numeric, ForeignKey


ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_COMPLETED = "completed"
ORDER_STATUS_FAILED = "failed"
ORDER_STATUS_REFUNDED = "refunded"
ORDER_STATUSES = (ORDER_STATUS_PENDING, ORDER_STATUS_COMPLETED, ORDER_STATUS_FAILED, ORDER_STATUS_REFUNDED)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(64), primary_key=True, index=True)
    plan_id = Column(String(64), ForeignKey("plans.id"), index=True, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(16), nullable=False)
    status = Column(String(16), nullable=False, default=ORDER_STATUS_PENDING, index=True)
    # user_id 与 guest_email 二选一
    user_id = Column(String(64), index=True, nullable=True)
    guest_email = Column(String(255), index=True, nullable=True)
    phone_number = Column(String(20), nullable=True)
    payment_provider = Column(String(32), nullable=True)
    payment_provider_id = Column(String(128), unique=True, index=True, nullable=True)
    provider_status = Column(String(64), nullable=True)
    subscription_id = Column(String(64), nullable=True)
    # 履约标记：首次进入 completed 时由条件更新写入，之后不再变化
    fulfilled_at = Column(DateTime, nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime, index=True)
    updated_at = Column(DateTime)
