from .base import Base, Column, String, DateTime, Boolean, Text, Numeric, ForeignKey


PLAN_INTERVAL_MONTH = "month"
PLAN_INTERVAL_YEAR = "year"


class Plan(Base):
    __tablename__ = "plans"

    id = Column(String(64), primary_key=True, index=True)
    product_id = Column(String(64), ForeignKey("products.id"), index=True, nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(16), nullable=False, default="INR")
    interval = Column(String(16), nullable=False, default=PLAN_INTERVAL_MONTH)
    active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
