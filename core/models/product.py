from .base import Base, Column, String, Integer, DateTime, Boolean, Text


class Product(Base):
    __tablename__ = "products"

    id = Column(String(64), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, index=True)
    description = Column(Text, nullable=True)
    image_url = Column(String(1024), nullable=True)
    category = Column(String(64), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    # None 表示不限量库存
    stock_quantity = Column(Integer, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
