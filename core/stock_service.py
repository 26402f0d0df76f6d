"""
库存账本

只有两个入口：
• ensure_available() 下单时的提示性检查，不加锁、不预留
• decrement() 履约时的条件扣减：UPDATE ... WHERE stock_quantity >= :qty，
  由数据库保证并发下不会扣成负数

两者之间存在检查-扣减的时间窗，两个顾客可能同时通过下单检查；
以履约时的条件扣减为准，失败方只记录日志（见 billing_service）。
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import update

from core.errors import InsufficientStockError, NotFoundError
from core.models.product import Product


def ensure_available(stock_quantity: Optional[int], quantity: int) -> None:
    if stock_quantity is None:
        return
    if int(stock_quantity) < int(quantity):
        raise InsufficientStockError(available=int(stock_quantity), requested=int(quantity))


def decrement(session, product_id: str, quantity: int) -> Optional[int]:
    """
    扣减库存，返回剩余数量；不限量商品返回 None 且不做任何修改。

    库存不足时抛 InsufficientStockError，数据不变。
    不提交事务，由调用方统一 commit。
    """
    qty = int(quantity)
    result = session.execute(
        update(Product)
        .where(
            Product.id == product_id,
            Product.stock_quantity.isnot(None),
            Product.stock_quantity >= qty,
        )
        .values(
            stock_quantity=Product.stock_quantity - qty,
            updated_at=datetime.now(),
        )
        .execution_options(synchronize_session=False)
    )
    remaining = session.query(Product.stock_quantity).filter(Product.id == product_id).first()
    if remaining is None:
        raise NotFoundError("Product not found", {"product_id": product_id})
    if int(result.rowcount or 0) == 1:
        return int(remaining[0])
    if remaining[0] is None:
        return None
    raise InsufficientStockError(available=int(remaining[0]), requested=qty)
