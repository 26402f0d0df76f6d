from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from core.errors import NotFoundError
from core.models.plan import Plan
from core.models.product import Product


@dataclass(frozen=True)
class ActivePlan:
    plan_id: str
    name: str
    price: Decimal
    currency: str
    interval: str
    product_id: str
    product_name: str
    product_stock_quantity: Optional[int]


def _money(value) -> str:
    return f"{Decimal(value or 0):.2f}"


def _plan_to_dict(plan: Plan) -> Dict:
    return {
        "id": plan.id,
        "product_id": plan.product_id,
        "name": plan.name,
        "description": plan.description or "",
        "price": _money(plan.price),
        "currency": plan.currency,
        "interval": plan.interval,
        "active": bool(plan.active),
    }


def _product_to_dict(product: Product, plans: List[Plan]) -> Dict:
    return {
        "id": product.id,
        "name": product.name,
        "slug": product.slug or "",
        "description": product.description or "",
        "image_url": product.image_url or "",
        "category": product.category or "",
        "stock_quantity": product.stock_quantity,
        "active": bool(product.active),
        "created_at": product.created_at.isoformat() if product.created_at else None,
        "plans": [_plan_to_dict(p) for p in plans],
    }


def get_active_plan(session, plan_id: str) -> ActivePlan:
    """读取可购买的套餐：套餐 active 且所属商品存在。"""
    row = (
        session.query(Plan, Product)
        .join(Product, Product.id == Plan.product_id)
        .filter(Plan.id == str(plan_id or ""), Plan.active.is_(True))
        .first()
    )
    if not row:
        raise NotFoundError("Plan not found or inactive", {"plan_id": plan_id})
    plan, product = row
    return ActivePlan(
        plan_id=plan.id,
        name=plan.name,
        price=Decimal(plan.price),
        currency=plan.currency,
        interval=plan.interval,
        product_id=product.id,
        product_name=product.name or "",
        product_stock_quantity=product.stock_quantity,
    )


def _active_plans_by_product(session, product_ids: List[str]) -> Dict[str, List[Plan]]:
    grouped: Dict[str, List[Plan]] = {pid: [] for pid in product_ids}
    if not product_ids:
        return grouped
    plans = (
        session.query(Plan)
        .filter(Plan.product_id.in_(product_ids), Plan.active.is_(True))
        .order_by(Plan.price.asc())
        .all()
    )
    for plan in plans:
        grouped.setdefault(plan.product_id, []).append(plan)
    return grouped


def list_catalog(session) -> Dict:
    products = (
        session.query(Product)
        .filter(Product.active.is_(True))
        .order_by(Product.created_at.desc())
        .all()
    )
    grouped = _active_plans_by_product(session, [p.id for p in products])
    items = [_product_to_dict(p, grouped.get(p.id, [])) for p in products]
    return {"products": items, "count": len(items)}


def get_product_by_slug(session, slug: str) -> Dict:
    product = (
        session.query(Product)
        .filter(Product.slug == str(slug or "").strip(), Product.active.is_(True))
        .first()
    )
    if not product:
        raise NotFoundError("Product not found", {"slug": slug})
    grouped = _active_plans_by_product(session, [product.id])
    return _product_to_dict(product, grouped.get(product.id, []))
