from fastapi import APIRouter

from core.catalog_service import get_product_by_slug, list_catalog
from core.db import DB
from core.errors import StorefrontError
from .base import http_error, success_response


router = APIRouter(prefix="/catalog", tags=["商品目录"])


@router.get("/products", summary="获取在售商品及套餐")
def catalog_products():
    session = DB.get_session()
    try:
        return success_response(list_catalog(session))
    finally:
        session.close()


@router.get("/products/{slug}", summary="按 slug 获取商品详情")
def catalog_product_detail(slug: str):
    session = DB.get_session()
    try:
        return success_response(get_product_by_slug(session, slug))
    except StorefrontError as e:
        raise http_error(e)
    finally:
        session.close()
