from typing import Any, Dict

from fastapi import HTTPException

from core.errors import StorefrontError


def success_response(data: Any = None, message: str = "success") -> Dict:
    return {"code": 0, "message": message, "data": data}


def error_response(code: int, message: str, data: Any = None) -> Dict:
    return {"code": code, "message": message, "data": data}


def http_error(e: StorefrontError) -> HTTPException:
    """业务异常 → HTTPException，detail 为统一错误结构。"""
    return HTTPException(
        status_code=e.status_code,
        detail=error_response(
            code=e.code,
            message=e.message,
            data={"kind": e.kind, "details": e.details},
        ),
    )
