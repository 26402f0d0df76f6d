from typing import Any, Dict, Optional


class StorefrontError(Exception):
    """业务异常基类，API 层按 status_code 转成结构化错误响应。"""

    status_code = 500
    code = 50000

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.details = details or {}

    @property
    def kind(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class ValidationError(StorefrontError):
    status_code = 400
    code = 40001

    def __init__(self, message: str = "Validation failed", errors: Optional[Dict[str, str]] = None):
        super().__init__(message, {"errors": dict(errors or {})})
        self.errors = dict(errors or {})


class InsufficientStockError(StorefrontError):
    status_code = 400
    code = 40002

    def __init__(self, available: int, requested: int):
        super().__init__("Insufficient stock", {"available": available, "requested": requested})
        self.available = available
        self.requested = requested


class SignatureError(StorefrontError):
    status_code = 401
    code = 40101


class AuthenticationRequired(StorefrontError):
    status_code = 401
    code = 40102


class PermissionDeniedError(StorefrontError):
    status_code = 403
    code = 40301


class NotFoundError(StorefrontError):
    status_code = 404
    code = 40401


class PartialFulfillmentError(StorefrontError):
    """订单已 completed，但库存或订阅未能落库；订单状态不回滚。"""

    status_code = 500
    code = 50001

    def __init__(self, message: str, order_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, {"order_id": order_id, **(details or {})})
        self.order_id = order_id


class GatewayError(StorefrontError):
    status_code = 502
    code = 50200


class GatewayUnavailable(GatewayError):
    code = 50201


class GatewayRejected(GatewayError):
    code = 50202
