import re
import uuid
from typing import Any, Dict, Optional

from core.errors import ValidationError


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
QUANTITY_MIN = 1
QUANTITY_MAX = 100
PHONE_MIN_DIGITS = 10
PHONE_MAX_DIGITS = 15
URL_MAX_LENGTH = 2048


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def normalize_phone(value: Any) -> str:
    """只保留数字，入库和发往网关前统一处理。"""
    return re.sub(r"\D", "", str(value or ""))


def validate_required(value: Any, field: str) -> Optional[str]:
    if is_blank(value):
        return f"{field} is required"
    return None


def validate_uuid(value: Any, field: str) -> Optional[str]:
    """只接受带连字符的标准写法，{...}、urn:uuid: 等变体一律拒绝。"""
    text = str(value or "").strip()
    try:
        canonical = str(uuid.UUID(text))
    except (TypeError, ValueError, AttributeError):
        return f"{field} must be a valid UUID"
    if canonical != text.lower():
        return f"{field} must be a valid UUID"
    return None


def validate_int_range(value: Any, field: str, minimum: int = None, maximum: int = None) -> Optional[str]:
    # bool 是 int 的子类，需单独排除
    if isinstance(value, bool) or not isinstance(value, int):
        return f"{field} must be an integer"
    if minimum is not None and value < minimum:
        return f"{field} must be at least {minimum}"
    if maximum is not None and value > maximum:
        return f"{field} must be at most {maximum}"
    return None


def validate_email(value: Any, field: str = "guest_email") -> Optional[str]:
    if not isinstance(value, str) or not EMAIL_RE.match(value):
        return f"{field} must be a valid email address"
    return None


def validate_phone(value: Any, field: str = "phone_number") -> Optional[str]:
    if not isinstance(value, str):
        return f"{field} must be a string"
    digits = normalize_phone(value)
    if len(digits) < PHONE_MIN_DIGITS or len(digits) > PHONE_MAX_DIGITS:
        return f"{field} must be {PHONE_MIN_DIGITS}-{PHONE_MAX_DIGITS} digits"
    return None


def validate_string(value: Any, field: str, min_length: int = None, max_length: int = None) -> Optional[str]:
    if not isinstance(value, str):
        return f"{field} must be a string"
    if min_length is not None and len(value) < min_length:
        return f"{field} must be at least {min_length} characters"
    if max_length is not None and len(value) > max_length:
        return f"{field} must be at most {max_length} characters"
    return None


class FieldErrors:
    """按字段收集校验错误，每个字段只保留第一条。"""

    def __init__(self):
        self.errors: Dict[str, str] = {}

    def check(self, field: str, *messages: Optional[str]) -> bool:
        if field in self.errors:
            return False
        for message in messages:
            if message:
                self.errors[field] = message
                return False
        return True

    def add(self, field: str, message: str):
        self.errors.setdefault(field, message)

    def raise_if_any(self, message: str = "Validation failed"):
        if self.errors:
            raise ValidationError(message, errors=self.errors)
