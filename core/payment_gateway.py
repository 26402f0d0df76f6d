"""
core/payment_gateway.py — 支付网关适配层

所有与 xtragateway 报文格式相关的知识都在这里：
• 下单 /api/create-order、查单 /api/check-order-status（表单编码 POST）
• 网关状态词汇 → ProviderStatus
• 回调签名校验（HMAC-SHA256）

配置通过 GatewayConfig 在构造时注入，业务层不直接读环境变量。
"""

import hashlib
import hmac
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from core.errors import GatewayRejected, GatewayUnavailable
from core.events import E, log_event
from core.log import get_logger

logger = get_logger(__name__)

PROVIDER_NAME = "xtragateway"
DEFAULT_SITE_URL = "https://xtragateway.site"
ORDER_ID_PLACEHOLDER = "{ORDER_ID}"
UNKNOWN_STATUS = "UNKNOWN"
SIGNATURE_HEADERS = ("x-xtragateway-signature", "x-signature")


class ProviderStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"
    UNKNOWN = "unknown"


_STATUS_SYNONYMS = {
    "paid": ProviderStatus.COMPLETED,
    "success": ProviderStatus.COMPLETED,
    "completed": ProviderStatus.COMPLETED,
    "failed": ProviderStatus.FAILED,
    "cancelled": ProviderStatus.FAILED,
    "canceled": ProviderStatus.FAILED,
    "error": ProviderStatus.FAILED,
    "pending": ProviderStatus.PENDING,
    "processing": ProviderStatus.PENDING,
}

_CREATE_OK_STATUSES = (True, "true", "SUCCESS", "COMPLETED")


def map_provider_status(raw: Any) -> ProviderStatus:
    """网关状态字符串（大小写不敏感）→ ProviderStatus，无法识别的一律 UNKNOWN。"""
    if not isinstance(raw, str):
        return ProviderStatus.UNKNOWN
    return _STATUS_SYNONYMS.get(raw.strip().lower(), ProviderStatus.UNKNOWN)


@dataclass(frozen=True)
class GatewayConfig:
    api_key: str = ""
    site_url: str = DEFAULT_SITE_URL
    redirect_url: str = ""
    webhook_secret: str = ""
    timeout_seconds: float = 15.0

    @classmethod
    def from_config(cls, config) -> "GatewayConfig":
        return cls(
            api_key=str(config.get("gateway.api_key", "") or ""),
            site_url=str(config.get("gateway.site_url", DEFAULT_SITE_URL)).rstrip("/"),
            redirect_url=str(config.get("gateway.redirect_url", "") or ""),
            webhook_secret=str(config.get("gateway.webhook_secret", "") or ""),
            timeout_seconds=float(config.get("gateway.timeout_seconds", 15) or 15),
        )


@dataclass(frozen=True)
class PaymentSession:
    payment_url: str
    provider_order_id: str
    raw: Dict[str, Any]


def build_redirect_url(success_url: str, order_id: str, fallback: str = "") -> str:
    url = str(success_url or "").strip()
    if not url:
        return str(fallback or "").strip()
    if ORDER_ID_PLACEHOLDER in url:
        return url.replace(ORDER_ID_PLACEHOLDER, order_id)
    joiner = "&" if "?" in url else "?"
    return f"{url}{joiner}order_id={quote(order_id, safe='')}"


def sign_payload(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    """未配置 secret 时不校验（直接放行），由调用方记录日志。"""
    if not secret:
        return True
    received = str(signature or "").strip()
    if received.lower().startswith("sha256="):
        received = received[7:]
    if not received:
        return False
    return hmac.compare_digest(sign_payload(raw_body or b"", secret), received.lower())


def _read_json(resp: requests.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {"message": "Invalid JSON from gateway"}
    return data if isinstance(data, dict) else {"message": "Invalid JSON from gateway", "raw": data}


def extract_status(result: Dict[str, Any]) -> Optional[str]:
    """查单响应中依次取 result.txnStatus、result.status、顶层字符串 status。"""
    inner = result.get("result") if isinstance(result.get("result"), dict) else {}
    for candidate in (inner.get("txnStatus"), inner.get("status"), result.get("status")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


class XtraGatewayClient:
    name = PROVIDER_NAME

    def __init__(self, config: GatewayConfig):
        self.config = config

    @property
    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    @property
    def signature_required(self) -> bool:
        return bool(self.config.webhook_secret)

    def _post(self, path: str, form: Dict[str, str]) -> requests.Response:
        url = f"{self.config.site_url}{path}"
        try:
            return requests.post(url, data=form, timeout=self.config.timeout_seconds)
        except requests.RequestException as e:
            log_event(logger, E.GATEWAY_UNAVAILABLE, level="warning", path=path, error=repr(e))
            raise GatewayUnavailable("Payment gateway unavailable", {"path": path, "error": str(e)}) from e

    def _require_api_key(self):
        if not self.is_configured:
            raise GatewayUnavailable("Payment gateway not configured")

    def build_redirect_url(self, success_url: str, order_id: str) -> str:
        return build_redirect_url(success_url, order_id, fallback=self.config.redirect_url)

    def initiate(
        self,
        order_id: str,
        amount: Decimal,
        phone_number: str,
        success_url: str,
        product_name: str = "",
        plan_id: str = "",
    ) -> PaymentSession:
        self._require_api_key()
        redirect_url = self.build_redirect_url(success_url, order_id)
        form = {
            "customer_mobile": phone_number,
            "user_token": self.config.api_key,
            "amount": f"{Decimal(amount):.2f}",
            "order_id": order_id,
            "redirect_url": redirect_url,
            "remark1": product_name or "order",
            "remark2": plan_id,
        }
        log_event(logger, E.GATEWAY_INITIATE_START, order_id=order_id, amount=form["amount"])
        resp = self._post("/api/create-order", form)
        result = _read_json(resp)
        if not (resp.ok and result.get("status") in _CREATE_OK_STATUSES):
            message = str(result.get("message") or "Payment gateway error")
            log_event(
                logger,
                E.GATEWAY_INITIATE_REJECT,
                level="warning",
                order_id=order_id,
                http_status=resp.status_code,
                message=message,
            )
            raise GatewayRejected(message, {"http_status": resp.status_code, "response": result})

        inner = result.get("result") if isinstance(result.get("result"), dict) else {}
        provider_order_id = str(inner.get("orderId") or order_id)
        session = PaymentSession(
            payment_url=str(inner.get("payment_url") or ""),
            provider_order_id=provider_order_id,
            raw=result,
        )
        log_event(logger, E.GATEWAY_INITIATE_COMPLETE, order_id=order_id, provider_order_id=provider_order_id)
        return session

    def check_status(self, provider_order_id: str) -> str:
        """
        查询网关订单状态，返回原始状态字符串。

        网络异常/超时抛 GatewayUnavailable；非 2xx 或报文无法解析时返回
        UNKNOWN，不让一次失败的轮询改动订单。
        """
        self._require_api_key()
        resp = self._post(
            "/api/check-order-status",
            {"user_token": self.config.api_key, "order_id": provider_order_id},
        )
        if not resp.ok:
            log_event(
                logger,
                E.GATEWAY_CHECK_MALFORMED,
                level="warning",
                provider_order_id=provider_order_id,
                http_status=resp.status_code,
            )
            return UNKNOWN_STATUS
        status = extract_status(_read_json(resp))
        if status is None:
            log_event(logger, E.GATEWAY_CHECK_MALFORMED, level="warning", provider_order_id=provider_order_id)
            return UNKNOWN_STATUS
        log_event(logger, E.GATEWAY_CHECK_STATUS, provider_order_id=provider_order_id, status=status)
        return status

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        return verify_webhook_signature(raw_body, signature, self.config.webhook_secret)
