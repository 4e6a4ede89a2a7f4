# services/razorpay_client.py
# ============================================================================
# SKILLNESTX PAYMENTS: RAZORPAY GATEWAY CLIENT
# ============================================================================
# Purpose: Thin async wrapper over the Razorpay REST API
#
# - Orders: create and authoritative re-fetch
# - Payments: lookup (capture state, refunded amount)
# - Refunds: issue against a captured payment
# - Signatures: checkout HMAC and webhook HMAC
#
# FAILURE HANDLING:
# - Every transport error, timeout, non-2xx or malformed body raises
#   GatewayError. Callers translate it into their own error code.
# - No retries at this layer
# ============================================================================

import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from core.config import RazorpayConfig
from core.errors import GatewayError

logger = structlog.get_logger(component="razorpay_client")


# ============================================================================
# SECTION 1: SIGNATURES
# ============================================================================

def _hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def sign_payment(secret: str, order_id: str, payment_id: str) -> str:
    """Checkout signature: HMAC-SHA256 of "order_id|payment_id"."""
    return _hmac_sha256(secret, f"{order_id}|{payment_id}".encode())


def verify_payment_signature(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    if not secret or not signature:
        return False
    expected = sign_payment(secret, order_id, payment_id)
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    return hmac.compare_digest(_hmac_sha256(secret, body), signature)


# ============================================================================
# SECTION 2: GATEWAY RESOURCES
# ============================================================================

class _GatewayResource(BaseModel):
    notes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("notes", mode="before")
    @classmethod
    def _empty_notes(cls, value: Any) -> Any:
        # Razorpay renders empty notes as []
        if value is None or value == []:
            return {}
        return value


class GatewayOrder(_GatewayResource):
    id: str = Field(min_length=1)
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: str = "created"


class GatewayPayment(_GatewayResource):
    id: str = Field(min_length=1)
    amount: int
    currency: str
    status: str
    order_id: Optional[str] = None
    amount_refunded: int = 0

    @property
    def refundable_amount(self) -> int:
        return self.amount - self.amount_refunded


class GatewayRefund(_GatewayResource):
    id: str = Field(min_length=1)
    payment_id: str
    amount: int
    status: str


# ============================================================================
# SECTION 3: GATEWAY INTERFACE
# ============================================================================

class IPaymentGateway(ABC):
    """Operations the payment services need from a provider."""

    @abstractmethod
    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, str],
    ) -> GatewayOrder:
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> GatewayOrder:
        pass

    @abstractmethod
    async def get_payment(self, payment_id: str) -> GatewayPayment:
        pass

    @abstractmethod
    async def refund(self, payment_id: str, amount_minor: int) -> GatewayRefund:
        pass

    async def close(self) -> None:
        pass


# ============================================================================
# SECTION 4: RAZORPAY CLIENT
# ============================================================================

class RazorpayClient(IPaymentGateway):
    """
    Razorpay REST client (basic auth with key id / key secret).

    The underlying httpx.AsyncClient is created lazily and closed by
    close() during application shutdown. Tests pass an
    httpx.MockTransport through `transport`.
    """

    def __init__(
        self,
        config: Optional[RazorpayConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or RazorpayConfig.from_env()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                auth=(self.config.key_id, self.config.key_secret),
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=5.0),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("razorpay_client_closed")

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        json: Optional[dict] = None,
    ) -> dict:
        if not self.config.has_credentials:
            raise GatewayError(operation, "Razorpay credentials are not configured")

        try:
            response = await self._get_client().request(method, path, json=json)
        except httpx.TimeoutException as e:
            logger.warning("razorpay_timeout", operation=operation, path=path)
            raise GatewayError(operation, "request timed out") from e
        except httpx.HTTPError as e:
            logger.warning("razorpay_transport_error", operation=operation, error=str(e))
            raise GatewayError(operation, f"transport error: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.is_success:
            description = None
            if isinstance(body, dict):
                description = (body.get("error") or {}).get("description")
            logger.warning(
                "razorpay_error_response",
                operation=operation,
                status_code=response.status_code,
                description=description,
            )
            raise GatewayError(
                operation,
                description or f"HTTP {response.status_code}",
                status_code=response.status_code,
                payload=body if isinstance(body, dict) else None,
            )

        if not isinstance(body, dict):
            raise GatewayError(operation, "malformed response body", status_code=response.status_code)
        return body

    @staticmethod
    def _parse(operation: str, model: type, body: dict):
        try:
            return model.model_validate(body)
        except ValidationError as e:
            raise GatewayError(operation, f"unexpected response shape: {e.error_count()} errors", payload=body) from e

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, str],
    ) -> GatewayOrder:
        body = await self._request(
            "create_order",
            "POST",
            "/orders",
            json={
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "notes": notes,
            },
        )
        order = self._parse("create_order", GatewayOrder, body)
        logger.info("razorpay_order_created", order_id=order.id, amount=order.amount)
        return order

    async def get_order(self, order_id: str) -> GatewayOrder:
        body = await self._request("get_order", "GET", f"/orders/{order_id}")
        return self._parse("get_order", GatewayOrder, body)

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        body = await self._request("get_payment", "GET", f"/payments/{payment_id}")
        return self._parse("get_payment", GatewayPayment, body)

    async def refund(self, payment_id: str, amount_minor: int) -> GatewayRefund:
        body = await self._request(
            "refund",
            "POST",
            f"/payments/{payment_id}/refund",
            json={"amount": amount_minor, "speed": "normal"},
        )
        refund = self._parse("refund", GatewayRefund, body)
        logger.info(
            "razorpay_refund_created",
            payment_id=payment_id,
            refund_id=refund.id,
            status=refund.status,
        )
        return refund
