"""
Domain errors with stable codes and a single code -> HTTP status table.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    # Input validation
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_REQUEST = "INVALID_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_CURRENCY = "INVALID_CURRENCY"
    INVALID_PURCHASE_TYPE = "INVALID_PURCHASE_TYPE"
    MISSING_COURSE_ID = "MISSING_COURSE_ID"
    MISSING_SUBSCRIPTION_ID = "MISSING_SUBSCRIPTION_ID"
    INVALID_CART_ITEMS = "INVALID_CART_ITEMS"
    INVALID_PAGINATION = "INVALID_PAGINATION"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    INVALID_DATA = "INVALID_DATA"

    # Integrity
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    PRICE_MISMATCH = "PRICE_MISMATCH"
    PURCHASE_CONTEXT_MISMATCH = "PURCHASE_CONTEXT_MISMATCH"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    PAYMENT_ALREADY_PROCESSED = "PAYMENT_ALREADY_PROCESSED"
    INVALID_STATUS = "INVALID_STATUS"
    REFUND_ALREADY_PROCESSED = "REFUND_ALREADY_PROCESSED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    DUPLICATE_SUBSCRIPTION = "DUPLICATE_SUBSCRIPTION"

    # Authorization
    MISSING_TOKEN = "MISSING_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    INVALID_TOKEN = "INVALID_TOKEN"
    USER_BANNED = "USER_BANNED"
    FORBIDDEN = "FORBIDDEN"

    # Lookup
    USER_NOT_FOUND = "USER_NOT_FOUND"
    COURSE_NOT_FOUND = "COURSE_NOT_FOUND"
    SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
    CART_ITEM_NOT_FOUND = "CART_ITEM_NOT_FOUND"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    LESSON_NOT_FOUND = "LESSON_NOT_FOUND"
    SAVED_COURSE_NOT_FOUND = "SAVED_COURSE_NOT_FOUND"
    NOT_FOUND = "NOT_FOUND"

    # Upstream / server
    ORDER_CREATION_FAILED = "ORDER_CREATION_FAILED"
    ORDER_VALIDATION_FAILED = "ORDER_VALIDATION_FAILED"
    PAYMENT_VERIFICATION_FAILED = "PAYMENT_VERIFICATION_FAILED"
    REFUND_ERROR = "REFUND_ERROR"
    WEBHOOK_ERROR = "WEBHOOK_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    SERVER_ERROR = "SERVER_ERROR"


HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.INVALID_SIGNATURE: 400,
    ErrorCode.PAYMENT_ALREADY_PROCESSED: 409,
    ErrorCode.REFUND_ALREADY_PROCESSED: 409,
    ErrorCode.CONCURRENT_MODIFICATION: 409,
    ErrorCode.DUPLICATE_SUBSCRIPTION: 409,

    ErrorCode.MISSING_TOKEN: 401,
    ErrorCode.TOKEN_EXPIRED: 401,
    ErrorCode.INVALID_TOKEN: 401,
    ErrorCode.USER_BANNED: 403,
    ErrorCode.FORBIDDEN: 403,

    ErrorCode.USER_NOT_FOUND: 404,
    ErrorCode.COURSE_NOT_FOUND: 404,
    ErrorCode.SUBSCRIPTION_NOT_FOUND: 404,
    ErrorCode.CART_ITEM_NOT_FOUND: 404,
    ErrorCode.TRANSACTION_NOT_FOUND: 404,
    ErrorCode.LESSON_NOT_FOUND: 404,
    ErrorCode.SAVED_COURSE_NOT_FOUND: 404,
    ErrorCode.NOT_FOUND: 404,

    ErrorCode.ORDER_CREATION_FAILED: 502,
    ErrorCode.ORDER_VALIDATION_FAILED: 502,
    ErrorCode.REFUND_ERROR: 502,
    ErrorCode.PAYMENT_VERIFICATION_FAILED: 500,
    ErrorCode.WEBHOOK_ERROR: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.SERVER_ERROR: 500,
}

# Shown instead of the detailed message for 5xx outside development
GENERIC_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.ORDER_CREATION_FAILED: "Failed to create payment order",
    ErrorCode.ORDER_VALIDATION_FAILED: "Failed to validate payment order",
    ErrorCode.PAYMENT_VERIFICATION_FAILED: "Payment verification failed",
    ErrorCode.REFUND_ERROR: "Failed to process refund",
    ErrorCode.WEBHOOK_ERROR: "Failed to process webhook",
    ErrorCode.DATABASE_ERROR: "Database error",
    ErrorCode.SERVER_ERROR: "Internal server error",
}


def status_for(code: ErrorCode) -> int:
    """HTTP status for an error code. Anything unlisted is a 400."""
    return HTTP_STATUS.get(code, 400)


class DomainError(Exception):
    """Error raised where a rule is violated; carries a stable code."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: Optional[dict[str, Any]] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details or {}
        # Only the auth boundary overrides the table (USER_NOT_FOUND -> 401)
        self._status = status

    @property
    def status_code(self) -> int:
        return self._status or status_for(self.code)

    def public_message(self, debug: bool) -> str:
        if debug or self.status_code < 500:
            return self.message
        return GENERIC_MESSAGES.get(self.code, "Internal server error")

    def __repr__(self) -> str:
        return f"DomainError({self.code.value}, {self.message!r})"


class GatewayError(Exception):
    """Payment provider call failed (transport, non-2xx, malformed body)."""

    def __init__(
        self,
        operation: str,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[dict] = None,
    ):
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}


class DuplicatePaymentError(Exception):
    """A transaction with this payment id already exists."""

    def __init__(self, payment_id: str):
        super().__init__(f"Transaction already recorded for payment {payment_id}")
        self.payment_id = payment_id


class ConcurrencyConflict(Exception):
    """Optimistic version check failed on write."""

    def __init__(self, entity: str, entity_id: str, expected_version: int):
        super().__init__(
            f"{entity} {entity_id} changed concurrently (expected version {expected_version})"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
