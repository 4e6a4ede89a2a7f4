# services/payment_orchestrator.py
# ============================================================================
# SKILLNESTX PAYMENTS: ORDER / VERIFY ORCHESTRATOR
# ============================================================================
# Purpose: Validate purchase requests, create gateway orders, verify
# payments and hand verified payments to the access engine.
#
# FLOW:
# 1. create_order: validate input -> gateway order (receipt + notes)
# 2. client pays on the Razorpay checkout
# 3. verify_payment: signature -> authoritative order re-fetch ->
#    notes/amount/currency agreement -> engine (atomic grant) -> email
#
# Requests arrive loosely typed; validation runs in a fixed order so each
# failure maps to one error code.
# ============================================================================

from typing import Any, Optional, Union

import structlog

from core.config import PaymentConfig, RazorpayConfig
from core.errors import DomainError, ErrorCode, GatewayError
from schemas.api import CreateOrderRequest, VerifyPaymentRequest
from schemas.domain import (
    CartItem,
    CartPurchase,
    CoursePurchase,
    Currency,
    PurchaseType,
    SubscriptionPurchase,
    User,
    notes_match,
)
from services.access_engine import AccessEngine, GrantPayload, GrantResult
from services.razorpay_client import GatewayOrder, IPaymentGateway, verify_payment_signature

logger = structlog.get_logger(component="payment_orchestrator")

Purchase = Union[CoursePurchase, SubscriptionPurchase, CartPurchase]


def _positive_int(value: Any) -> Optional[int]:
    """Integer-valued positive number, else None. Booleans are rejected."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer() and value > 0:
        return int(value)
    return None


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def build_receipt(trace_id: str, max_length: int = 40) -> str:
    return f"rcpt_{trace_id.replace('-', '')}"[:max_length]


class PaymentOrchestrator:
    """
    Order creation and payment verification.

    Example:
        orchestrator = PaymentOrchestrator(gateway, engine, razorpay_config)
        order = await orchestrator.create_order(request, user, trace_id)
        # client pays
        result = await orchestrator.verify_payment(verify_request, user, trace_id)
    """

    def __init__(
        self,
        gateway: IPaymentGateway,
        engine: AccessEngine,
        razorpay_config: RazorpayConfig,
        payment_config: Optional[PaymentConfig] = None,
    ):
        self.gateway = gateway
        self.engine = engine
        self.razorpay_config = razorpay_config
        self.config = payment_config or PaymentConfig.from_env()

    def _get_logger(self, trace_id: str):
        return logger.bind(trace_id=trace_id)

    # =========================================================================
    # CREATE ORDER
    # =========================================================================

    def _cart_items(self, raw: Any, code: ErrorCode) -> list[CartItem]:
        if not isinstance(raw, list) or not raw:
            raise DomainError(code, "Cart items must be a non-empty list")
        items = []
        for entry in raw:
            if not isinstance(entry, dict):
                raise DomainError(code, "Each cart item must be an object")
            price = _positive_int(entry.get("price"))
            if not _non_empty_str(entry.get("id")) or not _non_empty_str(entry.get("name")) or price is None:
                raise DomainError(
                    code,
                    "Each cart item needs an id, a name and a positive integer price",
                )
            items.append(CartItem(id=entry["id"], name=entry["name"], price=price))
        return items

    def validate_order_request(self, request: CreateOrderRequest) -> tuple[int, Currency, Purchase]:
        """Returns (amount_minor, currency, purchase) or raises the first failing rule."""
        if request.amount in (None, "") or not request.currency or not request.purchase_type:
            raise DomainError(
                ErrorCode.INVALID_INPUT,
                "amount, currency and purchaseType are required",
            )

        amount = _positive_int(request.amount)
        if amount is None:
            raise DomainError(
                ErrorCode.INVALID_AMOUNT,
                "Amount must be a positive integer in the smallest currency unit",
            )
        if request.currency == Currency.INR.value and amount < self.config.min_inr_amount:
            raise DomainError(
                ErrorCode.INVALID_AMOUNT,
                f"Amount must be at least {self.config.min_inr_amount} paise for INR",
            )

        if request.currency not in self.config.supported_currencies:
            raise DomainError(ErrorCode.INVALID_CURRENCY, "Currency must be INR or USD")
        currency = Currency(request.currency)

        if request.purchase_type not in {t.value for t in PurchaseType}:
            raise DomainError(
                ErrorCode.INVALID_PURCHASE_TYPE,
                "purchaseType must be course, subscription or cart",
            )

        if request.purchase_type == PurchaseType.COURSE.value:
            if not _non_empty_str(request.course_id):
                raise DomainError(ErrorCode.MISSING_COURSE_ID, "courseId is required")
            return amount, currency, CoursePurchase(course_id=request.course_id)

        if request.purchase_type == PurchaseType.SUBSCRIPTION.value:
            if not _non_empty_str(request.subscription_id):
                raise DomainError(ErrorCode.MISSING_SUBSCRIPTION_ID, "subscriptionId is required")
            return amount, currency, SubscriptionPurchase(subscription_id=request.subscription_id)

        cart = CartPurchase(items=self._cart_items(request.cart_items, ErrorCode.INVALID_CART_ITEMS))
        if cart.total != amount:
            raise DomainError(
                ErrorCode.AMOUNT_MISMATCH,
                f"Cart total {cart.total} does not match amount {amount}",
            )
        return amount, currency, cart

    async def create_order(
        self,
        request: CreateOrderRequest,
        user: User,
        trace_id: str,
    ) -> GatewayOrder:
        log = self._get_logger(trace_id)
        amount, currency, purchase = self.validate_order_request(request)

        receipt = build_receipt(trace_id, self.config.receipt_max_length)
        notes = {**purchase.gateway_notes(), "userId": user.id}

        log.info("order_requested",
                 user_id=user.id,
                 purchase_type=purchase.purchase_type,
                 amount=amount,
                 currency=currency.value)

        try:
            order = await self.gateway.create_order(amount, currency.value, receipt, notes)
        except GatewayError as e:
            log.error("order_creation_failed", error=str(e), status_code=e.status_code)
            raise DomainError(ErrorCode.ORDER_CREATION_FAILED, f"Failed to create order: {e.message}") from e

        if not order.id:
            log.error("order_creation_failed", error="gateway returned no order id")
            raise DomainError(ErrorCode.ORDER_CREATION_FAILED, "Gateway returned no order id")

        log.info("order_created", order_id=order.id, receipt=receipt)
        return order

    # =========================================================================
    # VERIFY PAYMENT
    # =========================================================================

    def _validate_verify_request(self, request: VerifyPaymentRequest) -> tuple[int, Currency, Purchase]:
        invalid = ErrorCode.INVALID_REQUEST
        if not all(_non_empty_str(v) for v in (
            request.razorpay_payment_id,
            request.razorpay_order_id,
            request.razorpay_signature,
        )):
            raise DomainError(invalid, "Missing required payment details")

        if request.purchase_type == PurchaseType.COURSE.value:
            if not _non_empty_str(request.course_id):
                raise DomainError(invalid, "Valid course ID required")
            purchase: Purchase = CoursePurchase(course_id=request.course_id)
        elif request.purchase_type == PurchaseType.SUBSCRIPTION.value:
            if not _non_empty_str(request.subscription_id):
                raise DomainError(invalid, "Valid subscription ID required")
            purchase = SubscriptionPurchase(subscription_id=request.subscription_id)
        elif request.purchase_type == PurchaseType.CART.value:
            purchase = CartPurchase(items=self._cart_items(request.cart_items, invalid))
        else:
            raise DomainError(invalid, "Invalid or missing purchase type")

        amount = _positive_int(request.amount)
        if amount is None:
            raise DomainError(invalid, "Valid integer amount required in smallest currency unit")

        if request.currency not in self.config.supported_currencies:
            raise DomainError(invalid, "Currency must be INR or USD")
        return amount, Currency(request.currency), purchase

    async def verify_payment(
        self,
        request: VerifyPaymentRequest,
        user: User,
        trace_id: str,
    ) -> GrantResult:
        log = self._get_logger(trace_id)
        amount, currency, purchase = self._validate_verify_request(request)
        payment_id = request.razorpay_payment_id
        order_id = request.razorpay_order_id

        if not verify_payment_signature(
            self.razorpay_config.key_secret, order_id, payment_id, request.razorpay_signature
        ):
            log.warning("invalid_payment_signature", payment_id=payment_id, order_id=order_id)
            raise DomainError(ErrorCode.INVALID_SIGNATURE, "Invalid payment signature")

        try:
            order = await self.gateway.get_order(order_id)
        except GatewayError as e:
            log.error("order_fetch_failed", order_id=order_id, error=str(e))
            raise DomainError(
                ErrorCode.ORDER_VALIDATION_FAILED, "Failed to validate order details"
            ) from e

        self._check_order_agreement(order, amount, currency, purchase, user, log)

        payload = GrantPayload(
            user_id=user.id,
            payment_id=payment_id,
            order_id=order_id,
            signature=request.razorpay_signature,
            amount_minor=amount,
            currency=currency,
            purchase=purchase,
            notes=dict(order.notes),
        )
        try:
            result = await self.engine.create_transaction_and_grant_access(payload, trace_id)
        except DomainError as e:
            if e.code == ErrorCode.PAYMENT_ALREADY_PROCESSED:
                raise
            log.error("payment_verification_failed",
                      payment_id=payment_id,
                      code=e.code.value,
                      error=e.message)
            raise DomainError(
                ErrorCode.PAYMENT_VERIFICATION_FAILED,
                f"Payment verification failed: {e.message}",
                details={"cause": e.code.value},
            ) from e
        except Exception as e:
            log.exception("payment_verification_failed", payment_id=payment_id)
            raise DomainError(
                ErrorCode.PAYMENT_VERIFICATION_FAILED,
                "Payment verification failed",
            ) from e

        log.info("payment_verified",
                 payment_id=payment_id,
                 transaction_id=result.transaction.id,
                 already_processed=result.already_processed,
                 email_status=result.email_status.value)
        return result

    def _check_order_agreement(
        self,
        order: GatewayOrder,
        amount: int,
        currency: Currency,
        purchase: Purchase,
        user: User,
        log,
    ) -> None:
        if order.amount != amount:
            log.warning("order_amount_mismatch", expected=order.amount, received=amount)
            raise DomainError(
                ErrorCode.AMOUNT_MISMATCH,
                f"Amount mismatch: expected {order.amount}, received {amount}",
            )
        if order.currency != currency.value:
            log.warning("order_currency_mismatch", expected=order.currency, received=currency.value)
            raise DomainError(
                ErrorCode.CURRENCY_MISMATCH,
                f"Currency mismatch: expected {order.currency}, received {currency.value}",
            )
        if isinstance(purchase, CartPurchase) and purchase.total != amount:
            raise DomainError(
                ErrorCode.AMOUNT_MISMATCH,
                f"Cart amount mismatch: cart total {purchase.total}, received {amount}",
            )
        if not notes_match(purchase, order.notes) or str(order.notes.get("userId", "")) != user.id:
            log.warning("purchase_context_mismatch", order_id=order.id, user_id=user.id)
            raise DomainError(
                ErrorCode.PURCHASE_CONTEXT_MISMATCH,
                "Purchase details do not match the order",
            )
