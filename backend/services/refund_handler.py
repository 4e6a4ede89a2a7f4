# services/refund_handler.py
# ============================================================================
# SKILLNESTX PAYMENTS: REFUNDS & GATEWAY WEBHOOKS
# ============================================================================
# Purpose: Admin-initiated refunds and Razorpay refund webhooks
#
# REFUND ORDERING:
# 1. Per-payment lock (concurrent refunds for one payment serialise)
# 2. Gateway payment must be captured and cover the refund amount
# 3. Gateway refund is issued
# 4. Only then: revoke access + refundStatus=processed + refundId, one
#    atomic store scope
# 5. Best-effort "refund processed" email
# A gateway failure leaves access untouched.
#
# WEBHOOKS:
# Events are dispatched through WebhookRouter. Refund status only moves
# forward; stale or repeated events are acknowledged without a write.
# ============================================================================

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import structlog

from core.config import PaymentConfig, RazorpayConfig
from core.errors import ConcurrencyConflict, DomainError, ErrorCode, GatewayError
from schemas.domain import (
    AuditEventType,
    PurchaseType,
    RefundStatus,
    Transaction,
    TransactionStatus,
    User,
)
from services.access_engine import AccessEngine
from services.audit import emit_audit
from services.notifications import NotificationService, NotificationType
from services.razorpay_client import IPaymentGateway, verify_webhook_signature
from storage.interfaces import IStore

logger = structlog.get_logger(component="refund_handler")

WEBHOOK_SIGNATURE_HEADER = "X-Razorpay-Signature"

# Razorpay refund entity status -> our refund status
GATEWAY_REFUND_STATUS = {
    "created": RefundStatus.PROCESSED,
    "pending": RefundStatus.PROCESSED,
    "processed": RefundStatus.PROCESSED,
    "failed": RefundStatus.FAILED,
}


def map_refund_status(gateway_status: Optional[str]) -> RefundStatus:
    return GATEWAY_REFUND_STATUS.get((gateway_status or "").lower(), RefundStatus.PROCESSED)


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

WebhookHandler = Callable[[dict, str], Awaitable[Any]]


class WebhookRouter:
    """
    Maps gateway event names to handlers.
    Unregistered events are acknowledged and ignored.
    """

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = logger.bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            return handler
        return decorator

    async def route(self, event_type: str, payload: dict, trace_id: str) -> Optional[Any]:
        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.warning("no_handler", event_type=event_type, trace_id=trace_id)
            return None
        return await handler(payload, trace_id)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


class _PaymentLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


def _refund_entity(payload: dict) -> dict:
    """payload.refund.entity, or {} when any level is not an object."""
    refund = payload.get("refund")
    entity = refund.get("entity") if isinstance(refund, dict) else None
    return entity if isinstance(entity, dict) else {}


# =============================================================================
# REFUND HANDLER
# =============================================================================

class RefundHandler:

    def __init__(
        self,
        store: IStore,
        gateway: IPaymentGateway,
        engine: AccessEngine,
        notifications: NotificationService,
        razorpay_config: RazorpayConfig,
        payment_config: Optional[PaymentConfig] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.engine = engine
        self.notifications = notifications
        self.razorpay_config = razorpay_config
        self.config = payment_config or PaymentConfig.from_env()

        self.router = WebhookRouter()
        self._register_handlers()

        # Per-process; a multi-instance deployment needs a shared lock.
        # Entries live only while a holder or waiter exists.
        self._payment_locks: dict[str, _PaymentLock] = {}

    def _get_logger(self, trace_id: str):
        return logger.bind(trace_id=trace_id)

    @asynccontextmanager
    async def _payment_lock(self, payment_id: str) -> AsyncIterator[None]:
        entry = self._payment_locks.setdefault(payment_id, _PaymentLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._payment_locks.pop(payment_id, None)

    async def _describe(self, transaction: Transaction) -> tuple[str, str]:
        """(item_type, item_name) for refund emails."""
        if transaction.purchase_type == PurchaseType.SUBSCRIPTION:
            plan = await self.store.subscriptions.get(transaction.subscription_id)
            return "Subscription", plan.name.value if plan else "N/A"
        if transaction.purchase_type == PurchaseType.COURSE:
            course = await self.store.courses.get(transaction.course_id)
            return "Course", course.title if course else "N/A"
        ids = [item.id for item in transaction.cart_items]
        found = await self.store.courses.get_many(ids)
        return "Course", ", ".join(found[i].title if i in found else i for i in ids)

    async def _notify(
        self,
        notification_type: NotificationType,
        user: Optional[User],
        transaction: Transaction,
        trace_id: str,
    ) -> None:
        if user is None or not user.email:
            return
        item_type, item_name = await self._describe(transaction)
        try:
            await self.notifications.send_refund_notification(
                notification_type,
                user=user,
                transaction=transaction,
                item_type=item_type,
                item_name=item_name,
                trace_id=trace_id,
            )
        except Exception as e:
            self._get_logger(trace_id).error(
                "refund_email_failed",
                notification_type=notification_type.value,
                payment_id=transaction.payment_id,
                error=str(e),
            )

    # =========================================================================
    # ADMIN REFUND
    # =========================================================================

    async def request_refund(self, payment_id: str, admin: User, trace_id: str) -> Transaction:
        log = self._get_logger(trace_id)
        async with self._payment_lock(payment_id):
            return await self._refund_locked(payment_id, admin, trace_id, log)

    async def _refund_locked(self, payment_id: str, admin: User, trace_id: str, log) -> Transaction:
        transaction = await self.store.transactions.get_by_payment_id(payment_id)
        if transaction is None:
            raise DomainError(ErrorCode.TRANSACTION_NOT_FOUND, "Transaction not found")
        if transaction.status != TransactionStatus.SUCCESSFUL:
            raise DomainError(ErrorCode.INVALID_STATUS, "Cannot refund non-successful transaction")
        if transaction.refund_status is not None:
            raise DomainError(
                ErrorCode.REFUND_ALREADY_PROCESSED,
                f"Refund already {transaction.refund_status.value}",
            )
        user = await self.store.users.get(transaction.user_id)
        if user is None:
            raise DomainError(ErrorCode.USER_NOT_FOUND, "User not found")

        actor = f"admin:{admin.id}"
        amount = transaction.amount_minor
        await emit_audit(
            self.store.audit,
            AuditEventType.REFUND_REQUESTED,
            entity_id=payment_id,
            trace_id=trace_id,
            metadata={"amount": amount},
            actor=actor,
        )

        try:
            payment = await self.gateway.get_payment(payment_id)
            if payment.status != "captured" or payment.refundable_amount < amount:
                raise DomainError(
                    ErrorCode.REFUND_ERROR,
                    f"Payment is not refundable (status={payment.status}, "
                    f"refundable={payment.refundable_amount}, requested={amount})",
                )
            refund = await self.gateway.refund(payment_id, amount)
            refund_status = map_refund_status(refund.status)
            if refund_status == RefundStatus.FAILED:
                raise DomainError(ErrorCode.REFUND_ERROR, f"Gateway reported refund {refund.id} as failed")
        except (GatewayError, DomainError) as e:
            await emit_audit(
                self.store.audit,
                AuditEventType.REFUND_FAILED,
                entity_id=payment_id,
                trace_id=trace_id,
                metadata={"error": str(e)},
                actor=actor,
            )
            log.error("refund_failed", payment_id=payment_id, error=str(e))
            if isinstance(e, DomainError):
                raise
            raise DomainError(ErrorCode.REFUND_ERROR, f"Failed to process refund: {e.message}") from e

        updated, user = await self._revoke_and_mark(transaction, refund.id, refund_status, actor, trace_id)

        log.info("refund_issued",
                 payment_id=payment_id,
                 refund_id=refund.id,
                 refund_status=refund_status.value)

        await self._notify(NotificationType.REFUND_PROCESSED, user, updated, trace_id)
        return updated

    async def _revoke_and_mark(
        self,
        transaction: Transaction,
        refund_id: str,
        refund_status: RefundStatus,
        actor: str,
        trace_id: str,
    ) -> tuple[Transaction, User]:
        attempts = max(1, self.config.user_update_max_retries)
        for attempt in range(1, attempts + 1):
            try:
                async with self.store.atomic() as tx:
                    user = await self.engine.revoke_in(
                        tx, transaction.user_id, transaction.purchase, transaction.id, trace_id
                    )
                    updated = await tx.transactions.update_refund(
                        transaction.with_refund(refund_status, refund_id)
                    )
                    await emit_audit(
                        tx.audit,
                        AuditEventType.ACCESS_REVOKED,
                        entity_id=transaction.payment_id,
                        trace_id=trace_id,
                        metadata={"reason": "refund"},
                        actor=actor,
                    )
                    await emit_audit(
                        tx.audit,
                        AuditEventType.REFUND_ISSUED,
                        entity_id=transaction.payment_id,
                        trace_id=trace_id,
                        previous_state={"refundStatus": None},
                        new_state={"refundStatus": refund_status.value, "refundId": refund_id},
                        actor=actor,
                    )
                return updated, user
            except ConcurrencyConflict as e:
                if attempt == attempts:
                    # Money already left; webhooks will still advance refundStatus
                    self._get_logger(trace_id).critical(
                        "refund_issued_access_not_revoked",
                        payment_id=transaction.payment_id,
                        refund_id=refund_id,
                    )
                    raise DomainError(
                        ErrorCode.CONCURRENT_MODIFICATION,
                        "Refund issued but user was modified concurrently, revoke manually",
                    ) from e

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register("refund.created")
        @self.router.register("refund.processed")
        async def handle_refund_processed(payload: dict, trace_id: str):
            return await self._on_refund_status(payload, RefundStatus.PROCESSED, trace_id)

        @self.router.register("refund.completed")
        async def handle_refund_completed(payload: dict, trace_id: str):
            return await self._on_refund_status(payload, RefundStatus.REFUNDED, trace_id)

        @self.router.register("refund.failed")
        async def handle_refund_failed(payload: dict, trace_id: str):
            return await self._on_refund_status(payload, RefundStatus.FAILED, trace_id)

    async def handle_webhook(self, body: bytes, signature: Optional[str], trace_id: str) -> dict:
        log = self._get_logger(trace_id)

        secret = self.razorpay_config.webhook_secret
        if secret and not verify_webhook_signature(secret, body, signature):
            log.warning("webhook_signature_invalid")
            raise DomainError(ErrorCode.INVALID_SIGNATURE, "Invalid webhook signature")

        try:
            data = json.loads(body or b"{}")
        except ValueError:
            data = None
        event = data.get("event") if isinstance(data, dict) else None
        payload = data.get("payload") if isinstance(data, dict) else None
        if not event or not isinstance(payload, dict):
            raise DomainError(ErrorCode.INVALID_PAYLOAD, "Invalid webhook payload")

        log.info("webhook_received", event_type=event)
        try:
            result = await self.router.route(event, payload, trace_id)
        except DomainError:
            raise
        except Exception as e:
            log.exception("webhook_failed", event_type=event)
            raise DomainError(ErrorCode.WEBHOOK_ERROR, "Failed to process webhook") from e

        if result is None:
            return {"status": "ignored", "event": event}
        return result

    async def _on_refund_status(self, payload: dict, new_status: RefundStatus, trace_id: str) -> dict:
        log = self._get_logger(trace_id)
        entity = _refund_entity(payload)
        payment_id = entity.get("payment_id")
        refund_id = entity.get("id")
        if not (payment_id and isinstance(payment_id, str) and refund_id and isinstance(refund_id, str)):
            log.warning("webhook_refund_data_invalid")
            raise DomainError(ErrorCode.INVALID_DATA, "Missing payment ID or refund ID")

        async with self._payment_lock(payment_id):
            transaction = await self.store.transactions.get_by_payment_id(payment_id)
            if transaction is None:
                log.warning("webhook_transaction_not_found", payment_id=payment_id)
                raise DomainError(ErrorCode.TRANSACTION_NOT_FOUND, "Transaction not found")

            previous = transaction.refund_status
            if not RefundStatus.can_advance(previous, new_status):
                log.info("refund_status_not_advanced",
                         payment_id=payment_id,
                         current=previous.value if previous else None,
                         received=new_status.value)
                return {"status": "unchanged", "refundStatus": previous.value if previous else None}

            status = TransactionStatus.REFUNDED if new_status == RefundStatus.REFUNDED else None
            async with self.store.atomic() as tx:
                updated = await tx.transactions.update_refund(
                    transaction.with_refund(new_status, refund_id, status)
                )
                await emit_audit(
                    tx.audit,
                    AuditEventType.REFUND_STATUS_CHANGED,
                    entity_id=payment_id,
                    trace_id=trace_id,
                    previous_state={"refundStatus": previous.value if previous else None},
                    new_state={"refundStatus": new_status.value, "status": updated.status.value},
                    metadata={"refundId": refund_id},
                    actor="webhook",
                )

        log.info("refund_status_changed",
                 payment_id=payment_id,
                 refund_status=new_status.value)

        if new_status == RefundStatus.REFUNDED:
            user = await self.store.users.get(updated.user_id)
            await self._notify(NotificationType.REFUND_COMPLETED, user, updated, trace_id)
        return {"status": "updated", "refundStatus": new_status.value}
