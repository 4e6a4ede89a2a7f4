"""
Access Engine
=============
Turns a verified payment into a Transaction record plus user entitlements,
and takes entitlements away again on refund or admin revoke.

Guarantees:
- The Transaction insert and the user mutation commit together
  (store.atomic()) or not at all
- payment_id is unique in storage; a duplicate insert means "already
  processed" and the existing record is returned, never a second grant
- User writes are a version compare-and-swap, retried on conflict
- The confirmation email is sent after commit and never rolls back a grant
"""

from dataclasses import dataclass, field
from typing import Optional, Union

import structlog

from core.config import PaymentConfig
from core.errors import ConcurrencyConflict, DomainError, DuplicatePaymentError, ErrorCode
from schemas.domain import (
    AuditEventType,
    CartPurchase,
    Course,
    CoursePurchase,
    Currency,
    Subscription,
    SubscriptionPurchase,
    Transaction,
    User,
    minor_to_major,
    utcnow,
)
from services.audit import emit_audit
from services.notifications import DeliveryStatus, NotificationService
from storage.interfaces import IStore

logger = structlog.get_logger(component="access_engine")

Purchase = Union[CoursePurchase, SubscriptionPurchase, CartPurchase]


# =============================================================================
# MODELS
# =============================================================================

@dataclass
class GrantPayload:
    """Everything the engine needs from a verified payment."""
    user_id: str
    payment_id: str
    order_id: str
    signature: str
    amount_minor: int
    currency: Currency
    purchase: Purchase
    notes: dict = field(default_factory=dict)


@dataclass
class ResolvedPurchase:
    """Catalog entities behind a purchase context."""
    courses: list[Course] = field(default_factory=list)
    plan: Optional[Subscription] = None

    @property
    def item_name(self) -> str:
        if self.plan is not None:
            return self.plan.name.value
        return ", ".join(course.title for course in self.courses)

    @property
    def duration_days(self) -> Optional[int]:
        if self.plan is not None:
            return self.plan.duration
        durations = {course.duration for course in self.courses}
        return durations.pop() if len(durations) == 1 else None


@dataclass
class GrantResult:
    transaction: Transaction
    already_processed: bool = False
    email_status: DeliveryStatus = DeliveryStatus.SKIPPED


# =============================================================================
# ENGINE
# =============================================================================

class AccessEngine:

    def __init__(
        self,
        store: IStore,
        notifications: Optional[NotificationService] = None,
        config: Optional[PaymentConfig] = None,
    ):
        self.store = store
        self.notifications = notifications or NotificationService()
        self.config = config or PaymentConfig.from_env()

    def _get_logger(self, trace_id: str):
        return logger.bind(trace_id=trace_id)

    # =========================================================================
    # GRANT
    # =========================================================================

    async def create_transaction_and_grant_access(
        self,
        payload: GrantPayload,
        trace_id: str,
    ) -> GrantResult:
        log = self._get_logger(trace_id)

        existing = await self.store.transactions.get_by_payment_id(payload.payment_id)
        if existing is not None:
            return self._replay(existing, payload, log)

        attempts = max(1, self.config.user_update_max_retries)
        for attempt in range(1, attempts + 1):
            try:
                async with self.store.atomic() as tx:
                    user, transaction, resolved = await self._grant_in(tx, payload, trace_id)
                break
            except DuplicatePaymentError:
                # Lost the race on the unique payment_id index
                existing = await self.store.transactions.get_by_payment_id(payload.payment_id)
                if existing is None:
                    raise
                return self._replay(existing, payload, log)
            except ConcurrencyConflict as e:
                if attempt == attempts:
                    log.error("grant_conflict_exhausted", user_id=payload.user_id, attempts=attempts)
                    raise DomainError(
                        ErrorCode.CONCURRENT_MODIFICATION,
                        "User was modified concurrently, please retry",
                    ) from e
                log.warning("grant_conflict_retry", user_id=payload.user_id, attempt=attempt)

        log.info("access_granted",
                 transaction_id=transaction.id,
                 payment_id=transaction.payment_id,
                 purchase_type=transaction.purchase_type.value,
                 user_id=user.id)

        email_status = await self._send_confirmation(user, transaction, resolved, trace_id)
        return GrantResult(transaction=transaction, email_status=email_status)

    def _replay(self, existing: Transaction, payload: GrantPayload, log) -> GrantResult:
        if existing.user_id != payload.user_id:
            log.warning("payment_owned_by_other_user",
                        payment_id=payload.payment_id,
                        user_id=payload.user_id)
            raise DomainError(
                ErrorCode.PAYMENT_ALREADY_PROCESSED,
                "This payment has already been processed",
            )
        log.info("payment_already_processed",
                 payment_id=payload.payment_id,
                 transaction_id=existing.id)
        return GrantResult(transaction=existing, already_processed=True)

    async def _grant_in(
        self,
        tx: IStore,
        payload: GrantPayload,
        trace_id: str,
    ) -> tuple[User, Transaction, ResolvedPurchase]:
        user = await tx.users.get(payload.user_id)
        if user is None:
            raise DomainError(ErrorCode.USER_NOT_FOUND, "User not found")

        resolved = await self.resolve_purchase(tx, payload.purchase, payload.amount_minor)

        transaction = Transaction.from_purchase(
            payload.purchase,
            user_id=user.id,
            payment_id=payload.payment_id,
            order_id=payload.order_id,
            razorpay_signature=payload.signature,
            amount=minor_to_major(payload.amount_minor),
            currency=payload.currency,
            notes=payload.notes,
        )
        await tx.transactions.insert(transaction)

        now = utcnow()
        granted = user
        if resolved.plan is not None:
            granted = granted.with_subscription(resolved.plan, now)
        for course in resolved.courses:
            granted = granted.with_course(course, now)
        granted = granted.with_transaction(transaction.id)
        stored = await tx.users.update(granted)

        await emit_audit(
            tx.audit,
            AuditEventType.TRANSACTION_CREATED,
            entity_id=transaction.payment_id,
            trace_id=trace_id,
            new_state={"transactionId": transaction.id, "status": transaction.status.value},
            metadata={"amount": payload.amount_minor, "currency": payload.currency.value},
            actor=f"user:{user.id}",
        )
        await emit_audit(
            tx.audit,
            AuditEventType.ACCESS_GRANTED,
            entity_id=transaction.payment_id,
            trace_id=trace_id,
            new_state={
                "courseIds": [course.id for course in resolved.courses],
                "subscriptionId": resolved.plan.id if resolved.plan else None,
            },
            actor=f"user:{user.id}",
        )
        return stored, transaction, resolved

    async def resolve_purchase(
        self,
        store: IStore,
        purchase: Purchase,
        amount_minor: int,
    ) -> ResolvedPurchase:
        """Load catalog entities and re-check prices against the paid amount."""
        if isinstance(purchase, CoursePurchase):
            course = await store.courses.get(purchase.course_id)
            if course is None:
                raise DomainError(ErrorCode.COURSE_NOT_FOUND, "Course not found")
            if course.price_minor != amount_minor:
                raise DomainError(
                    ErrorCode.PRICE_MISMATCH,
                    f"Course price {course.price_minor} does not match amount {amount_minor}",
                )
            return ResolvedPurchase(courses=[course])

        if isinstance(purchase, SubscriptionPurchase):
            plan = await store.subscriptions.get(purchase.subscription_id)
            if plan is None:
                raise DomainError(ErrorCode.SUBSCRIPTION_NOT_FOUND, "Subscription not found")
            if plan.price_minor != amount_minor:
                raise DomainError(
                    ErrorCode.PRICE_MISMATCH,
                    f"Subscription price {plan.price_minor} does not match amount {amount_minor}",
                )
            return ResolvedPurchase(plan=plan)

        if purchase.total != amount_minor:
            raise DomainError(
                ErrorCode.AMOUNT_MISMATCH,
                f"Cart total {purchase.total} does not match amount {amount_minor}",
            )
        found = await store.courses.get_many([item.id for item in purchase.items])
        courses = []
        for item in purchase.items:
            course = found.get(item.id)
            if course is None:
                raise DomainError(
                    ErrorCode.CART_ITEM_NOT_FOUND,
                    f"Cart item {item.id} is not a known course",
                )
            if course.price_minor != item.price:
                raise DomainError(
                    ErrorCode.PRICE_MISMATCH,
                    f"Cart item {item.id} price {item.price} does not match catalog price {course.price_minor}",
                )
            courses.append(course)
        return ResolvedPurchase(courses=courses)

    async def _send_confirmation(
        self,
        user: User,
        transaction: Transaction,
        resolved: ResolvedPurchase,
        trace_id: str,
    ) -> DeliveryStatus:
        if not user.email:
            return DeliveryStatus.SKIPPED
        try:
            record = await self.notifications.send_purchase_confirmation(
                user=user,
                transaction=transaction,
                item_name=resolved.item_name,
                duration_days=resolved.duration_days,
                trace_id=trace_id,
            )
        except Exception as e:
            self._get_logger(trace_id).error(
                "purchase_confirmation_failed",
                transaction_id=transaction.id,
                error=str(e),
            )
            return DeliveryStatus.FAILED
        return record.status

    # =========================================================================
    # REVOKE
    # =========================================================================

    async def revoke_in(
        self,
        tx: IStore,
        user_id: str,
        purchase: Purchase,
        transaction_id: str,
        trace_id: str,
    ) -> User:
        """
        Remove the entitlements a purchase granted, inside an open store scope.

        Missing courses and a subscription slot holding a different plan are
        logged and left alone; only an unknown user is an error.
        """
        log = self._get_logger(trace_id)

        user = await tx.users.get(user_id)
        if user is None:
            raise DomainError(ErrorCode.USER_NOT_FOUND, "User not found")

        updated = user
        if isinstance(purchase, SubscriptionPurchase):
            current = updated.active_subscription.subscription_id
            if current == purchase.subscription_id:
                updated = updated.without_subscription()
            else:
                log.warning("subscription_revoke_mismatch",
                            user_id=user_id,
                            subscription_id=purchase.subscription_id,
                            active_subscription_id=current)
        else:
            course_ids = (
                [purchase.course_id]
                if isinstance(purchase, CoursePurchase)
                else [item.id for item in purchase.items]
            )
            for course_id in course_ids:
                if updated.has_course(course_id):
                    updated = updated.without_course(course_id)
                else:
                    log.info("course_not_owned", user_id=user_id, course_id=course_id)

        updated = updated.without_transaction(transaction_id)
        if updated == user:
            return user
        return await tx.users.update(updated)

    async def revoke_user_access(
        self,
        user_id: str,
        purchase: Purchase,
        transaction_id: str,
        trace_id: str,
    ) -> User:
        """Standalone revoke with its own atomic scope and CAS retries."""
        attempts = max(1, self.config.user_update_max_retries)
        for attempt in range(1, attempts + 1):
            try:
                async with self.store.atomic() as tx:
                    return await self.revoke_in(tx, user_id, purchase, transaction_id, trace_id)
            except ConcurrencyConflict as e:
                if attempt == attempts:
                    raise DomainError(
                        ErrorCode.CONCURRENT_MODIFICATION,
                        "User was modified concurrently, please retry",
                    ) from e
                self._get_logger(trace_id).warning(
                    "revoke_conflict_retry", user_id=user_id, attempt=attempt
                )

    async def revoke_transaction_access(
        self,
        payment_id: str,
        trace_id: str,
        actor: str = "system",
    ) -> User:
        """Admin revoke by payment id; the transaction record is kept."""
        transaction = await self.store.transactions.get_by_payment_id(payment_id)
        if transaction is None:
            raise DomainError(ErrorCode.TRANSACTION_NOT_FOUND, "Transaction not found")

        user = await self.revoke_user_access(
            transaction.user_id, transaction.purchase, transaction.id, trace_id
        )
        await emit_audit(
            self.store.audit,
            AuditEventType.ACCESS_REVOKED,
            entity_id=payment_id,
            trace_id=trace_id,
            metadata={"reason": "admin_revoke"},
            actor=actor,
        )
        self._get_logger(trace_id).info(
            "access_revoked", payment_id=payment_id, user_id=transaction.user_id
        )
        return user
