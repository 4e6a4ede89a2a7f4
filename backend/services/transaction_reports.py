"""
Transaction Reports
===================
Read-side views over transactions for admins and for the paying user:
details, history pages, yearly / monthly counts, search and status filter,
and the audit trail of one payment.
"""

import re
from typing import Optional

import structlog

from core.errors import DomainError, ErrorCode
from schemas.api import Pagination
from schemas.domain import Transaction, TransactionStatus, utcnow
from storage.interfaces import IStore

logger = structlog.get_logger(component="transaction_reports")

MIN_REPORT_YEAR = 2000
MIN_SEARCH_LENGTH = 3
SEARCH_PATTERN = re.compile(r"^[A-Za-z0-9._%+@-]+$")


def transaction_view(transaction: Transaction) -> dict:
    body = transaction.model_dump(mode="json", by_alias=True, exclude={"razorpay_signature"})
    body["refundStatus"] = transaction.refund_status.value if transaction.refund_status else None
    return body


class TransactionReports:

    def __init__(self, store: IStore):
        self.store = store

    def _check_year(self, year: Optional[int]) -> int:
        current = utcnow().year
        year = current if year is None else year
        if year < MIN_REPORT_YEAR or year > current + 1:
            raise DomainError(ErrorCode.INVALID_INPUT, "Valid year (2000 or later) is required")
        return year

    # =========================================================================
    # DETAILS
    # =========================================================================

    async def details(self, payment_id: str) -> dict:
        transaction = await self.store.transactions.get_by_payment_id(payment_id)
        if transaction is None:
            raise DomainError(ErrorCode.TRANSACTION_NOT_FOUND, "Transaction not found")

        user = await self.store.users.get(transaction.user_id)
        course = (
            await self.store.courses.get(transaction.course_id)
            if transaction.course_id else None
        )
        plan = (
            await self.store.subscriptions.get(transaction.subscription_id)
            if transaction.subscription_id else None
        )

        return {
            "transactionId": transaction.id,
            "user": {
                "userId": transaction.user_id,
                "email": user.email if user else "Unknown",
                "name": (user.name or "N/A") if user else "N/A",
            },
            "orderId": transaction.order_id or "N/A",
            "paymentId": transaction.payment_id,
            "course": (
                {"courseId": course.id, "title": course.title, "price": course.new_price}
                if course else None
            ),
            "subscription": (
                {"subscriptionId": plan.id, "name": plan.name.value}
                if plan else None
            ),
            "currency": transaction.currency.value,
            "amount": float(transaction.amount),
            "status": transaction.status.value,
            "purchaseType": transaction.purchase_type.value,
            "notes": transaction.notes,
            "refundStatus": transaction.refund_status.value if transaction.refund_status else "None",
            "cartItems": [item.model_dump(mode="json") for item in transaction.cart_items],
            "createdAt": transaction.created_at.isoformat(),
        }

    # =========================================================================
    # LISTS
    # =========================================================================

    async def user_history(
        self,
        user_id: str,
        pagination: Pagination,
        status: Optional[TransactionStatus] = None,
    ) -> tuple[list[dict], dict]:
        items, total = await self.store.transactions.list_for_user(
            user_id, status, pagination.offset, pagination.limit
        )
        return [transaction_view(t) for t in items], pagination.summary(total)

    async def all_transactions(self, pagination: Pagination) -> tuple[list[dict], dict]:
        items, total = await self.store.transactions.list_all(pagination.offset, pagination.limit)
        return [transaction_view(t) for t in items], pagination.summary(total)

    async def by_status(self, status: TransactionStatus) -> list[dict]:
        return [transaction_view(t) for t in await self.store.transactions.list_by_status(status)]

    async def search(self, query: Optional[str]) -> list[dict]:
        """Transaction id (exact), payment id or user email (case-insensitive substring)."""
        term = (query or "").strip()
        if len(term) < MIN_SEARCH_LENGTH or not SEARCH_PATTERN.match(term):
            raise DomainError(
                ErrorCode.INVALID_INPUT,
                "Search query must be at least 3 characters of letters, digits or . _ % + - @",
            )

        user_ids = await self.store.users.find_ids_by_email(term)
        found = await self.store.transactions.search(term, user_ids)
        if not found:
            raise DomainError(ErrorCode.TRANSACTION_NOT_FOUND, "No transactions found for the given query")

        logger.info("transactions_searched", query=term, count=len(found))
        return [transaction_view(t) for t in found]

    # =========================================================================
    # COUNTS
    # =========================================================================

    async def yearly_totals(self, year: Optional[int] = None) -> dict:
        year = self._check_year(year)
        history = await self.store.transactions.monthly_counts(year)
        return {"total": sum(history), "history": history}

    async def monthly_daily(self, year: Optional[int] = None, month: Optional[int] = None) -> dict:
        year = self._check_year(year)
        month = utcnow().month if month is None else month
        if month < 1 or month > 12:
            raise DomainError(
                ErrorCode.INVALID_INPUT,
                "Valid year (2000 or later) and month (1-12) are required",
            )
        daily = await self.store.transactions.daily_counts(year, month)
        return {"total": sum(daily), "daily": daily}

    # =========================================================================
    # AUDIT
    # =========================================================================

    async def audit_trail(self, payment_id: str) -> list[dict]:
        entries = await self.store.audit.get_by_entity_id(payment_id)
        if not entries and await self.store.transactions.get_by_payment_id(payment_id) is None:
            raise DomainError(ErrorCode.TRANSACTION_NOT_FOUND, "Transaction not found")
        return [entry.model_dump(mode="json", by_alias=True) for entry in entries]
