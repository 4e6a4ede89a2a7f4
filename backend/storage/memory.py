# storage/memory.py
# ============================================================================
# SKILLNESTX PAYMENTS: IN-MEMORY STORE
# ============================================================================
# Lock-guarded dict storage for tests and local runs.
#
# atomic() holds the store lock for the whole block and restores a
# snapshot if the block raises, mirroring a database rollback. Entities
# are replaced on write, never mutated in place, so shallow copies of the
# dicts are enough for a snapshot.
# ============================================================================

import asyncio
import calendar
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from core.errors import ConcurrencyConflict, DomainError, DuplicatePaymentError, ErrorCode
from schemas.domain import (
    AuditLogEntry,
    Course,
    SavedCourse,
    Subscription,
    SubscriptionName,
    Transaction,
    TransactionStatus,
    User,
    UserProgress,
    utcnow,
)
from storage.interfaces import (
    IAuditLog,
    ICourseRepository,
    IProgressRepository,
    ISavedCourseRepository,
    IStore,
    ISubscriptionRepository,
    ITransactionRepository,
    IUserRepository,
)


@dataclass
class _MemoryState:
    users: dict[str, User] = field(default_factory=dict)
    courses: dict[str, Course] = field(default_factory=dict)
    subscriptions: dict[str, Subscription] = field(default_factory=dict)
    transactions: dict[str, Transaction] = field(default_factory=dict)
    payment_index: dict[str, str] = field(default_factory=dict)
    saved: dict[tuple[str, str], SavedCourse] = field(default_factory=dict)
    progress: dict[tuple[str, str], UserProgress] = field(default_factory=dict)
    audit: list[AuditLogEntry] = field(default_factory=list)

    def snapshot(self) -> "_MemoryState":
        return _MemoryState(
            users=dict(self.users),
            courses=dict(self.courses),
            subscriptions=dict(self.subscriptions),
            transactions=dict(self.transactions),
            payment_index=dict(self.payment_index),
            saved=dict(self.saved),
            progress=dict(self.progress),
            audit=list(self.audit),
        )

    def restore(self, snapshot: "_MemoryState") -> None:
        self.users = snapshot.users
        self.courses = snapshot.courses
        self.subscriptions = snapshot.subscriptions
        self.transactions = snapshot.transactions
        self.payment_index = snapshot.payment_index
        self.saved = snapshot.saved
        self.progress = snapshot.progress
        self.audit = snapshot.audit


class _Guarded:
    """Shared plumbing: state reference plus an optional lock."""

    def __init__(self, state: _MemoryState, lock: Optional[asyncio.Lock]):
        self._state = state
        self._lock = lock

    def _guard(self):
        return self._lock if self._lock is not None else nullcontext()


# =============================================================================
# REPOSITORIES
# =============================================================================

class InMemoryUserRepository(_Guarded, IUserRepository):

    async def get(self, id: str) -> Optional[User]:
        async with self._guard():
            return self._state.users.get(id)

    async def create(self, user: User) -> User:
        async with self._guard():
            self._state.users[user.id] = user
            return user

    async def update(self, user: User) -> User:
        async with self._guard():
            current = self._state.users.get(user.id)
            if current is None or current.version != user.version:
                raise ConcurrencyConflict("user", user.id, user.version)
            stored = user.model_copy(update={
                "version": user.version + 1,
                "updated_at": utcnow(),
            })
            self._state.users[user.id] = stored
            return stored

    async def find_ids_by_email(self, fragment: str) -> list[str]:
        needle = fragment.lower()
        async with self._guard():
            return [u.id for u in self._state.users.values() if needle in u.email.lower()]


class InMemoryCourseRepository(_Guarded, ICourseRepository):

    async def get(self, id: str) -> Optional[Course]:
        async with self._guard():
            return self._state.courses.get(id)

    async def create(self, course: Course) -> Course:
        async with self._guard():
            self._state.courses[course.id] = course
            return course

    async def get_many(self, ids: list[str]) -> dict[str, Course]:
        async with self._guard():
            return {i: self._state.courses[i] for i in ids if i in self._state.courses}

    async def list_all(self) -> list[Course]:
        async with self._guard():
            return sorted(self._state.courses.values(), key=lambda c: c.created_at)


class InMemorySubscriptionRepository(_Guarded, ISubscriptionRepository):

    async def get(self, id: str) -> Optional[Subscription]:
        async with self._guard():
            return self._state.subscriptions.get(id)

    async def create(self, plan: Subscription) -> Subscription:
        async with self._guard():
            if any(p.name == plan.name for p in self._state.subscriptions.values()):
                raise DomainError(
                    ErrorCode.DUPLICATE_SUBSCRIPTION,
                    f"Subscription plan '{plan.name.value}' already exists",
                )
            self._state.subscriptions[plan.id] = plan
            return plan

    async def get_by_name(self, name: SubscriptionName) -> Optional[Subscription]:
        async with self._guard():
            for plan in self._state.subscriptions.values():
                if plan.name == name:
                    return plan
            return None

    async def list_all(self) -> list[Subscription]:
        async with self._guard():
            return list(self._state.subscriptions.values())


class InMemoryTransactionRepository(_Guarded, ITransactionRepository):

    def _newest_first(self, items) -> list[Transaction]:
        return sorted(items, key=lambda t: t.created_at, reverse=True)

    async def get(self, id: str) -> Optional[Transaction]:
        async with self._guard():
            return self._state.transactions.get(id)

    async def get_by_payment_id(self, payment_id: str) -> Optional[Transaction]:
        async with self._guard():
            txn_id = self._state.payment_index.get(payment_id)
            return self._state.transactions.get(txn_id) if txn_id else None

    async def insert(self, transaction: Transaction) -> Transaction:
        async with self._guard():
            # Unique index on payment_id
            if transaction.payment_id in self._state.payment_index:
                raise DuplicatePaymentError(transaction.payment_id)
            self._state.transactions[transaction.id] = transaction
            self._state.payment_index[transaction.payment_id] = transaction.id
            return transaction

    async def update_refund(self, transaction: Transaction) -> Transaction:
        async with self._guard():
            current = self._state.transactions.get(transaction.id)
            if current is None:
                raise KeyError(transaction.id)
            stored = current.model_copy(update={
                "refund_status": transaction.refund_status,
                "refund_id": transaction.refund_id,
                "status": transaction.status,
                "updated_at": transaction.updated_at,
            })
            self._state.transactions[transaction.id] = stored
            return stored

    async def list_for_user(
        self,
        user_id: str,
        status: Optional[TransactionStatus],
        offset: int,
        limit: int,
    ) -> tuple[list[Transaction], int]:
        async with self._guard():
            matches = [
                t for t in self._state.transactions.values()
                if t.user_id == user_id and (status is None or t.status == status)
            ]
        ordered = self._newest_first(matches)
        return ordered[offset:offset + limit], len(ordered)

    async def list_all(self, offset: int, limit: int) -> tuple[list[Transaction], int]:
        async with self._guard():
            ordered = self._newest_first(self._state.transactions.values())
        return ordered[offset:offset + limit], len(ordered)

    async def list_by_status(self, status: TransactionStatus) -> list[Transaction]:
        async with self._guard():
            return self._newest_first(
                t for t in self._state.transactions.values() if t.status == status
            )

    async def search(self, query: str, user_ids: list[str]) -> list[Transaction]:
        needle = query.lower()
        wanted_users = set(user_ids)
        async with self._guard():
            return self._newest_first(
                t for t in self._state.transactions.values()
                if t.id == query
                or needle in t.payment_id.lower()
                or t.user_id in wanted_users
            )

    async def monthly_counts(self, year: int) -> list[int]:
        counts = [0] * 12
        async with self._guard():
            for t in self._state.transactions.values():
                if t.created_at.year == year:
                    counts[t.created_at.month - 1] += 1
        return counts

    async def daily_counts(self, year: int, month: int) -> list[int]:
        counts = [0] * calendar.monthrange(year, month)[1]
        async with self._guard():
            for t in self._state.transactions.values():
                if t.created_at.year == year and t.created_at.month == month:
                    counts[t.created_at.day - 1] += 1
        return counts


class InMemorySavedCourseRepository(_Guarded, ISavedCourseRepository):

    async def get(self, user_id: str, course_id: str) -> Optional[SavedCourse]:
        async with self._guard():
            return self._state.saved.get((user_id, course_id))

    async def add(self, saved: SavedCourse) -> SavedCourse:
        async with self._guard():
            key = (saved.user_id, saved.course_id)
            return self._state.saved.setdefault(key, saved)

    async def remove(self, user_id: str, course_id: str) -> bool:
        async with self._guard():
            return self._state.saved.pop((user_id, course_id), None) is not None

    async def list_for_user(self, user_id: str) -> list[SavedCourse]:
        async with self._guard():
            return sorted(
                (s for s in self._state.saved.values() if s.user_id == user_id),
                key=lambda s: s.created_at,
                reverse=True,
            )


class InMemoryProgressRepository(_Guarded, IProgressRepository):

    async def get(self, user_id: str, course_id: str) -> Optional[UserProgress]:
        async with self._guard():
            return self._state.progress.get((user_id, course_id))

    async def save(self, progress: UserProgress) -> UserProgress:
        async with self._guard():
            self._state.progress[(progress.user_id, progress.course_id)] = progress
            return progress

    async def list_for_user(
        self, user_id: str, completed: Optional[bool] = None
    ) -> list[UserProgress]:
        async with self._guard():
            return [
                p for p in self._state.progress.values()
                if p.user_id == user_id and (completed is None or p.is_completed == completed)
            ]


class InMemoryAuditLog(_Guarded, IAuditLog):
    """Append-only audit log"""

    async def append(self, entry: AuditLogEntry) -> None:
        async with self._guard():
            self._state.audit.append(entry)

    async def get_by_entity_id(self, entity_id: str) -> list[AuditLogEntry]:
        async with self._guard():
            return [e for e in self._state.audit if e.entity_id == entity_id]


# =============================================================================
# STORE
# =============================================================================

class _InMemoryRepositories(IStore):

    def __init__(self, state: _MemoryState, lock: Optional[asyncio.Lock]):
        self.users = InMemoryUserRepository(state, lock)
        self.courses = InMemoryCourseRepository(state, lock)
        self.subscriptions = InMemorySubscriptionRepository(state, lock)
        self.transactions = InMemoryTransactionRepository(state, lock)
        self.saved_courses = InMemorySavedCourseRepository(state, lock)
        self.progress = InMemoryProgressRepository(state, lock)
        self.audit = InMemoryAuditLog(state, lock)


class _InMemorySession(_InMemoryRepositories):
    """Repositories used while the store lock is already held."""

    def __init__(self, state: _MemoryState):
        super().__init__(state, lock=None)

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[IStore]:
        yield self


class InMemoryStore(_InMemoryRepositories):
    """Thread-safe in-memory store"""

    def __init__(self):
        self._state = _MemoryState()
        self._lock = asyncio.Lock()
        super().__init__(self._state, self._lock)

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[IStore]:
        async with self._lock:
            snapshot = self._state.snapshot()
            try:
                yield _InMemorySession(self._state)
            except BaseException:
                self._state.restore(snapshot)
                raise
