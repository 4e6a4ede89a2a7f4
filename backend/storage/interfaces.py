# storage/interfaces.py
# ============================================================================
# SKILLNESTX PAYMENTS: PERSISTENCE INTERFACES
# ============================================================================
# Abstractions so the in-memory and Postgres stores are interchangeable.
#
# A store exposes one repository per aggregate. `atomic()` yields a store
# whose repositories share a single database transaction: either every
# write inside the block lands, or none does.
# ============================================================================

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel

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
)

T = TypeVar("T", bound=BaseModel)


class IRepository(ABC, Generic[T]):
    """Base repository interface"""

    @abstractmethod
    async def get(self, id: str) -> Optional[T]:
        pass

    async def exists(self, id: str) -> bool:
        return await self.get(id) is not None


class IUserRepository(IRepository[User]):

    @abstractmethod
    async def create(self, user: User) -> User:
        pass

    @abstractmethod
    async def update(self, user: User) -> User:
        """
        Compare-and-swap on `user.version`.

        Returns the stored user with the version bumped. Raises
        ConcurrencyConflict when someone else wrote first.
        """

    @abstractmethod
    async def find_ids_by_email(self, fragment: str) -> list[str]:
        """Case-insensitive substring match on email."""


class ICourseRepository(IRepository[Course]):

    @abstractmethod
    async def create(self, course: Course) -> Course:
        pass

    @abstractmethod
    async def get_many(self, ids: list[str]) -> dict[str, Course]:
        pass

    @abstractmethod
    async def list_all(self) -> list[Course]:
        pass


class ISubscriptionRepository(IRepository[Subscription]):

    @abstractmethod
    async def create(self, plan: Subscription) -> Subscription:
        """Raises DomainError(DUPLICATE_SUBSCRIPTION) if the name is taken."""

    @abstractmethod
    async def get_by_name(self, name: SubscriptionName) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def list_all(self) -> list[Subscription]:
        pass


class ITransactionRepository(IRepository[Transaction]):

    @abstractmethod
    async def get_by_payment_id(self, payment_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def insert(self, transaction: Transaction) -> Transaction:
        """Raises DuplicatePaymentError when payment_id already exists."""

    @abstractmethod
    async def update_refund(self, transaction: Transaction) -> Transaction:
        """Persist refund_status, refund_id, status and updated_at."""

    @abstractmethod
    async def list_for_user(
        self,
        user_id: str,
        status: Optional[TransactionStatus],
        offset: int,
        limit: int,
    ) -> tuple[list[Transaction], int]:
        pass

    @abstractmethod
    async def list_all(self, offset: int, limit: int) -> tuple[list[Transaction], int]:
        pass

    @abstractmethod
    async def list_by_status(self, status: TransactionStatus) -> list[Transaction]:
        pass

    @abstractmethod
    async def search(self, query: str, user_ids: list[str]) -> list[Transaction]:
        """Exact id match, payment id substring, or any of user_ids."""

    @abstractmethod
    async def monthly_counts(self, year: int) -> list[int]:
        """Twelve counts, January first."""

    @abstractmethod
    async def daily_counts(self, year: int, month: int) -> list[int]:
        """One count per day of the month."""


class ISavedCourseRepository(ABC):

    @abstractmethod
    async def get(self, user_id: str, course_id: str) -> Optional[SavedCourse]:
        pass

    @abstractmethod
    async def add(self, saved: SavedCourse) -> SavedCourse:
        pass

    @abstractmethod
    async def remove(self, user_id: str, course_id: str) -> bool:
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str) -> list[SavedCourse]:
        pass


class IProgressRepository(ABC):

    @abstractmethod
    async def get(self, user_id: str, course_id: str) -> Optional[UserProgress]:
        pass

    @abstractmethod
    async def save(self, progress: UserProgress) -> UserProgress:
        """Upsert on (user_id, course_id)."""

    @abstractmethod
    async def list_for_user(
        self, user_id: str, completed: Optional[bool] = None
    ) -> list[UserProgress]:
        pass


class IAuditLog(ABC):
    """Append-only audit log interface"""

    @abstractmethod
    async def append(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    async def get_by_entity_id(self, entity_id: str) -> list[AuditLogEntry]:
        pass


class IStore(ABC):
    """Repositories for every aggregate plus a transactional scope."""

    users: IUserRepository
    courses: ICourseRepository
    subscriptions: ISubscriptionRepository
    transactions: ITransactionRepository
    saved_courses: ISavedCourseRepository
    progress: IProgressRepository
    audit: IAuditLog

    @abstractmethod
    def atomic(self) -> AbstractAsyncContextManager["IStore"]:
        pass

    async def ping(self) -> bool:
        return True
