# storage/postgres.py
# ============================================================================
# SKILLNESTX PAYMENTS: POSTGRES STORE
# ============================================================================
# asyncpg-backed repositories. Each repository talks to an "executor":
# either the pooled Database (autocommit per statement) or a
# ConnectionExecutor bound to one open transaction.
# ============================================================================

import calendar
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, Union

import asyncpg
import structlog

from core.errors import ConcurrencyConflict, DomainError, DuplicatePaymentError, ErrorCode
from database import ConnectionExecutor, Database
from schemas.domain import (
    ActiveSubscription,
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

logger = structlog.get_logger(component="postgres_store")

Executor = Union[Database, ConnectionExecutor]

PAYMENT_ID_CONSTRAINT = "uq_transactions_payment_id"


def _dumps(value: Any) -> str:
    return json.dumps(value)


def _loads(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _year_bounds(year: int) -> tuple[datetime, datetime]:
    return (
        datetime(year, 1, 1, tzinfo=timezone.utc),
        datetime(year + 1, 1, 1, tzinfo=timezone.utc),
    )


class _PostgresRepository:

    def __init__(self, executor: Executor):
        self._db = executor


# =============================================================================
# USERS
# =============================================================================

def _row_to_user(row: asyncpg.Record) -> User:
    subscription = _loads(row["active_subscription"], {})
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        role=row["role"],
        is_banned=row["is_banned"],
        purchased_courses=_loads(row["purchased_courses"], []),
        active_subscription=ActiveSubscription.model_validate(subscription) if subscription else ActiveSubscription(),
        transactions=_loads(row["transactions"], []),
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _user_documents(user: User) -> tuple[str, str, str]:
    return (
        _dumps([c.model_dump(mode="json", by_alias=True) for c in user.purchased_courses]),
        _dumps(user.active_subscription.model_dump(mode="json", by_alias=True, exclude={"is_active"})),
        _dumps(user.transactions),
    )


class PostgresUserRepository(_PostgresRepository, IUserRepository):

    async def get(self, id: str) -> Optional[User]:
        row = await self._db.fetch_one("SELECT * FROM users WHERE id = $1", id)
        return _row_to_user(row) if row else None

    async def create(self, user: User) -> User:
        courses, subscription, transactions = _user_documents(user)
        row = await self._db.fetch_one(
            """
            INSERT INTO users
            (id, name, email, role, is_banned, purchased_courses,
             active_subscription, transactions, version, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
            RETURNING *
            """,
            user.id,
            user.name,
            user.email,
            user.role.value,
            user.is_banned,
            courses,
            subscription,
            transactions,
            user.version,
            user.created_at,
            user.updated_at,
        )
        return _row_to_user(row)

    async def update(self, user: User) -> User:
        courses, subscription, transactions = _user_documents(user)
        row = await self._db.fetch_one(
            """
            UPDATE users
            SET name = $2,
                role = $3,
                is_banned = $4,
                purchased_courses = $5,
                active_subscription = $6,
                transactions = $7,
                version = version + 1,
                updated_at = NOW()
            WHERE id = $1 AND version = $8
            RETURNING *
            """,
            user.id,
            user.name,
            user.role.value,
            user.is_banned,
            courses,
            subscription,
            transactions,
            user.version,
        )
        if row is None:
            raise ConcurrencyConflict("user", user.id, user.version)
        return _row_to_user(row)

    async def find_ids_by_email(self, fragment: str) -> list[str]:
        rows = await self._db.fetch_all(
            "SELECT id FROM users WHERE email ILIKE '%' || $1 || '%' ESCAPE '\\'",
            _escape_like(fragment),
        )
        return [row["id"] for row in rows]


# =============================================================================
# CATALOG
# =============================================================================

def _row_to_course(row: asyncpg.Record) -> Course:
    return Course(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        category=row["category"],
        image_url=row["image_url"],
        old_price=row["old_price"],
        new_price=row["new_price"],
        duration=row["duration"],
        syllabus=_loads(row["syllabus"], []),
        created_at=row["created_at"],
    )


class PostgresCourseRepository(_PostgresRepository, ICourseRepository):

    async def get(self, id: str) -> Optional[Course]:
        row = await self._db.fetch_one("SELECT * FROM courses WHERE id = $1", id)
        return _row_to_course(row) if row else None

    async def create(self, course: Course) -> Course:
        await self._db.execute(
            """
            INSERT INTO courses
            (id, title, description, category, image_url, old_price,
             new_price, duration, syllabus, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            course.id,
            course.title,
            course.description,
            course.category.value,
            course.image_url,
            course.old_price,
            course.new_price,
            course.duration,
            _dumps([s.model_dump(mode="json", by_alias=True) for s in course.syllabus]),
            course.created_at,
        )
        return course

    async def get_many(self, ids: list[str]) -> dict[str, Course]:
        if not ids:
            return {}
        rows = await self._db.fetch_all(
            "SELECT * FROM courses WHERE id = ANY($1::text[])", list(ids)
        )
        return {row["id"]: _row_to_course(row) for row in rows}

    async def list_all(self) -> list[Course]:
        rows = await self._db.fetch_all("SELECT * FROM courses ORDER BY created_at")
        return [_row_to_course(row) for row in rows]


def _row_to_subscription(row: asyncpg.Record) -> Subscription:
    return Subscription(
        id=row["id"],
        name=row["name"],
        type=row["type"],
        old_price=row["old_price"],
        new_price=row["new_price"],
        duration=row["duration"],
        features=_loads(row["features"], []),
    )


class PostgresSubscriptionRepository(_PostgresRepository, ISubscriptionRepository):

    async def get(self, id: str) -> Optional[Subscription]:
        row = await self._db.fetch_one("SELECT * FROM subscriptions WHERE id = $1", id)
        return _row_to_subscription(row) if row else None

    async def create(self, plan: Subscription) -> Subscription:
        try:
            await self._db.execute(
                """
                INSERT INTO subscriptions
                (id, name, type, old_price, new_price, duration, features)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                plan.id,
                plan.name.value,
                plan.type.value,
                plan.old_price,
                plan.new_price,
                plan.duration,
                _dumps(plan.features),
            )
        except asyncpg.UniqueViolationError:
            raise DomainError(
                ErrorCode.DUPLICATE_SUBSCRIPTION,
                f"Subscription plan '{plan.name.value}' already exists",
            )
        return plan

    async def get_by_name(self, name: SubscriptionName) -> Optional[Subscription]:
        row = await self._db.fetch_one("SELECT * FROM subscriptions WHERE name = $1", name.value)
        return _row_to_subscription(row) if row else None

    async def list_all(self) -> list[Subscription]:
        rows = await self._db.fetch_all("SELECT * FROM subscriptions ORDER BY new_price")
        return [_row_to_subscription(row) for row in rows]


# =============================================================================
# TRANSACTIONS
# =============================================================================

def _row_to_transaction(row: asyncpg.Record) -> Transaction:
    return Transaction(
        id=row["id"],
        user_id=row["user_id"],
        payment_id=row["payment_id"],
        order_id=row["order_id"],
        razorpay_signature=row["razorpay_signature"],
        amount=row["amount"],
        currency=row["currency"],
        status=row["status"],
        purchase_type=row["purchase_type"],
        course_id=row["course_id"],
        subscription_id=row["subscription_id"],
        cart_items=_loads(row["cart_items"], []),
        notes=_loads(row["notes"], {}),
        refund_status=row["refund_status"],
        refund_id=row["refund_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresTransactionRepository(_PostgresRepository, ITransactionRepository):

    async def get(self, id: str) -> Optional[Transaction]:
        row = await self._db.fetch_one("SELECT * FROM transactions WHERE id = $1", id)
        return _row_to_transaction(row) if row else None

    async def get_by_payment_id(self, payment_id: str) -> Optional[Transaction]:
        row = await self._db.fetch_one(
            "SELECT * FROM transactions WHERE payment_id = $1", payment_id
        )
        return _row_to_transaction(row) if row else None

    async def insert(self, transaction: Transaction) -> Transaction:
        try:
            await self._db.execute(
                """
                INSERT INTO transactions
                (id, user_id, payment_id, order_id, razorpay_signature, amount,
                 currency, status, purchase_type, course_id, subscription_id,
                 cart_items, notes, refund_status, refund_id, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)
                """,
                transaction.id,
                transaction.user_id,
                transaction.payment_id,
                transaction.order_id,
                transaction.razorpay_signature,
                transaction.amount,
                transaction.currency.value,
                transaction.status.value,
                transaction.purchase_type.value,
                transaction.course_id,
                transaction.subscription_id,
                _dumps([i.model_dump(mode="json", by_alias=True) for i in transaction.cart_items]),
                _dumps(transaction.notes),
                transaction.refund_status.value if transaction.refund_status else None,
                transaction.refund_id,
                transaction.created_at,
                transaction.updated_at,
            )
        except asyncpg.UniqueViolationError as e:
            if e.constraint_name == PAYMENT_ID_CONSTRAINT:
                raise DuplicatePaymentError(transaction.payment_id) from e
            raise
        return transaction

    async def update_refund(self, transaction: Transaction) -> Transaction:
        row = await self._db.fetch_one(
            """
            UPDATE transactions
            SET refund_status = $2, refund_id = $3, status = $4, updated_at = $5
            WHERE id = $1
            RETURNING *
            """,
            transaction.id,
            transaction.refund_status.value if transaction.refund_status else None,
            transaction.refund_id,
            transaction.status.value,
            transaction.updated_at,
        )
        if row is None:
            raise KeyError(transaction.id)
        return _row_to_transaction(row)

    async def list_for_user(
        self,
        user_id: str,
        status: Optional[TransactionStatus],
        offset: int,
        limit: int,
    ) -> tuple[list[Transaction], int]:
        status_value = status.value if status else None
        rows = await self._db.fetch_all(
            """
            SELECT * FROM transactions
            WHERE user_id = $1 AND ($2::text IS NULL OR status = $2)
            ORDER BY created_at DESC
            OFFSET $3 LIMIT $4
            """,
            user_id,
            status_value,
            offset,
            limit,
        )
        total = await self._db.fetch_value(
            "SELECT COUNT(*) FROM transactions WHERE user_id = $1 AND ($2::text IS NULL OR status = $2)",
            user_id,
            status_value,
        )
        return [_row_to_transaction(r) for r in rows], total

    async def list_all(self, offset: int, limit: int) -> tuple[list[Transaction], int]:
        rows = await self._db.fetch_all(
            "SELECT * FROM transactions ORDER BY created_at DESC OFFSET $1 LIMIT $2",
            offset,
            limit,
        )
        total = await self._db.fetch_value("SELECT COUNT(*) FROM transactions")
        return [_row_to_transaction(r) for r in rows], total

    async def list_by_status(self, status: TransactionStatus) -> list[Transaction]:
        rows = await self._db.fetch_all(
            "SELECT * FROM transactions WHERE status = $1 ORDER BY created_at DESC",
            status.value,
        )
        return [_row_to_transaction(r) for r in rows]

    async def search(self, query: str, user_ids: list[str]) -> list[Transaction]:
        rows = await self._db.fetch_all(
            """
            SELECT * FROM transactions
            WHERE id = $1
               OR payment_id ILIKE '%' || $2 || '%' ESCAPE '\\'
               OR user_id = ANY($3::text[])
            ORDER BY created_at DESC
            """,
            query,
            _escape_like(query),
            list(user_ids),
        )
        return [_row_to_transaction(r) for r in rows]

    async def monthly_counts(self, year: int) -> list[int]:
        start, end = _year_bounds(year)
        rows = await self._db.fetch_all(
            """
            SELECT EXTRACT(MONTH FROM created_at AT TIME ZONE 'UTC')::int AS month,
                   COUNT(*) AS count
            FROM transactions
            WHERE created_at >= $1 AND created_at < $2
            GROUP BY month
            """,
            start,
            end,
        )
        counts = [0] * 12
        for row in rows:
            counts[row["month"] - 1] = row["count"]
        return counts

    async def daily_counts(self, year: int, month: int) -> list[int]:
        days = calendar.monthrange(year, month)[1]
        start = datetime(year, month, 1, tzinfo=timezone.utc)
        end = datetime(year + (month // 12), month % 12 + 1, 1, tzinfo=timezone.utc)
        rows = await self._db.fetch_all(
            """
            SELECT EXTRACT(DAY FROM created_at AT TIME ZONE 'UTC')::int AS day,
                   COUNT(*) AS count
            FROM transactions
            WHERE created_at >= $1 AND created_at < $2
            GROUP BY day
            """,
            start,
            end,
        )
        counts = [0] * days
        for row in rows:
            counts[row["day"] - 1] = row["count"]
        return counts


# =============================================================================
# LEARNING
# =============================================================================

def _row_to_saved(row: asyncpg.Record) -> SavedCourse:
    return SavedCourse(
        id=row["id"],
        user_id=row["user_id"],
        course_id=row["course_id"],
        created_at=row["created_at"],
    )


class PostgresSavedCourseRepository(_PostgresRepository, ISavedCourseRepository):

    async def get(self, user_id: str, course_id: str) -> Optional[SavedCourse]:
        row = await self._db.fetch_one(
            "SELECT * FROM saved_courses WHERE user_id = $1 AND course_id = $2",
            user_id,
            course_id,
        )
        return _row_to_saved(row) if row else None

    async def add(self, saved: SavedCourse) -> SavedCourse:
        row = await self._db.fetch_one(
            """
            INSERT INTO saved_courses (id, user_id, course_id, created_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (user_id, course_id) DO NOTHING
            RETURNING *
            """,
            saved.id,
            saved.user_id,
            saved.course_id,
            saved.created_at,
        )
        if row is None:
            return await self.get(saved.user_id, saved.course_id)
        return _row_to_saved(row)

    async def remove(self, user_id: str, course_id: str) -> bool:
        result = await self._db.execute(
            "DELETE FROM saved_courses WHERE user_id = $1 AND course_id = $2",
            user_id,
            course_id,
        )
        return result == "DELETE 1"

    async def list_for_user(self, user_id: str) -> list[SavedCourse]:
        rows = await self._db.fetch_all(
            "SELECT * FROM saved_courses WHERE user_id = $1 ORDER BY created_at DESC",
            user_id,
        )
        return [_row_to_saved(r) for r in rows]


def _row_to_progress(row: asyncpg.Record) -> UserProgress:
    return UserProgress(
        user_id=row["user_id"],
        course_id=row["course_id"],
        completed_lessons=_loads(row["completed_lessons"], []),
        is_completed=row["is_completed"],
        completed_at=row["completed_at"],
        updated_at=row["updated_at"],
    )


class PostgresProgressRepository(_PostgresRepository, IProgressRepository):

    async def get(self, user_id: str, course_id: str) -> Optional[UserProgress]:
        row = await self._db.fetch_one(
            "SELECT * FROM user_progress WHERE user_id = $1 AND course_id = $2",
            user_id,
            course_id,
        )
        return _row_to_progress(row) if row else None

    async def save(self, progress: UserProgress) -> UserProgress:
        row = await self._db.fetch_one(
            """
            INSERT INTO user_progress
            (user_id, course_id, completed_lessons, is_completed, completed_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (user_id, course_id) DO UPDATE
            SET completed_lessons = EXCLUDED.completed_lessons,
                is_completed = EXCLUDED.is_completed,
                completed_at = EXCLUDED.completed_at,
                updated_at = EXCLUDED.updated_at
            RETURNING *
            """,
            progress.user_id,
            progress.course_id,
            _dumps(progress.completed_lessons),
            progress.is_completed,
            progress.completed_at,
            progress.updated_at,
        )
        return _row_to_progress(row)

    async def list_for_user(
        self, user_id: str, completed: Optional[bool] = None
    ) -> list[UserProgress]:
        rows = await self._db.fetch_all(
            """
            SELECT * FROM user_progress
            WHERE user_id = $1 AND ($2::boolean IS NULL OR is_completed = $2)
            ORDER BY updated_at DESC
            """,
            user_id,
            completed,
        )
        return [_row_to_progress(r) for r in rows]


# =============================================================================
# AUDIT
# =============================================================================

class PostgresAuditLog(_PostgresRepository, IAuditLog):

    async def append(self, entry: AuditLogEntry) -> None:
        await self._db.execute(
            """
            INSERT INTO transaction_events
            (id, trace_id, event_type, entity_type, entity_id,
             previous_state, new_state, metadata, actor, timestamp)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            """,
            entry.log_id,
            entry.trace_id,
            entry.event_type.value,
            entry.entity_type,
            entry.entity_id,
            _dumps(entry.previous_state) if entry.previous_state is not None else None,
            _dumps(entry.new_state) if entry.new_state is not None else None,
            _dumps(entry.metadata),
            entry.actor,
            entry.timestamp,
        )

    async def get_by_entity_id(self, entity_id: str) -> list[AuditLogEntry]:
        rows = await self._db.fetch_all(
            "SELECT * FROM transaction_events WHERE entity_id = $1 ORDER BY timestamp",
            entity_id,
        )
        return [
            AuditLogEntry(
                log_id=row["id"],
                trace_id=row["trace_id"],
                event_type=row["event_type"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                previous_state=_loads(row["previous_state"], None),
                new_state=_loads(row["new_state"], None),
                metadata=_loads(row["metadata"], {}),
                actor=row["actor"],
                timestamp=row["timestamp"],
            )
            for row in rows
        ]


# =============================================================================
# STORE
# =============================================================================

class _PostgresRepositories(IStore):

    def __init__(self, executor: Executor):
        self.users = PostgresUserRepository(executor)
        self.courses = PostgresCourseRepository(executor)
        self.subscriptions = PostgresSubscriptionRepository(executor)
        self.transactions = PostgresTransactionRepository(executor)
        self.saved_courses = PostgresSavedCourseRepository(executor)
        self.progress = PostgresProgressRepository(executor)
        self.audit = PostgresAuditLog(executor)


class _PostgresSession(_PostgresRepositories):
    """Repositories bound to one open transaction."""

    def __init__(self, executor: ConnectionExecutor):
        super().__init__(executor)
        self._executor = executor

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[IStore]:
        # Nested scope becomes a savepoint
        async with self._executor.connection.transaction():
            yield self


class PostgresStore(_PostgresRepositories):

    def __init__(self, database: Database):
        super().__init__(database)
        self._database = database

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[IStore]:
        async with self._database.transaction() as executor:
            yield _PostgresSession(executor)

    async def ping(self) -> bool:
        return await self._database.ping()
