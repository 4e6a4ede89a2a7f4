"""
Database Module
===============
AsyncPG connection pool and schema migrations for the payments backend.

This module provides:
- Database: an explicitly constructed pool owner (created in the app
  lifespan, closed on shutdown)
- Connection retry with exponential backoff on startup
- Idempotent migrations (tables, unique payment index, lookup indexes)
- ConnectionExecutor: the same query helpers bound to one connection,
  used inside transactions

pip install asyncpg
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import asyncpg
import structlog

from core.config import DatabaseConfig, database_config

logger = structlog.get_logger(component="database")


# =============================================================================
# MIGRATIONS
# =============================================================================

MIGRATIONS = [
    # Users (entitlements embedded as JSONB, owned by the user row)
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL DEFAULT '',
        email TEXT NOT NULL UNIQUE,
        role VARCHAR(20) NOT NULL DEFAULT 'user',
        is_banned BOOLEAN NOT NULL DEFAULT FALSE,
        purchased_courses JSONB NOT NULL DEFAULT '[]',
        active_subscription JSONB NOT NULL DEFAULT '{}',
        transactions JSONB NOT NULL DEFAULT '[]',
        version INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Course catalog
    """
    CREATE TABLE IF NOT EXISTS courses (
        id TEXT PRIMARY KEY,
        title VARCHAR(200) NOT NULL,
        description TEXT NOT NULL,
        category VARCHAR(50) NOT NULL,
        image_url TEXT NOT NULL DEFAULT '',
        old_price INTEGER NOT NULL CHECK (old_price >= 0),
        new_price INTEGER NOT NULL CHECK (new_price >= 0 AND new_price <= old_price),
        duration INTEGER NOT NULL DEFAULT 365,
        syllabus JSONB NOT NULL DEFAULT '[]',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Subscription plan templates
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id TEXT PRIMARY KEY,
        name VARCHAR(20) NOT NULL UNIQUE,
        type VARCHAR(20) NOT NULL,
        old_price INTEGER NOT NULL CHECK (old_price >= 0),
        new_price INTEGER NOT NULL CHECK (new_price >= 0 AND new_price <= old_price),
        duration INTEGER NOT NULL CHECK (duration IN (30, 180, 365)),
        features JSONB NOT NULL DEFAULT '[]'
    )
    """,

    # Transactions: payment_id is the dedup authority
    """
    CREATE TABLE IF NOT EXISTS transactions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        payment_id VARCHAR(64) NOT NULL,
        order_id VARCHAR(64) NOT NULL,
        razorpay_signature TEXT NOT NULL,
        amount NUMERIC(12, 2) NOT NULL,
        currency VARCHAR(3) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        purchase_type VARCHAR(20) NOT NULL,
        course_id TEXT,
        subscription_id TEXT,
        cart_items JSONB NOT NULL DEFAULT '[]',
        notes JSONB NOT NULL DEFAULT '{}',
        refund_status VARCHAR(20),
        refund_id VARCHAR(64),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_payment_id ON transactions(payment_id)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id, created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_status ON transactions(status)",
    "CREATE INDEX IF NOT EXISTS idx_transactions_created ON transactions(created_at DESC)",

    # Saved courses
    """
    CREATE TABLE IF NOT EXISTS saved_courses (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id),
        course_id TEXT NOT NULL REFERENCES courses(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (user_id, course_id)
    )
    """,

    # Progress
    """
    CREATE TABLE IF NOT EXISTS user_progress (
        user_id TEXT NOT NULL REFERENCES users(id),
        course_id TEXT NOT NULL REFERENCES courses(id),
        completed_lessons JSONB NOT NULL DEFAULT '[]',
        is_completed BOOLEAN NOT NULL DEFAULT FALSE,
        completed_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (user_id, course_id)
    )
    """,

    # Audit trail for transaction state changes
    """
    CREATE TABLE IF NOT EXISTS transaction_events (
        id TEXT PRIMARY KEY,
        trace_id VARCHAR(128) NOT NULL,
        event_type VARCHAR(50) NOT NULL,
        entity_type VARCHAR(30) NOT NULL,
        entity_id VARCHAR(64) NOT NULL,
        previous_state JSONB,
        new_state JSONB,
        metadata JSONB NOT NULL DEFAULT '{}',
        actor VARCHAR(100) NOT NULL DEFAULT 'system',
        timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_entity ON transaction_events(entity_id, timestamp)",
]


# =============================================================================
# QUERY HELPERS
# =============================================================================

class ConnectionExecutor:
    """Query helpers bound to a single connection (inside a transaction)."""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    @property
    def connection(self) -> asyncpg.Connection:
        return self._conn

    async def execute(self, query: str, *args) -> str:
        return await self._conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        return await self._conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        return await self._conn.fetch(query, *args)

    async def fetch_value(self, query: str, *args):
        return await self._conn.fetchval(query, *args)


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or database_config
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    async def initialize(self, run_migrations: bool = True):
        """Create the pool, retrying with exponential backoff."""
        if self._pool is not None:
            return

        attempts = max(1, self.config.CONNECT_RETRIES)
        for attempt in range(1, attempts + 1):
            try:
                self._pool = await asyncpg.create_pool(
                    self.config.DATABASE_URL,
                    min_size=self.config.MIN_POOL_SIZE,
                    max_size=self.config.MAX_POOL_SIZE,
                )
                logger.info("database_pool_initialized", attempt=attempt)
                break
            except (OSError, asyncpg.PostgresError) as e:
                if attempt == attempts:
                    logger.error("database_connect_failed", attempts=attempts, error=str(e))
                    raise
                delay = self.config.RETRY_BASE_DELAY * (2 ** (attempt - 1))
                logger.warning(
                    "database_connect_retry",
                    attempt=attempt,
                    retry_in_seconds=delay,
                    error=str(e),
                )
                await asyncio.sleep(delay)

        if run_migrations:
            await self._run_migrations()

    async def close(self):
        """Close the connection pool"""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection from the pool"""
        if self._pool is None:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[ConnectionExecutor]:
        """One connection, one database transaction."""
        async with self.acquire() as conn:
            async with conn.transaction():
                yield ConnectionExecutor(conn)

    async def execute(self, query: str, *args) -> str:
        """Execute a query"""
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        """Fetch a single row"""
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        """Fetch all rows"""
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetch_value(self, query: str, *args):
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def ping(self) -> bool:
        try:
            return await self.fetch_value("SELECT 1") == 1
        except (OSError, asyncpg.PostgresError) as e:
            logger.warning("database_ping_failed", error=str(e))
            return False

    async def _run_migrations(self):
        """Run database migrations"""
        async with self.acquire() as conn:
            async with conn.transaction():
                for migration in MIGRATIONS:
                    await conn.execute(migration)

        logger.info("database_migrations_complete", statements=len(MIGRATIONS))
