# storage/__init__.py
# ============================================================================
# SKILLNESTX PAYMENTS: STORAGE MODULE
# ============================================================================
# Repository interfaces with in-memory and Postgres implementations
# ============================================================================

from storage.interfaces import IStore
from storage.memory import InMemoryStore
from storage.postgres import PostgresStore

__all__ = [
    "IStore",
    "InMemoryStore",
    "PostgresStore",
]
