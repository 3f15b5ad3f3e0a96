"""
Persistence for orders, idempotency markers and payment records.

Backends: memory (development/tests), SQLite (aiosqlite), PostgreSQL (asyncpg).
"""

from ordersaga.storage.base import DedupStore, OrderStorage, PaymentRecordStore, StorageBundle
from ordersaga.storage.errors import (
    ConcurrencyError,
    DuplicateKeyError,
    NotFoundError,
    StorageConnectionError,
    StorageError,
)
from ordersaga.storage.factory import create_storage, get_available_backends
from ordersaga.storage.memory import (
    InMemoryDedupStore,
    InMemoryOrderStorage,
    InMemoryPaymentRecordStore,
    create_memory_bundle,
)

__all__ = [
    "ConcurrencyError",
    "DedupStore",
    "DuplicateKeyError",
    "InMemoryDedupStore",
    "InMemoryOrderStorage",
    "InMemoryPaymentRecordStore",
    "NotFoundError",
    "OrderStorage",
    "PaymentRecordStore",
    "StorageBundle",
    "StorageConnectionError",
    "StorageError",
    "create_memory_bundle",
    "create_storage",
    "get_available_backends",
]
