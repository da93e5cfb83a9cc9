"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
SQL (SQLAlchemy) is the production backend; the in-memory backend serves
tests and single-process setups.
"""

from expense_sync.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    NotFoundError,
    StorageError,
    StoreSession,
    SyncStoreInterface,
    stamp_write,
)
from expense_sync.storage.memory import (
    InMemoryAuditStorage,
    InMemorySyncStore,
)
from expense_sync.storage.sql import (
    SqlAuditStorage,
    SqlSyncStore,
    build_engine,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "StoreSession",
    "SyncStoreInterface",
    "stamp_write",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemorySyncStore",
    # SQL implementation
    "SqlAuditStorage",
    "SqlSyncStore",
    "build_engine",
]
