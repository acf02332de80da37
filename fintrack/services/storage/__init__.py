"""
Storage Services Package

Provides the StorageAdapter contract and its two implementations: the
structured SQLite backend and the flat key-value backend.
"""

from fintrack.services.storage.interface import (
    BackendUnavailableError,
    DuplicateError,
    NotFoundError,
    QuotaExceededError,
    StorageAdapter,
    StorageError,
)
from fintrack.services.storage.kv import (
    FileKeyValueStore,
    InMemoryKeyValueStore,
    KeyValueStore,
)
from fintrack.services.storage.flat import FlatStoreAdapter
from fintrack.services.storage.structured import (
    StructuredStoreAdapter,
    create_sqlite_engine,
)

__all__ = [
    # Interfaces
    "KeyValueStore",
    "StorageAdapter",
    # Exceptions
    "BackendUnavailableError",
    "DuplicateError",
    "NotFoundError",
    "QuotaExceededError",
    "StorageError",
    # Implementations
    "FileKeyValueStore",
    "FlatStoreAdapter",
    "InMemoryKeyValueStore",
    "StructuredStoreAdapter",
    "create_sqlite_engine",
]
