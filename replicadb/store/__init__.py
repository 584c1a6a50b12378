"""
Object store backends for replicadb.

Provides named key-value stores with scoped, atomic transactions:
- InMemoryBackend: process-local, the default
- SqliteBackend: write-through persistence to a SQLite file
"""

from .base import (
    ObjectStore,
    ObjectStoreBackend,
    StoreChanges,
    StoreError,
    StoreSpec,
    Transaction,
    TransactionMode,
    key_sort_key,
)
from .memory import InMemoryBackend
from .sqlite import SchemaMismatchError, SqliteBackend

__all__ = [
    "InMemoryBackend",
    "ObjectStore",
    "ObjectStoreBackend",
    "SchemaMismatchError",
    "SqliteBackend",
    "StoreChanges",
    "StoreError",
    "StoreSpec",
    "Transaction",
    "TransactionMode",
    "key_sort_key",
]
