"""
Data storage layer.

Connections, the sync job outbox, webhook receipts, the local invoice
projection, domain events and reservations all live behind the
StorageBackend interface. DuckDB is the bundled implementation.
"""

from functools import lru_cache

from qbosync.config import get_settings

from .base import DuplicateKeyError, StorageBackend, StorageError
from .duckdb_storage import DuckDBStorage


@lru_cache
def get_storage() -> StorageBackend:
    """
    Get cached storage backend instance (singleton).

    Returns:
        StorageBackend implementation instance
    """
    settings = get_settings()
    return DuckDBStorage(db_path=settings.db_path)


__all__ = [
    "DuplicateKeyError",
    "StorageBackend",
    "StorageError",
    "DuckDBStorage",
    "get_storage",
]
