"""
Storage abstraction layer for the Mycelix Music API.

This package provides a pluggable catalog backend:

- Memory (default; tests and single-instance deployments)
- PostgreSQL (for production)

Usage:
    from storage import get_storage_backend

    store = get_storage_backend()
    store.create_song({"id": "song-1", ...})
    inserted = store.record_payment({"song_id": "song-1", "amount": "0.01", ...})
"""

import os
from typing import TYPE_CHECKING

from storage.base import (
    CatalogStore,
    DuplicateRecordError,
    StorageConnectionError,
    StorageError,
    StorageWriteError,
)
from storage.memory import MemoryCatalogStore

# Lazy import for PostgreSQL so the module only loads when selected
if TYPE_CHECKING:
    from storage.postgresql import PostgreSQLCatalogStore

__all__ = [
    "CatalogStore",
    "DuplicateRecordError",
    "MemoryCatalogStore",
    "StorageConnectionError",
    "StorageError",
    "StorageWriteError",
    "get_storage_backend",
]


def get_storage_backend(backend_type: str | None = None, database_url: str | None = None) -> CatalogStore:
    """
    Get the configured catalog backend.

    Environment variables (used when arguments are omitted):
        STORAGE_BACKEND: Backend type ("memory", "postgresql")
        DATABASE_URL: PostgreSQL connection URL

    Returns:
        Configured CatalogStore instance
    """
    backend_type = (backend_type or os.getenv("STORAGE_BACKEND", "memory")).lower()

    if backend_type in ("postgresql", "postgres"):
        database_url = database_url or os.getenv("DATABASE_URL")
        if not database_url:
            raise StorageError("DATABASE_URL environment variable required for PostgreSQL backend")
        from storage.postgresql import PostgreSQLCatalogStore

        return PostgreSQLCatalogStore(database_url)

    elif backend_type == "memory":
        return MemoryCatalogStore()

    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")
