"""
Storage backends.

- MemoryStore: in-process, used by tests and single-process runs
- PostgresStore: psycopg-backed, used when a database URL is configured
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import CatalogTransaction, StoredField, SyncStore
from .memory import MemoryStore

if TYPE_CHECKING:
    from ..config import SyncConfig


def create_store(config: "SyncConfig") -> SyncStore:
    """Pick the backend for the configured database URL."""
    if config.database_url:
        from .postgres import PostgresStore

        return PostgresStore(config.database_url)
    return MemoryStore()


__all__ = [
    "CatalogTransaction",
    "MemoryStore",
    "StoredField",
    "SyncStore",
    "create_store",
]
