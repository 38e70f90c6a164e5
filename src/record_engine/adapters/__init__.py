"""Database adapters package.

Provides the ``DatabaseClient`` Protocol and the SQLAlchemy-backed
``AsyncDatabase`` implementation.

Usage:
    from record_engine.adapters import AsyncDatabase, DatabaseClient
"""

from record_engine.adapters.base import DatabaseClient
from record_engine.adapters.database import (
    AsyncDatabase,
    create_async_engine_pooled,
    normalize_database_url,
)

__all__ = [
    "DatabaseClient",
    "AsyncDatabase",
    "create_async_engine_pooled",
    "normalize_database_url",
]
