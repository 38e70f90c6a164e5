"""Database client protocol definition.

Defines the ``DatabaseClient`` Protocol the CRUD layer depends on. The
engine builds SQLAlchemy Core statements itself, so a client only has to
hand out connections and run DDL.

Usage:
    from record_engine.adapters.base import DatabaseClient

    async def count_posts(client: DatabaseClient, table) -> int:
        async with client.connection() as conn:
            result = await conn.execute(select(func.count()).select_from(table))
            return result.scalar_one()
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine


class DatabaseClient(Protocol):
    """Connection provider that all database backends must implement.

    All methods are async -- callers must ``await`` every operation.
    """

    @property
    def engine(self) -> AsyncEngine:
        """The underlying SQLAlchemy async engine."""
        ...

    def connection(self, context: Any = None) -> AbstractAsyncContextManager[AsyncConnection]:
        """Yield the connection an operation should run on.

        Resolution order: ``context.db`` when the caller supplied one, the
        connection of the enclosing transaction, then a fresh pooled
        connection.

        Args:
            context: Optional ``CRUDContext``.

        Example:
            async with client.connection(ctx) as conn:
                rows = (await conn.execute(stmt)).mappings().all()
        """
        ...

    async def create_all(self, metadata: MetaData) -> None:
        """Create every table in ``metadata`` that does not exist yet."""
        ...

    async def drop_all(self, metadata: MetaData) -> None:
        """Drop every table in ``metadata``."""
        ...

    async def test_connection(self) -> bool:
        """Return ``True`` when ``SELECT 1`` succeeds."""
        ...

    async def close(self) -> None:
        """Dispose of the connection pool."""
        ...
