"""Append-only version snapshots.

Every mutation of a versioned entity inserts one row into
``<name>_versions`` (the non-localized fields plus version metadata) and
copies the entity's i18n rows into ``<name>_i18n_versions`` under the same
version number. Version numbers start at 1 and grow by one per entity;
pruning only ever removes the oldest numbers.

Usage:
    engine = VersioningEngine(topology)
    async with database.connection() as conn:
        number = await engine.snapshot(conn, row, "update", ctx)
"""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncConnection

from record_engine.context import CRUDContext, get_attr
from record_engine.query.localization import (
    I18N_FALLBACK_PREFIX,
    I18N_PREFIX,
    merge_localized_rows,
)
from record_engine.schema.topology import TableTopology, new_id

logger = logging.getLogger(__name__)

VERSION_COLUMNS = (
    "version_id",
    "id",
    "version_number",
    "version_operation",
    "version_user_id",
    "version_created_at",
)


class VersioningEngine:
    """Snapshot, prune, list and load versions of one entity."""

    def __init__(self, topology: TableTopology) -> None:
        if topology.versions is None:
            raise ValueError(f"'{topology.state.name}' has no versions table")
        self._topology = topology
        self._state = topology.state
        self._versions = topology.versions
        self._i18n_versions = topology.i18n_versions

    @property
    def max_versions(self) -> int | None:
        return self._state.options.versioning.max_versions

    async def next_version_number(self, conn: AsyncConnection, record_id: str) -> int:
        result = await conn.execute(
            select(func.max(self._versions.c.version_number)).where(
                self._versions.c.id == record_id
            )
        )
        return (result.scalar() or 0) + 1

    async def snapshot(
        self,
        conn: AsyncConnection,
        row: dict[str, Any],
        operation: str,
        context: CRUDContext,
    ) -> int:
        """Record the current state of ``row`` as a new version.

        Must run on the connection of the mutating transaction.

        Args:
            conn: Transaction connection.
            row: The stored record; only non-localized fields are read from it.
            operation: ``create``, ``update`` or ``delete``.
            context: Caller context; the user id is recorded.

        Returns:
            The new version number.
        """
        record_id = row["id"]
        number = await self.next_version_number(conn, record_id)
        user_id = get_attr(context.current_user, "id")

        values: dict[str, Any] = {
            "version_id": new_id(),
            "id": record_id,
            "version_number": number,
            "version_operation": operation,
            "version_user_id": str(user_id) if user_id is not None else None,
            "version_created_at": datetime.now(timezone.utc),
        }
        for field_name in self._state.non_localized_fields:
            values[field_name] = row.get(field_name)
        await conn.execute(insert(self._versions).values(values))

        if self._i18n_versions is not None:
            i18n = self._topology.i18n
            result = await conn.execute(select(i18n).where(i18n.c.parent_id == record_id))
            copies = [
                {
                    "id": new_id(),
                    "parent_id": record_id,
                    "version_number": number,
                    "locale": i18n_row["locale"],
                    **{f: i18n_row[f] for f in self._state.localized_fields},
                }
                for i18n_row in result.mappings()
            ]
            if copies:
                await conn.execute(insert(self._i18n_versions), copies)

        logger.debug(f"Snapshot {self._state.name}:{record_id} v{number} ({operation})")
        await self.prune(conn, record_id)
        return number

    async def prune(self, conn: AsyncConnection, record_id: str) -> int:
        """Delete versions beyond ``max_versions``, oldest first.

        Returns:
            Number of versions removed.
        """
        if not self.max_versions:
            return 0
        v = self._versions
        result = await conn.execute(
            select(v.c.version_number)
            .where(v.c.id == record_id)
            .order_by(v.c.version_number.desc())
            .offset(self.max_versions)
        )
        stale = list(result.scalars())
        if not stale:
            return 0

        await conn.execute(
            delete(v).where(v.c.id == record_id, v.c.version_number.in_(stale))
        )
        if self._i18n_versions is not None:
            iv = self._i18n_versions
            await conn.execute(
                delete(iv).where(iv.c.parent_id == record_id, iv.c.version_number.in_(stale))
            )
        logger.debug(f"Pruned {len(stale)} versions of {self._state.name}:{record_id}")
        return len(stale)

    async def find_versions(
        self,
        conn: AsyncConnection,
        record_id: str,
        context: CRUDContext,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict[str, Any]]:
        """Versions of ``record_id`` in ascending version order.

        Localized fields are merged for ``context.locale`` with the same
        fallback rules as regular reads.
        """
        v = self._versions
        columns = [v.c[name] for name in VERSION_COLUMNS]
        columns += [v.c[name] for name in self._state.non_localized_fields]
        from_clause = v
        use_fallback = False

        if self._i18n_versions is not None:
            current = self._i18n_versions.alias("i18n_version_current")
            from_clause = from_clause.outerjoin(
                current,
                and_(
                    current.c.parent_id == v.c.id,
                    current.c.version_number == v.c.version_number,
                    current.c.locale == context.locale,
                ),
            )
            columns += [
                current.c[f].label(f"{I18N_PREFIX}{f}") for f in self._state.localized_fields
            ]
            if context.use_fallback:
                use_fallback = True
                fallback = self._i18n_versions.alias("i18n_version_fallback")
                from_clause = from_clause.outerjoin(
                    fallback,
                    and_(
                        fallback.c.parent_id == v.c.id,
                        fallback.c.version_number == v.c.version_number,
                        fallback.c.locale == context.default_locale,
                    ),
                )
                columns += [
                    fallback.c[f].label(f"{I18N_FALLBACK_PREFIX}{f}")
                    for f in self._state.localized_fields
                ]

        stmt = (
            select(*columns)
            .select_from(from_clause)
            .where(v.c.id == record_id)
            .order_by(v.c.version_number.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)

        result = await conn.execute(stmt)
        rows = [dict(r) for r in result.mappings()]
        return merge_localized_rows(rows, self._state.localized_fields, use_fallback)

    async def load_version(
        self,
        conn: AsyncConnection,
        record_id: str,
        version: int | None = None,
        version_id: str | None = None,
    ) -> tuple[dict[str, Any], list[dict[str, Any]]] | None:
        """Fetch one version row and its i18n snapshot rows.

        Returns:
            ``(version_row, i18n_rows)`` or ``None`` when absent.
        """
        v = self._versions
        selector = (
            v.c.version_id == version_id if version_id is not None else v.c.version_number == version
        )
        result = await conn.execute(select(v).where(v.c.id == record_id, selector))
        version_row = result.mappings().first()
        if version_row is None:
            return None

        i18n_rows: list[dict[str, Any]] = []
        if self._i18n_versions is not None:
            iv = self._i18n_versions
            result = await conn.execute(
                select(iv).where(
                    iv.c.parent_id == record_id,
                    iv.c.version_number == version_row["version_number"],
                )
            )
            i18n_rows = [dict(r) for r in result.mappings()]
        return dict(version_row), i18n_rows
