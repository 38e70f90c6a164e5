"""Shared read/write plumbing for collection and global CRUD objects."""

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, asc, delete, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql import ColumnElement

from record_engine.access import AccessControl
from record_engine.config.models import LocaleSettings
from record_engine.context import CRUDContext, HookContext, normalize_context, run_hooks
from record_engine.errors import BadRequestError
from record_engine.query.localization import attach_title, merge_localized_rows
from record_engine.query.select import (
    build_scope,
    included_fields,
    order_by_clauses,
    select_columns,
)
from record_engine.query.where import QueryScope
from record_engine.realtime import RealtimeChange, publish_safely
from record_engine.relations.mutations import RelationMutator
from record_engine.schema.models import (
    ManyToManyRelation,
    OneRelation,
    PolymorphicRelation,
    SchemaState,
)
from record_engine.schema.topology import new_id
from record_engine.transaction import on_after_commit
from record_engine.versioning import VersioningEngine

logger = logging.getLogger(__name__)

UPSERT_DIALECTS = {"postgresql": postgresql_insert, "sqlite": sqlite_insert}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseCRUD:
    """State, tables and helpers shared by ``CollectionCRUD`` and ``GlobalCRUD``.

    Args:
        registry: The owning ``CollectionRegistry``.
        state: The entity description; its topology must already be registered.
    """

    def __init__(self, registry: Any, state: SchemaState) -> None:
        self.registry = registry
        self.state = state
        self.topology = registry.topology(state.name)
        self.access = AccessControl(state)
        self.versioning = VersioningEngine(self.topology) if state.versioned else None
        self.mutator = RelationMutator(registry, state)

    @property
    def name(self) -> str:
        return self.state.name

    @property
    def database(self) -> Any:
        return self.registry.database

    @property
    def settings(self) -> LocaleSettings:
        return self.registry.settings

    def _context(self, context: CRUDContext | None, **overrides: Any) -> CRUDContext:
        self.registry.ensure_valid()
        return normalize_context(context, self.settings, **overrides)

    def _hook_context(self, operation: str, context: CRUDContext, **values: Any) -> HookContext:
        return HookContext.from_context(operation, context, **values)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _filter_conditions(
        self,
        scope: QueryScope,
        where: dict[str, Any] | None,
        search: str | None = None,
        include_deleted: bool = False,
    ) -> list[ColumnElement[bool]]:
        conditions: list[ColumnElement[bool]] = []
        compiled = self.registry.where.compile(where, scope)
        if compiled is not None:
            conditions.append(compiled)
        if search:
            title = self.registry.where.field_expression(scope, "_title")
            conditions.append(title.ilike(f"%{search}%"))
        if self.state.soft_delete and not include_deleted:
            conditions.append(scope.table.c.deleted_at.is_(None))
        return conditions

    def _default_order(self, scope: QueryScope) -> list[ColumnElement[Any]]:
        if self.state.options.timestamps:
            return [asc(scope.table.c.created_at), asc(scope.table.c.id)]
        return [asc(scope.table.c.id)]

    def _relation_columns(self, with_: dict[str, Any] | None) -> list[str]:
        """Local columns the resolver reads for the requested relations."""
        if not with_:
            return []
        columns: list[str] = []
        for name in with_:
            relation = self.state.relations.get(name)
            if isinstance(relation, OneRelation):
                columns += relation.fields
            elif isinstance(relation, PolymorphicRelation):
                columns += [relation.type_field, relation.id_field]
            elif isinstance(relation, ManyToManyRelation):
                columns.append(relation.source_key)
            elif relation is not None:
                columns += self.registry.many_keys(self.state.name, name)[1]
        return columns

    async def _select_rows(
        self,
        conn: AsyncConnection,
        context: CRUDContext,
        where: dict[str, Any] | None = None,
        names: list[str] | None = None,
        order_by: Any = None,
        limit: int | None = None,
        offset: int | None = None,
        search: str | None = None,
        include_deleted: bool = False,
    ) -> list[dict[str, Any]]:
        """Run the main select with locale joins and merge the i18n columns."""
        names = names if names is not None else included_fields(self.state, None)
        scope, from_clause = build_scope(self.topology, context)
        query_names = list(names)
        if "_title" in names and self.state.title and self.state.title not in names:
            query_names.append(self.state.title)

        stmt = select(*select_columns(scope, query_names)).select_from(from_clause)
        conditions = self._filter_conditions(scope, where, search, include_deleted)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        order = order_by_clauses(self.registry.where, scope, order_by)
        stmt = stmt.order_by(*(order or self._default_order(scope)))
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)

        result = await conn.execute(stmt)
        rows = [dict(r) for r in result.mappings()]
        merge_localized_rows(rows, self.state.localized_fields, scope.i18n_fallback is not None)
        if "_title" in names:
            for row in rows:
                attach_title(row, self.state)
                if self.state.title and self.state.title not in names:
                    row.pop(self.state.title, None)
        logger.debug(f"Selected {len(rows)} rows from {self.state.name}")
        return rows

    async def _count_rows(
        self,
        conn: AsyncConnection,
        context: CRUDContext,
        where: dict[str, Any] | None = None,
        search: str | None = None,
        include_deleted: bool = False,
    ) -> int:
        scope, from_clause = build_scope(self.topology, context)
        stmt = select(func.count()).select_from(from_clause)
        conditions = self._filter_conditions(scope, where, search, include_deleted)
        if conditions:
            stmt = stmt.where(and_(*conditions))
        result = await conn.execute(stmt)
        return int(result.scalar() or 0)

    async def _load(
        self,
        conn: AsyncConnection,
        record_id: Any,
        context: CRUDContext,
        include_deleted: bool = True,
    ) -> dict[str, Any] | None:
        """Full stored record in the context locale, bypassing access rules."""
        rows = await self._select_rows(
            conn, context, where={"id": record_id}, include_deleted=include_deleted
        )
        return rows[0] if rows else None

    async def _present(
        self,
        rows: list[dict[str, Any]],
        context: CRUDContext,
        with_: dict[str, Any] | None = None,
        depth: int = 0,
        hidden: list[str] | None = None,
        finalize: bool = True,
    ) -> list[dict[str, Any]]:
        """Resolve relations, strip unreadable fields and run ``after_read``.

        With ``finalize=False`` the field filter and hooks are left to the
        caller, which must call ``_finalize`` once it no longer needs the
        raw column values.
        """
        if with_:
            await self.registry.resolver.resolve(self.state, rows, with_, context, depth)
        for row in rows:
            for key in hidden or ():
                row.pop(key, None)
        if finalize:
            await self._finalize(rows, context)
        return rows

    async def _finalize(self, rows: list[dict[str, Any]], context: CRUDContext) -> None:
        for row in rows:
            await self.access.filter_readable_fields(row, context)
            await run_hooks(
                self.state.hooks.after_read, self._hook_context("read", context, data=row)
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _validate_keys(self, values: dict[str, Any], creating: bool = False) -> None:
        allowed = set(self.state.fields)
        if creating:
            allowed.add("id")
        unknown = set(values) - allowed
        if unknown:
            raise BadRequestError(
                f"Unknown fields for '{self.state.name}': {sorted(unknown)}",
                resource=self.state.name,
            )

    async def _insert_main(self, conn: AsyncConnection, values: dict[str, Any]) -> str:
        record_id = values.get("id") or new_id()
        record = {**values, "id": record_id}
        if self.state.options.timestamps:
            now = utcnow()
            record.setdefault("created_at", now)
            record.setdefault("updated_at", now)
        await conn.execute(insert(self.topology.main).values(record))
        return record_id

    async def _update_main(
        self, conn: AsyncConnection, record_ids: list[Any], values: dict[str, Any]
    ) -> None:
        values = dict(values)
        if self.state.options.timestamps:
            values["updated_at"] = utcnow()
        if not values:
            return
        main = self.topology.main
        await conn.execute(update(main).where(main.c.id.in_(record_ids)).values(values))

    async def _upsert_i18n(
        self, conn: AsyncConnection, record_id: Any, locale: str, values: dict[str, Any]
    ) -> None:
        """Insert or update the ``(record_id, locale)`` translation row."""
        if not values or self.topology.i18n is None:
            return
        i18n = self.topology.i18n
        dialect_insert = UPSERT_DIALECTS.get(conn.dialect.name)

        if dialect_insert is not None:
            stmt = dialect_insert(i18n).values(
                id=new_id(), parent_id=record_id, locale=locale, **values
            )
            stmt = stmt.on_conflict_do_update(index_elements=["parent_id", "locale"], set_=values)
            await conn.execute(stmt)
            return

        result = await conn.execute(
            update(i18n)
            .where(i18n.c.parent_id == record_id, i18n.c.locale == locale)
            .values(values)
        )
        if result.rowcount == 0:
            await conn.execute(
                insert(i18n).values(id=new_id(), parent_id=record_id, locale=locale, **values)
            )

    async def _delete_i18n(
        self, conn: AsyncConnection, record_ids: list[Any], locale: str | None = None
    ) -> None:
        if self.topology.i18n is None:
            return
        i18n = self.topology.i18n
        stmt = delete(i18n).where(i18n.c.parent_id.in_(record_ids))
        if locale is not None:
            stmt = stmt.where(i18n.c.locale == locale)
        await conn.execute(stmt)

    async def _write_values(
        self,
        conn: AsyncConnection,
        record_ids: list[Any],
        plain: dict[str, Any],
        translated: dict[str, Any],
        locale: str,
    ) -> None:
        await self._update_main(conn, record_ids, plain)
        for record_id in record_ids:
            await self._upsert_i18n(conn, record_id, locale, translated)

    async def _apply_version(
        self,
        conn: AsyncConnection,
        record_id: Any,
        version_row: dict[str, Any],
        i18n_rows: list[dict[str, Any]],
        context: CRUDContext,
    ) -> None:
        """Write a snapshot back onto the live record for ``context.locale``."""
        plain = {f: version_row.get(f) for f in self.state.non_localized_fields}
        await self._update_main(conn, [record_id], plain)
        if self.topology.i18n is not None:
            await self._delete_i18n(conn, [record_id], context.locale)
            for i18n_row in i18n_rows:
                if i18n_row["locale"] == context.locale:
                    values = {f: i18n_row[f] for f in self.state.localized_fields}
                    await self._upsert_i18n(conn, record_id, context.locale, values)

    async def _snapshot(
        self, conn: AsyncConnection, row: dict[str, Any], operation: str, context: CRUDContext
    ) -> None:
        if self.versioning is not None:
            await self.versioning.snapshot(conn, row, operation, context)

    async def _emit(
        self,
        operation: str,
        context: CRUDContext,
        record_id: Any = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """Queue a realtime change for after the commit.

        The payload carries only the fields the mutating caller may read.
        """
        notifier = self.registry.notifier
        if notifier is None:
            return
        if payload:
            payload = await self.access.filter_readable_fields(dict(payload), context)
        change = RealtimeChange(
            resource_type=self.state.kind,
            resource=self.state.name,
            operation=operation,
            record_id=str(record_id) if record_id is not None else None,
            locale=context.locale,
            payload=payload or {},
        )

        async def publish() -> None:
            await publish_safely(notifier, change)

        await on_after_commit(publish)
