"""Global CRUD: one lazily created record per entity.

Usage:
    settings = registry.register_global(site_settings_state)

    current = await settings.get()  # created on first access
    await settings.update({"site_name": "City Portal"}, context=CRUDContext(locale="sk"))
    history = await settings.find_versions()
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncConnection

from record_engine.context import CRUDContext, run_hooks
from record_engine.crud.base import BaseCRUD
from record_engine.crud.collection import check_version_selector
from record_engine.errors import InternalError, NotFoundError, OperationNotImplementedError
from record_engine.query.localization import split_localized
from record_engine.query.select import included_fields
from record_engine.relations.mutations import separate_nested
from record_engine.transaction import with_transaction

logger = logging.getLogger(__name__)


class GlobalCRUD(BaseCRUD):
    """Read, update and version a singleton record."""

    async def _current(
        self, conn: AsyncConnection, context: CRUDContext, names: list[str] | None = None
    ) -> dict[str, Any] | None:
        rows = await self._select_rows(conn, context, names=names, limit=1)
        return rows[0] if rows else None

    async def _ensure(self, context: CRUDContext) -> None:
        """Insert the row on first access; concurrent callers re-check inside the transaction."""

        async def write(conn: AsyncConnection) -> None:
            if await self._current(conn, context) is not None:
                return
            record_id = await self._insert_main(conn, {})
            row = await self._load(conn, record_id, context)
            if row is None:
                raise InternalError(f"Global '{self.name}' could not be created")
            await self._snapshot(conn, row, "create", context)
            await self._emit("create", context, record_id, row)
            logger.info(f"Created global '{self.name}'")

        await with_transaction(self.database, write, context)

    async def _require_readable(
        self, conn: AsyncConnection, context: CRUDContext, record_id: Any
    ) -> None:
        """Check the full stored row against a read rule that returned a filter."""
        await self.access.require("read", context, row=await self._load(conn, record_id, context))

    async def get(
        self,
        columns: dict[str, bool] | None = None,
        with_: dict[str, Any] | None = None,
        locale: str | None = None,
        locale_fallback: bool | None = None,
        context: CRUDContext | None = None,
    ) -> dict[str, Any]:
        """Return the global record, creating it with defaults when absent.

        Raises:
            ForbiddenError: The read rule denies, or returns a filter the
                stored record does not match.
            InternalError: The row cannot be read back after creation.
        """
        ctx = self._context(context, locale=locale, locale_fallback=locale_fallback)
        access_where = await self.access.require("read", ctx)
        await run_hooks(self.state.hooks.before_read, self._hook_context("read", ctx, input={}))

        names = included_fields(self.state, columns)
        extra = [c for c in dict.fromkeys(self._relation_columns(with_)) if c not in names]

        async with self.database.connection(ctx) as conn:
            row = await self._current(conn, ctx, names + extra)
        if row is None:
            await self._ensure(ctx)
            async with self.database.connection(ctx) as conn:
                row = await self._current(conn, ctx, names + extra)
            if row is None:
                raise InternalError(f"Global '{self.name}' missing after creation")
        if access_where is not None:
            async with self.database.connection(ctx) as conn:
                await self._require_readable(conn, ctx, row["id"])

        return (await self._present([row], ctx, with_, hidden=extra))[0]

    async def update(
        self,
        data: dict[str, Any],
        with_: dict[str, Any] | None = None,
        context: CRUDContext | None = None,
    ) -> dict[str, Any]:
        """Update the global record, inserting it first when absent.

        Hooks run as ``before_update``, ``before_change``, then after the
        write ``after_update``, ``after_change``.

        Raises:
            ForbiddenError: Update rule or a field write rule denies.
            BadRequestError: Unknown fields or malformed nested input.
        """
        ctx = self._context(context)
        data = dict(data)
        hooks = self.state.hooks

        async def write(conn: AsyncConnection) -> dict[str, Any]:
            existing = await self._current(conn, ctx)
            await self.access.require("update", ctx, row=existing, input=data)
            await run_hooks(
                hooks.before_validate,
                self._hook_context("update", ctx, db=conn, input=data, original=existing),
            )

            values, nested = separate_nested(self.state, data)
            self._validate_keys(values)
            await self.access.validate_writeable_fields(values, ctx, "update", row=existing)
            hook_context = self._hook_context(
                "update", ctx, db=conn, input=values, original=existing
            )
            await run_hooks(hooks.before_update, hook_context)
            await run_hooks(hooks.before_change, hook_context)

            await self.mutator.apply_singular(nested, values, ctx)
            plain, translated = split_localized(values, self.state.localized)
            if existing is None:
                record_id = await self._insert_main(conn, plain)
                operation = "create"
            else:
                record_id = existing["id"]
                await self._update_main(conn, [record_id], plain)
                operation = "update"
            await self._upsert_i18n(conn, record_id, ctx.locale, translated)

            row = await self._load(conn, record_id, ctx)
            if nested:
                await self.mutator.apply_plural(row, nested, ctx)
            await self._snapshot(conn, row, operation, ctx)

            after = self._hook_context(
                "update", ctx, db=conn, data=row, input=values, original=existing
            )
            await run_hooks(hooks.after_update, after)
            await run_hooks(hooks.after_change, after)
            await self._emit("update", ctx, record_id, row)
            logger.debug(f"Updated global '{self.name}'")
            return row

        row = await with_transaction(self.database, write, ctx)
        return (await self._present([row], ctx, with_))[0]

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def _require_versioning(self) -> None:
        if self.versioning is None:
            raise OperationNotImplementedError(
                f"Versioning is not enabled for global '{self.name}'", resource=self.name
            )

    async def find_versions(
        self,
        limit: int | None = None,
        offset: int | None = None,
        context: CRUDContext | None = None,
    ) -> list[dict[str, Any]]:
        """Versions of the global record, oldest first; empty before the first write."""
        self._require_versioning()
        ctx = self._context(context)
        access_where = await self.access.require("read", ctx)
        async with self.database.connection(ctx) as conn:
            current = await self._current(conn, ctx)
            if current is None:
                return []
            if access_where is not None:
                await self.access.require("read", ctx, row=current)
            return await self.versioning.find_versions(
                conn, current["id"], ctx, limit=limit, offset=offset
            )

    async def revert_to_version(
        self,
        version: int | None = None,
        version_id: str | None = None,
        with_: dict[str, Any] | None = None,
        context: CRUDContext | None = None,
    ) -> dict[str, Any]:
        """Restore the global record to a stored version.

        Raises:
            OperationNotImplementedError: The global is not versioned.
            BadRequestError: Neither or a malformed selector is given.
            NotFoundError: The record or the version does not exist.
        """
        self._require_versioning()
        check_version_selector(version, version_id)
        ctx = self._context(context)

        async def write(conn: AsyncConnection) -> dict[str, Any]:
            existing = await self._current(conn, ctx)
            if existing is None:
                raise NotFoundError(f"Global {self.name}")
            record_id = existing["id"]
            await self.access.require("update", ctx, row=existing)

            loaded = await self.versioning.load_version(conn, record_id, version, version_id)
            if loaded is None:
                raise NotFoundError(f"{self.name} version", version_id or version)
            version_row, i18n_rows = loaded
            await run_hooks(
                self.state.hooks.before_change,
                self._hook_context("update", ctx, db=conn, input=version_row, original=existing),
            )

            await self._apply_version(conn, record_id, version_row, i18n_rows, ctx)
            row = await self._load(conn, record_id, ctx)
            await self._snapshot(conn, row, "update", ctx)
            await run_hooks(
                self.state.hooks.after_change,
                self._hook_context("update", ctx, db=conn, data=row, original=existing),
            )
            await self._emit("update", ctx, record_id, row)
            return row

        row = await with_transaction(self.database, write, ctx)
        return (await self._present([row], ctx, with_))[0]
