"""Collection CRUD: many records per entity.

Usage:
    posts = registry.register_collection(posts_state)

    page = await posts.find(
        where={"status": "published"},
        with_={"author": True, "comments": {"_count": True}},
        order_by="-created_at",
        limit=10,
        context=CRUDContext(locale="sk"),
    )
    post = await posts.create({"title": "Hello", "author": user_id})
    await posts.update_by_id(post["id"], {"status": "published"})
    await posts.delete_by_id(post["id"])
"""

import logging
from typing import Any

from sqlalchemy import delete, update

from record_engine.access import merge_where
from record_engine.context import CRUDContext, run_hooks
from record_engine.crud.base import BaseCRUD, utcnow
from record_engine.crud.models import DeleteResult, PaginatedResult
from record_engine.errors import BadRequestError, NotFoundError, OperationNotImplementedError
from record_engine.query.localization import split_localized
from record_engine.query.select import included_fields
from record_engine.relations.mutations import separate_nested
from record_engine.transaction import with_transaction

logger = logging.getLogger(__name__)


class CollectionCRUD(BaseCRUD):
    """Find, count, create, update, delete, restore and version one collection."""

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _read(
        self,
        context: CRUDContext,
        where: dict[str, Any] | None,
        columns: dict[str, bool] | None,
        with_: dict[str, Any] | None,
        order_by: Any,
        limit: int | None,
        offset: int | None,
        search: str | None,
        depth: int = 0,
        keep_columns: list[str] | None = None,
        with_total: bool = False,
        finalize: bool = True,
    ) -> tuple[list[dict[str, Any]], int | None]:
        access_where = await self.access.require("read", context)
        query = {
            "where": where,
            "order_by": order_by,
            "limit": limit,
            "offset": offset,
            "search": search,
        }
        await run_hooks(
            self.state.hooks.before_read, self._hook_context("read", context, input=query)
        )

        effective_where = merge_where(query["where"], access_where)
        names = included_fields(self.state, columns)
        keep = list(keep_columns or [])
        extra = [
            c for c in dict.fromkeys([*self._relation_columns(with_), *keep]) if c not in names
        ]

        async with self.database.connection(context) as conn:
            rows = await self._select_rows(
                conn,
                context,
                where=effective_where,
                names=names + extra,
                order_by=query["order_by"],
                limit=query["limit"],
                offset=query["offset"],
                search=query["search"],
                include_deleted=context.include_deleted,
            )
            total = None
            if with_total:
                total = await self._count_rows(
                    conn,
                    context,
                    where=effective_where,
                    search=query["search"],
                    include_deleted=context.include_deleted,
                )

        hidden = [c for c in extra if c not in keep]
        await self._present(rows, context, with_, depth, hidden, finalize=finalize)
        return rows, total

    async def find(
        self,
        where: dict[str, Any] | None = None,
        columns: dict[str, bool] | None = None,
        with_: dict[str, Any] | None = None,
        order_by: Any = None,
        limit: int | None = None,
        offset: int | None = None,
        search: str | None = None,
        include_deleted: bool | None = None,
        locale: str | None = None,
        locale_fallback: bool | None = None,
        context: CRUDContext | None = None,
    ) -> PaginatedResult:
        """Find records matching ``where``.

        Args:
            where: Where tree (fields, relations, AND/OR/NOT, RAW).
            columns: ``{name: True}`` to select only those names, or
                ``{name: False}`` to omit them.
            with_: Relations to load, keyed by relation name.
            order_by: ``"field"``, ``"-field"``, ``{"field": "desc"}`` or a list.
            limit: Page size; defaults to every matching record.
            offset: Records to skip.
            search: Case-insensitive substring match on the title.
            include_deleted: Include soft-deleted records.
            locale: Overrides ``context.locale``.
            locale_fallback: Overrides ``context.locale_fallback``.
            context: Caller context; ``None`` runs in system mode.

        Returns:
            ``PaginatedResult`` with ``docs`` and paging metadata.

        Raises:
            ForbiddenError: When the read rule denies.
            BadRequestError: On malformed where, columns or with options.
        """
        ctx = self._context(
            context,
            locale=locale,
            locale_fallback=locale_fallback,
            include_deleted=include_deleted,
        )
        logger.debug(f"find {self.name} where={where!r}")
        docs, total = await self._read(
            ctx, where, columns, with_, order_by, limit, offset, search, with_total=True
        )
        return PaginatedResult.build(docs, total or 0, limit, offset)

    async def find_rows(
        self,
        where: dict[str, Any] | None = None,
        columns: dict[str, bool] | None = None,
        with_: dict[str, Any] | None = None,
        order_by: Any = None,
        limit: int | None = None,
        offset: int | None = None,
        search: str | None = None,
        include_deleted: bool | None = None,
        context: CRUDContext | None = None,
        depth: int = 0,
        keep_columns: list[str] | None = None,
        finalize: bool = True,
    ) -> list[dict[str, Any]]:
        """Like ``find`` but returns the bare list without counting.

        ``keep_columns`` are selected even when ``columns`` excludes them;
        the relation resolver uses them to match rows to parents. With
        ``finalize=False`` the rows come back before field filtering and
        ``after_read`` hooks; see ``BaseCRUD._present``.
        """
        ctx = self._context(context, include_deleted=include_deleted)
        rows, _ = await self._read(
            ctx,
            where,
            columns,
            with_,
            order_by,
            limit,
            offset,
            search,
            depth,
            keep_columns,
            finalize=finalize,
        )
        return rows

    async def find_one(
        self,
        where: dict[str, Any] | None = None,
        columns: dict[str, bool] | None = None,
        with_: dict[str, Any] | None = None,
        order_by: Any = None,
        include_deleted: bool | None = None,
        locale: str | None = None,
        locale_fallback: bool | None = None,
        context: CRUDContext | None = None,
    ) -> dict[str, Any] | None:
        """First record matching ``where`` or ``None``."""
        ctx = self._context(
            context,
            locale=locale,
            locale_fallback=locale_fallback,
            include_deleted=include_deleted,
        )
        rows, _ = await self._read(ctx, where, columns, with_, order_by, 1, None, None)
        return rows[0] if rows else None

    async def count(
        self,
        where: dict[str, Any] | None = None,
        include_deleted: bool | None = None,
        search: str | None = None,
        context: CRUDContext | None = None,
    ) -> int:
        """Number of records matching ``where``."""
        ctx = self._context(context, include_deleted=include_deleted)
        access_where = await self.access.require("read", ctx)
        async with self.database.connection(ctx) as conn:
            return await self._count_rows(
                conn,
                ctx,
                where=merge_where(where, access_where),
                search=search,
                include_deleted=ctx.include_deleted,
            )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        data: dict[str, Any],
        with_: dict[str, Any] | None = None,
        context: CRUDContext | None = None,
    ) -> dict[str, Any]:
        """Insert one record with its translation and nested relations.

        Localized values are stored for ``context.locale``.

        Raises:
            ForbiddenError: Create rule or a field write rule denies.
            BadRequestError: Unknown fields or malformed nested input.
            ConflictError: A unique constraint is violated.
        """
        ctx = self._context(context)
        data = dict(data)
        await self.access.require("create", ctx, input=data)
        await run_hooks(
            self.state.hooks.before_validate, self._hook_context("create", ctx, input=data)
        )

        values, nested = separate_nested(self.state, data)
        self._validate_keys(values, creating=True)
        await self.access.validate_writeable_fields(values, ctx, "create")
        await run_hooks(
            self.state.hooks.before_change, self._hook_context("create", ctx, input=values)
        )

        async def write(conn: Any) -> dict[str, Any]:
            await self.mutator.apply_singular(nested, values, ctx)
            plain, translated = split_localized(values, self.state.localized)
            record_id = await self._insert_main(conn, plain)
            await self._upsert_i18n(conn, record_id, ctx.locale, translated)

            row = await self._load(conn, record_id, ctx)
            if nested:
                await self.mutator.apply_plural(row, nested, ctx)
            await self._snapshot(conn, row, "create", ctx)
            await run_hooks(
                self.state.hooks.after_change,
                self._hook_context("create", ctx, db=conn, data=row, input=values),
            )
            await self._emit("create", ctx, record_id, row)
            logger.debug(f"Created {self.name}:{record_id}")
            return row

        row = await with_transaction(self.database, write, ctx)
        return (await self._present([row], ctx, with_))[0]

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def _execute_update(
        self,
        ctx: CRUDContext,
        data: dict[str, Any],
        record_id: Any = None,
        where: dict[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        """Shared core of ``update_by_id`` and ``update``."""
        batch = record_id is None
        data = dict(data)

        async def write(conn: Any) -> list[dict[str, Any]]:
            if batch:
                access_where = await self.access.require("update", ctx)
                originals = await self._select_rows(
                    conn, ctx, where=merge_where(where, access_where)
                )
            else:
                original = await self._load(conn, record_id, ctx, include_deleted=False)
                if original is None:
                    raise NotFoundError(self.name, record_id)
                originals = [original]
            if not originals:
                return []

            for original in originals:
                await self.access.require("update", ctx, row=original, input=data)
                await run_hooks(
                    self.state.hooks.before_validate,
                    self._hook_context("update", ctx, db=conn, input=data, original=original),
                )

            values, nested = separate_nested(self.state, data)
            self._validate_keys(values)
            for original in originals:
                await self.access.validate_writeable_fields(values, ctx, "update", row=original)
                await run_hooks(
                    self.state.hooks.before_change,
                    self._hook_context("update", ctx, db=conn, input=values, original=original),
                )

            await self.mutator.apply_singular(nested, values, ctx)
            plain, translated = split_localized(values, self.state.localized)
            record_ids = [o["id"] for o in originals]
            await self._write_values(conn, record_ids, plain, translated, ctx.locale)

            updated = []
            for original in originals:
                if nested:
                    await self.mutator.apply_plural(original, nested, ctx)
                row = await self._load(conn, original["id"], ctx)
                await self._snapshot(conn, row, "update", ctx)
                await run_hooks(
                    self.state.hooks.after_change,
                    self._hook_context(
                        "update", ctx, db=conn, data=row, input=values, original=original
                    ),
                )
                updated.append(row)

            if batch:
                await self._emit("bulk_update", ctx, payload={"count": len(updated)})
            else:
                await self._emit("update", ctx, record_id, updated[0])
            logger.debug(f"Updated {len(updated)} {self.name} records")
            return updated

        return await with_transaction(self.database, write, ctx)

    async def update_by_id(
        self,
        id: Any,
        data: dict[str, Any],
        with_: dict[str, Any] | None = None,
        context: CRUDContext | None = None,
    ) -> dict[str, Any]:
        """Update one record; localized values go to ``context.locale``.

        Raises:
            NotFoundError: No live record has this id.
            ForbiddenError: Update rule or a field write rule denies.
        """
        ctx = self._context(context)
        rows = await self._execute_update(ctx, data, record_id=id)
        return (await self._present(rows, ctx, with_))[0]

    async def update(
        self,
        where: dict[str, Any] | None,
        data: dict[str, Any],
        with_: dict[str, Any] | None = None,
        context: CRUDContext | None = None,
    ) -> list[dict[str, Any]]:
        """Apply ``data`` to every record matching ``where``."""
        ctx = self._context(context)
        rows = await self._execute_update(ctx, data, where=where)
        return await self._present(rows, ctx, with_)

    # ------------------------------------------------------------------
    # Delete / restore
    # ------------------------------------------------------------------

    async def _remove(self, conn: Any, record_ids: list[Any]) -> None:
        main = self.topology.main
        if self.state.soft_delete:
            await conn.execute(
                update(main).where(main.c.id.in_(record_ids)).values(deleted_at=utcnow())
            )
            return
        await self._delete_i18n(conn, record_ids)
        await conn.execute(delete(main).where(main.c.id.in_(record_ids)))

    async def delete_by_id(self, id: Any, context: CRUDContext | None = None) -> DeleteResult:
        """Delete one record, softly when the collection has soft delete.

        A ``delete`` version is recorded before the row goes away.

        Raises:
            NotFoundError: No live record has this id.
            ForbiddenError: The delete rule denies.
        """
        ctx = self._context(context)

        async def remove(conn: Any) -> dict[str, Any]:
            existing = await self._load(conn, id, ctx, include_deleted=False)
            if existing is None:
                raise NotFoundError(self.name, id)
            await self.access.require("delete", ctx, row=existing)
            await run_hooks(
                self.state.hooks.before_delete,
                self._hook_context("delete", ctx, db=conn, data=existing, original=existing),
            )
            await self._snapshot(conn, existing, "delete", ctx)
            await self._remove(conn, [id])
            await run_hooks(
                self.state.hooks.after_delete,
                self._hook_context("delete", ctx, db=conn, data=existing, original=existing),
            )
            await self._emit("delete", ctx, id)
            logger.debug(f"Deleted {self.name}:{id}")
            return existing

        existing = await with_transaction(self.database, remove, ctx)
        await self.access.filter_readable_fields(existing, ctx)
        return DeleteResult(success=True, count=1, data=existing)

    async def delete(
        self, where: dict[str, Any] | None, context: CRUDContext | None = None
    ) -> DeleteResult:
        """Delete every record matching ``where``."""
        ctx = self._context(context)
        access_where = await self.access.require("delete", ctx)

        async def remove(conn: Any) -> int:
            records = await self._select_rows(conn, ctx, where=merge_where(where, access_where))
            if not records:
                return 0
            for record in records:
                await self.access.require("delete", ctx, row=record)
                await run_hooks(
                    self.state.hooks.before_delete,
                    self._hook_context("delete", ctx, db=conn, data=record, original=record),
                )
            for record in records:
                await self._snapshot(conn, record, "delete", ctx)
            await self._remove(conn, [r["id"] for r in records])
            for record in records:
                await run_hooks(
                    self.state.hooks.after_delete,
                    self._hook_context("delete", ctx, db=conn, data=record, original=record),
                )
            await self._emit("bulk_delete", ctx, payload={"count": len(records)})
            return len(records)

        count = await with_transaction(self.database, remove, ctx)
        return DeleteResult(success=True, count=count)

    async def restore_by_id(
        self,
        id: Any,
        with_: dict[str, Any] | None = None,
        context: CRUDContext | None = None,
    ) -> dict[str, Any]:
        """Clear ``deleted_at``; a record that is not deleted is returned as is.

        Raises:
            OperationNotImplementedError: The collection has no soft delete.
            NotFoundError: No record has this id.
        """
        if not self.state.soft_delete:
            raise OperationNotImplementedError(
                f"Soft delete is not enabled for '{self.name}'", resource=self.name
            )
        ctx = self._context(context)

        async def write(conn: Any) -> dict[str, Any]:
            existing = await self._load(conn, id, ctx, include_deleted=True)
            if existing is None:
                raise NotFoundError(self.name, id)
            await self.access.require("update", ctx, row=existing, input={"deleted_at": None})
            if existing["deleted_at"] is None:
                return existing

            main = self.topology.main
            values: dict[str, Any] = {"deleted_at": None}
            if self.state.options.timestamps:
                values["updated_at"] = utcnow()
            await conn.execute(update(main).where(main.c.id == id).values(values))
            row = await self._load(conn, id, ctx)
            await self._snapshot(conn, row, "update", ctx)
            await run_hooks(
                self.state.hooks.after_change,
                self._hook_context("update", ctx, db=conn, data=row, original=existing),
            )
            await self._emit("update", ctx, id, row)
            logger.debug(f"Restored {self.name}:{id}")
            return row

        row = await with_transaction(self.database, write, ctx)
        return (await self._present([row], ctx, with_))[0]

    # ------------------------------------------------------------------
    # Versions
    # ------------------------------------------------------------------

    def _require_versioning(self) -> None:
        if self.versioning is None:
            raise OperationNotImplementedError(
                f"Versioning is not enabled for '{self.name}'", resource=self.name
            )

    async def find_versions(
        self,
        id: Any,
        limit: int | None = None,
        offset: int | None = None,
        context: CRUDContext | None = None,
    ) -> list[dict[str, Any]]:
        """Versions of one record, oldest first, localized for ``context.locale``."""
        self._require_versioning()
        ctx = self._context(context)
        async with self.database.connection(ctx) as conn:
            existing = await self._load(conn, id, ctx, include_deleted=True)
            await self.access.require("read", ctx, row=existing)
            return await self.versioning.find_versions(conn, id, ctx, limit=limit, offset=offset)

    async def revert_to_version(
        self,
        id: Any,
        version: int | None = None,
        version_id: str | None = None,
        with_: dict[str, Any] | None = None,
        context: CRUDContext | None = None,
    ) -> dict[str, Any]:
        """Restore a record to a stored version and record that as a new version.

        Non-localized fields are taken from the snapshot; only the
        ``context.locale`` translation is replaced.

        Raises:
            OperationNotImplementedError: The collection is not versioned.
            BadRequestError: Neither or a malformed selector is given.
            NotFoundError: The version or the record does not exist.
        """
        self._require_versioning()
        check_version_selector(version, version_id)
        ctx = self._context(context)

        async def write(conn: Any) -> dict[str, Any]:
            loaded = await self.versioning.load_version(conn, id, version, version_id)
            if loaded is None:
                raise NotFoundError(f"{self.name} version", version_id or version)
            version_row, i18n_rows = loaded

            existing = await self._load(conn, id, ctx, include_deleted=False)
            if existing is None:
                raise NotFoundError(self.name, id)
            await self.access.require("update", ctx, row=existing)
            await run_hooks(
                self.state.hooks.before_change,
                self._hook_context("update", ctx, db=conn, input=version_row, original=existing),
            )

            await self._apply_version(conn, id, version_row, i18n_rows, ctx)
            row = await self._load(conn, id, ctx)
            await self._snapshot(conn, row, "update", ctx)
            await run_hooks(
                self.state.hooks.after_change,
                self._hook_context("update", ctx, db=conn, data=row, original=existing),
            )
            await self._emit("update", ctx, id, row)
            logger.debug(f"Reverted {self.name}:{id} to version {version_row['version_number']}")
            return row

        row = await with_transaction(self.database, write, ctx)
        return (await self._present([row], ctx, with_))[0]


def check_version_selector(version: Any, version_id: Any) -> None:
    """Exactly one well-formed selector: a positive ``version`` or a ``version_id``."""
    if version is None and version_id is None:
        raise BadRequestError("Either version or version_id is required")
    if version is not None and version_id is not None:
        raise BadRequestError("Pass either version or version_id, not both")
    if version is not None and (
        isinstance(version, bool) or not isinstance(version, int) or version < 1
    ):
        raise BadRequestError(f"Invalid version number: {version!r}")
    if version_id is not None and (not isinstance(version_id, str) or not version_id):
        raise BadRequestError(f"Invalid version_id: {version_id!r}")
