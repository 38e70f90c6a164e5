"""Batched relation loading for ``with`` trees.

Each requested relation costs one query (two for manyToMany: junction then
targets), whatever the number of parent rows. Results are attached to the
parent rows in place under the relation name.

A ``with`` value is ``True`` or an options mapping with the keys
``where``, ``columns``, ``order_by``, ``limit``, ``offset``, ``with``,
``_count`` and ``_aggregate``. A mapping with none of those keys is read
as a nested ``with`` tree. ``limit``/``offset`` apply per parent.

Usage:
    await resolver.resolve(
        posts_state,
        rows,
        {"author": True, "comments": {"_count": True}, "tags": {"order_by": "name"}},
        ctx,
    )
"""

import logging
from collections import defaultdict
from typing import Any

from sqlalchemy import and_, func, or_, select

from record_engine.access import merge_where
from record_engine.context import CRUDContext, system_context
from record_engine.errors import BadRequestError
from record_engine.query.select import included_fields
from record_engine.query.where import QueryScope
from record_engine.schema.models import (
    ManyRelation,
    ManyToManyRelation,
    OneRelation,
    PolymorphicRelation,
    SchemaState,
)

logger = logging.getLogger(__name__)

WITH_OPTION_KEYS = frozenset(
    {"where", "columns", "order_by", "limit", "offset", "with", "_count", "_aggregate"}
)
AGGREGATE_KEYS = ("_sum", "_avg", "_min", "_max")


def normalize_with_options(name: str, value: Any) -> dict[str, Any]:
    """Turn a ``with`` entry into an options mapping."""
    if value is True:
        return {}
    if not isinstance(value, dict):
        raise BadRequestError(f"With entry '{name}' must be true or a mapping")
    if value and not set(value) & WITH_OPTION_KEYS:
        return {"with": value}
    unknown = set(value) - WITH_OPTION_KEYS
    if unknown:
        raise BadRequestError(f"Unknown with options for '{name}': {sorted(unknown)}")
    return value


def _key_where(columns: list[str], keys: list[tuple]) -> dict[str, Any]:
    if len(columns) == 1:
        return {columns[0]: {"in": [k[0] for k in keys]}}
    return {"OR": [dict(zip(columns, k)) for k in keys]}


def _distinct_keys(rows: list[dict[str, Any]], columns: list[str]) -> list[tuple]:
    seen: dict[tuple, None] = {}
    for row in rows:
        key = tuple(row.get(c) for c in columns)
        if all(part is not None for part in key):
            seen.setdefault(key, None)
    return list(seen)


def _window(items: list[Any], options: dict[str, Any]) -> list[Any]:
    offset = options.get("offset") or 0
    limit = options.get("limit")
    if limit is None:
        return items[offset:]
    return items[offset : offset + limit]


class RelationResolver:
    """Loads requested relations for a batch of rows."""

    def __init__(self, registry: Any, max_depth: int = 8) -> None:
        self._registry = registry
        self._max_depth = max_depth

    async def resolve(
        self,
        state: SchemaState,
        rows: list[dict[str, Any]],
        with_tree: dict[str, Any] | None,
        context: CRUDContext,
        depth: int = 0,
    ) -> None:
        """Attach every relation in ``with_tree`` to ``rows``.

        Raises:
            BadRequestError: Unknown relation names, aggregation on singular
                relations, or nesting deeper than ``max_depth``.
        """
        if not with_tree or not rows:
            return
        if not isinstance(with_tree, dict):
            raise BadRequestError("With clause must be a mapping of relation names")
        if depth > self._max_depth:
            raise BadRequestError(f"With clause nested deeper than {self._max_depth} levels")

        for name, value in with_tree.items():
            if value is False or value is None:
                continue
            relation = state.relations.get(name)
            if relation is None:
                raise BadRequestError(f"Unknown relation '{name}' on '{state.name}'")

            options = normalize_with_options(name, value)
            aggregate = self._aggregate_spec(name, options)
            if aggregate is not None and not relation.relation_kind.is_plural:
                raise BadRequestError(
                    f"Aggregation is only allowed on plural relations, '{name}' is "
                    f"{relation.relation_kind.value}"
                )

            logger.debug(f"Resolving {state.name}.{name} for {len(rows)} rows")
            if isinstance(relation, OneRelation):
                await self._resolve_one(name, relation, rows, options, context, depth)
            elif isinstance(relation, ManyRelation):
                if aggregate is not None:
                    await self._aggregate_many(state, name, relation, rows, options, aggregate, context)
                else:
                    await self._resolve_many(state, name, relation, rows, options, context, depth)
            elif isinstance(relation, ManyToManyRelation):
                if aggregate is not None:
                    await self._aggregate_many_to_many(name, relation, rows, options, aggregate, context)
                else:
                    await self._resolve_many_to_many(name, relation, rows, options, context, depth)
            elif isinstance(relation, PolymorphicRelation):
                await self._resolve_polymorphic(name, relation, rows, options, context, depth)

    # ------------------------------------------------------------------
    # Row loading
    # ------------------------------------------------------------------

    async def _load(
        self,
        collection: str,
        key_where: dict[str, Any],
        options: dict[str, Any],
        context: CRUDContext,
        depth: int,
        keys: list[str],
        ordered: bool = True,
    ) -> tuple[list[dict[str, Any]], list[str]]:
        """Load target rows; returns them with the key columns to hide afterwards.

        The rows still carry every key column and have not been field
        filtered. Pass them to ``_release`` once they are matched to parents.
        """
        target = self._registry.get_collection(collection)
        columns = options.get("columns")
        shown = included_fields(target.state, columns)
        hidden = [k for k in keys if k not in shown]
        rows = await target.find_rows(
            where=merge_where(key_where, options.get("where")),
            columns=columns,
            with_=options.get("with"),
            order_by=options.get("order_by") if ordered else None,
            context=context,
            include_deleted=False,
            depth=depth + 1,
            keep_columns=keys,
            finalize=False,
        )
        return rows, hidden

    async def _release(
        self,
        collection: str,
        rows: list[dict[str, Any]],
        hidden: list[str],
        context: CRUDContext,
    ) -> None:
        """Drop the matching keys, then apply field rules and ``after_read``."""
        for row in rows:
            for key in hidden:
                row.pop(key, None)
        await self._registry.get_collection(collection)._finalize(rows, context)

    async def _resolve_one(
        self,
        name: str,
        relation: OneRelation,
        rows: list[dict[str, Any]],
        options: dict[str, Any],
        context: CRUDContext,
        depth: int,
    ) -> None:
        keys = _distinct_keys(rows, relation.fields)
        if not keys:
            for row in rows:
                row[name] = None
            return

        targets, hidden = await self._load(
            relation.collection,
            _key_where(relation.references, keys),
            options,
            context,
            depth,
            relation.references,
            ordered=False,
        )
        index = {tuple(t.get(r) for r in relation.references): t for t in targets}
        for row in rows:
            row[name] = index.get(tuple(row.get(f) for f in relation.fields))
        await self._release(relation.collection, targets, hidden, context)

    async def _resolve_many(
        self,
        state: SchemaState,
        name: str,
        relation: ManyRelation,
        rows: list[dict[str, Any]],
        options: dict[str, Any],
        context: CRUDContext,
        depth: int,
    ) -> None:
        fk_columns, ref_columns = self._registry.many_keys(state.name, name)
        keys = _distinct_keys(rows, ref_columns)
        if not keys:
            for row in rows:
                row[name] = []
            return

        children, hidden = await self._load(
            relation.collection, _key_where(fk_columns, keys), options, context, depth, fk_columns
        )
        groups: dict[tuple, list[dict[str, Any]]] = defaultdict(list)
        for child in children:
            groups[tuple(child.get(f) for f in fk_columns)].append(child)
        for row in rows:
            row[name] = _window(groups.get(tuple(row.get(r) for r in ref_columns), []), options)
        await self._release(relation.collection, children, hidden, context)

    async def _resolve_many_to_many(
        self,
        name: str,
        relation: ManyToManyRelation,
        rows: list[dict[str, Any]],
        options: dict[str, Any],
        context: CRUDContext,
        depth: int,
    ) -> None:
        source_values = [k[0] for k in _distinct_keys(rows, [relation.source_key])]
        if not source_values:
            for row in rows:
                row[name] = []
            return

        junction = self._registry.get_collection(relation.through)
        links = await junction.find_rows(
            where={relation.source_field: {"in": source_values}},
            context=system_context(context),
            include_deleted=False,
            depth=depth + 1,
        )
        if not links:
            for row in rows:
                row[name] = []
            return

        target_values = list(dict.fromkeys(link[relation.target_field] for link in links))
        targets, hidden = await self._load(
            relation.collection,
            {relation.target_key: {"in": target_values}},
            options,
            context,
            depth,
            [relation.target_key],
        )
        index = {t[relation.target_key]: t for t in targets}
        position = {t[relation.target_key]: i for i, t in enumerate(targets)}

        grouped: dict[Any, list[dict[str, Any]]] = defaultdict(list)
        for link in links:
            target_row = index.get(link[relation.target_field])
            if target_row is not None:
                grouped[link[relation.source_field]].append(target_row)

        for row in rows:
            items = grouped.get(row.get(relation.source_key), [])
            if options.get("order_by"):
                items = sorted(items, key=lambda t: position[t[relation.target_key]])
            row[name] = _window(items, options)
        await self._release(relation.collection, targets, hidden, context)

    async def _resolve_polymorphic(
        self,
        name: str,
        relation: PolymorphicRelation,
        rows: list[dict[str, Any]],
        options: dict[str, Any],
        context: CRUDContext,
        depth: int,
    ) -> None:
        partitions: dict[str, list[Any]] = defaultdict(list)
        for row in rows:
            type_value = row.get(relation.type_field)
            id_value = row.get(relation.id_field)
            if type_value in relation.collections and id_value is not None:
                if id_value not in partitions[type_value]:
                    partitions[type_value].append(id_value)

        index: dict[tuple[str, Any], dict[str, Any]] = {}
        for type_value, ids in partitions.items():
            targets, hidden = await self._load(
                relation.collections[type_value],
                {"id": {"in": ids}},
                options,
                context,
                depth,
                ["id"],
                ordered=False,
            )
            for target_row in targets:
                index[(type_value, target_row["id"])] = target_row
            await self._release(relation.collections[type_value], targets, hidden, context)

        for row in rows:
            row[name] = index.get((row.get(relation.type_field), row.get(relation.id_field)))

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def _aggregate_spec(self, name: str, options: dict[str, Any]) -> dict[str, list[str]] | None:
        """``{"_sum": [fields], ...}`` or ``None`` when no aggregate is requested."""
        count = options.get("_count")
        aggregate = options.get("_aggregate")
        if not count and not aggregate:
            return None
        spec: dict[str, list[str]] = {key: [] for key in AGGREGATE_KEYS}
        if aggregate:
            if not isinstance(aggregate, dict):
                raise BadRequestError(f"_aggregate on '{name}' must be a mapping")
            unknown = set(aggregate) - {"_count", *AGGREGATE_KEYS}
            if unknown:
                raise BadRequestError(f"Unknown aggregates on '{name}': {sorted(unknown)}")
            for key in AGGREGATE_KEYS:
                selection = aggregate.get(key) or {}
                if not isinstance(selection, dict):
                    raise BadRequestError(f"{key} on '{name}' must map field names to true")
                spec[key] = [f for f, enabled in selection.items() if enabled]
        return spec

    def _aggregate_columns(self, state: SchemaState, table: Any, spec: dict[str, list[str]]) -> list[Any]:
        functions = {"_sum": func.sum, "_avg": func.avg, "_min": func.min, "_max": func.max}
        columns = []
        for key in AGGREGATE_KEYS:
            for field_name in spec[key]:
                if field_name not in state.fields or field_name in state.localized:
                    raise BadRequestError(
                        f"Cannot aggregate '{field_name}' on '{state.name}'"
                    )
                columns.append(functions[key](table.c[field_name]).label(f"{key}_{field_name}"))
        return columns

    @staticmethod
    def _shape(result: dict[str, Any], spec: dict[str, list[str]]) -> dict[str, Any]:
        shaped: dict[str, Any] = {"_count": int(result["_count"] or 0)}
        for key in AGGREGATE_KEYS:
            if not spec[key]:
                continue
            values = {}
            for field_name in spec[key]:
                value = result[f"{key}_{field_name}"]
                if key in ("_sum", "_avg"):
                    value = value if value is not None else 0
                values[field_name] = value
            shaped[key] = values
        return shaped

    async def _target_filter(
        self, collection: str, options: dict[str, Any], scope: QueryScope, context: CRUDContext
    ) -> list[Any]:
        target = self._registry.get_collection(collection)
        access_where = await target.access.require("read", context)
        conditions = []
        compiled = self._registry.where.compile(
            merge_where(options.get("where"), access_where), scope
        )
        if compiled is not None:
            conditions.append(compiled)
        if target.state.soft_delete:
            conditions.append(scope.table.c.deleted_at.is_(None))
        return conditions

    async def _aggregate_many(
        self,
        state: SchemaState,
        name: str,
        relation: ManyRelation,
        rows: list[dict[str, Any]],
        options: dict[str, Any],
        spec: dict[str, list[str]],
        context: CRUDContext,
    ) -> None:
        fk_columns, ref_columns = self._registry.many_keys(state.name, name)
        keys = _distinct_keys(rows, ref_columns)
        results: dict[tuple, dict[str, Any]] = {}

        if keys:
            topology = self._registry.topology(relation.collection)
            table = topology.main
            scope = QueryScope(topology=topology, table=table, locale=context.locale)
            group_columns = [table.c[f] for f in fk_columns]
            if len(fk_columns) == 1:
                key_condition = group_columns[0].in_([k[0] for k in keys])
            else:
                key_condition = or_(
                    *[and_(*[c == v for c, v in zip(group_columns, k)]) for k in keys]
                )
            conditions = [key_condition, *await self._target_filter(relation.collection, options, scope, context)]
            stmt = (
                select(
                    *group_columns,
                    func.count().label("_count"),
                    *self._aggregate_columns(topology.state, table, spec),
                )
                .where(and_(*conditions))
                .group_by(*group_columns)
            )
            async with self._registry.database.connection(context) as conn:
                result = await conn.execute(stmt)
                for record in result.mappings():
                    results[tuple(record[f] for f in fk_columns)] = self._shape(record, spec)

        for row in rows:
            row[name] = results.get(tuple(row.get(r) for r in ref_columns), {"_count": 0})

    async def _aggregate_many_to_many(
        self,
        name: str,
        relation: ManyToManyRelation,
        rows: list[dict[str, Any]],
        options: dict[str, Any],
        spec: dict[str, list[str]],
        context: CRUDContext,
    ) -> None:
        source_values = [k[0] for k in _distinct_keys(rows, [relation.source_key])]
        results: dict[Any, dict[str, Any]] = {}

        if source_values:
            topology = self._registry.topology(relation.collection)
            junction_topology = self._registry.topology(relation.through)
            table = topology.main
            junction = junction_topology.main
            scope = QueryScope(topology=topology, table=table, locale=context.locale)
            conditions = [
                junction.c[relation.source_field].in_(source_values),
                *await self._target_filter(relation.collection, options, scope, context),
            ]
            if junction_topology.state.soft_delete:
                conditions.append(junction.c.deleted_at.is_(None))
            source_column = junction.c[relation.source_field]
            stmt = (
                select(
                    source_column,
                    func.count().label("_count"),
                    *self._aggregate_columns(topology.state, table, spec),
                )
                .select_from(
                    junction.join(
                        table, junction.c[relation.target_field] == table.c[relation.target_key]
                    )
                )
                .where(and_(*conditions))
                .group_by(source_column)
            )
            async with self._registry.database.connection(context) as conn:
                result = await conn.execute(stmt)
                for record in result.mappings():
                    results[record[relation.source_field]] = self._shape(record, spec)

        for row in rows:
            row[name] = results.get(row.get(relation.source_key), {"_count": 0})
