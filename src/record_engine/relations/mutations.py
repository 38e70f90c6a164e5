"""Nested relation writes carried inside create/update payloads.

Payload shapes per relation kind:

- ``one``: a scalar (the foreign key value, ``None`` to disconnect) or
  exactly one of ``{"connect": where}``, ``{"create": data}``,
  ``{"connectOrCreate": {"where": ..., "create": ...}}``
- ``many``: ``create``, ``connect`` and ``connectOrCreate``, each a
  single item or a list; children get the foreign key of the parent
- ``manyToMany``: a plain list of target ids or ``{"set": [...]}`` replaces
  the links; ``create``, ``connect`` and ``connectOrCreate`` add links

Singular operations run before the parent row is written (they produce its
foreign key); plural ones run after, inside the same transaction.
"""

import logging
from typing import Any

from record_engine.context import CRUDContext, system_context
from record_engine.errors import BadRequestError
from record_engine.schema.models import (
    ManyRelation,
    ManyToManyRelation,
    OneRelation,
    SchemaState,
)

logger = logging.getLogger(__name__)

NESTED_OPERATIONS = frozenset({"create", "connect", "connectOrCreate"})


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def separate_nested(
    state: SchemaState, input: dict[str, Any]
) -> tuple[dict[str, Any], dict[str, dict[str, Any]]]:
    """Split a payload into column values and nested relation operations.

    A scalar given for a single-column ``one`` relation becomes its foreign
    key value.

    Raises:
        BadRequestError: On malformed nested payloads.
    """
    values: dict[str, Any] = {}
    nested: dict[str, dict[str, Any]] = {}

    for key, value in input.items():
        relation = state.relations.get(key)
        if relation is None:
            values[key] = value
            continue

        if isinstance(relation, OneRelation) and not isinstance(value, dict):
            if len(relation.fields) != 1:
                raise BadRequestError(
                    f"Relation '{key}' has a composite key; use connect with a mapping"
                )
            values[relation.fields[0]] = value
        elif isinstance(relation, ManyToManyRelation) and isinstance(value, list):
            nested[key] = {"set": value}
        elif isinstance(value, dict) and isinstance(
            relation, (OneRelation, ManyRelation, ManyToManyRelation)
        ):
            allowed = NESTED_OPERATIONS | (
                {"set"} if isinstance(relation, ManyToManyRelation) else set()
            )
            unknown = set(value) - allowed
            if unknown:
                raise BadRequestError(
                    f"Unknown nested operations for '{key}': {sorted(unknown)}"
                )
            nested[key] = value
        else:
            raise BadRequestError(f"Relation '{key}' cannot be written this way")

    return values, nested


class RelationMutator:
    """Applies nested relation operations for one entity."""

    def __init__(self, registry: Any, state: SchemaState) -> None:
        self._registry = registry
        self._state = state

    def _connect_where(self, value: Any, key: str) -> dict[str, Any]:
        if isinstance(value, dict):
            return value
        return {key: value}

    async def _require(self, collection: str, where: dict[str, Any], context: CRUDContext, label: str) -> dict[str, Any]:
        target = self._registry.get_collection(collection)
        row = await target.find_one(where=where, context=system_context(context))
        if row is None:
            raise BadRequestError(f"Cannot connect '{label}': no matching '{collection}' record")
        return row

    # ------------------------------------------------------------------
    # Before the parent row is written
    # ------------------------------------------------------------------

    async def apply_singular(
        self,
        nested: dict[str, dict[str, Any]],
        values: dict[str, Any],
        context: CRUDContext,
    ) -> None:
        """Resolve ``one`` operations into foreign key values on ``values``."""
        for name, operations in nested.items():
            relation = self._state.relations[name]
            if not isinstance(relation, OneRelation):
                continue
            if len(operations) != 1:
                raise BadRequestError(
                    f"Relation '{name}' accepts exactly one of create, connect, connectOrCreate"
                )
            operation, payload = next(iter(operations.items()))
            target = self._registry.get_collection(relation.collection)

            if operation == "connect":
                row = await self._require(
                    relation.collection,
                    self._connect_where(payload, relation.references[0]),
                    context,
                    name,
                )
            elif operation == "create":
                row = await target.create(payload, context=context)
            else:
                row = await self._connect_or_create(target, payload, context, name)

            for local, ref in zip(relation.fields, relation.references):
                values[local] = row[ref]

    async def _connect_or_create(
        self, target: Any, payload: Any, context: CRUDContext, name: str
    ) -> dict[str, Any]:
        if not isinstance(payload, dict) or "where" not in payload or "create" not in payload:
            raise BadRequestError(f"connectOrCreate on '{name}' needs 'where' and 'create'")
        row = await target.find_one(where=payload["where"], context=system_context(context))
        if row is None:
            row = await target.create(payload["create"], context=context)
        return row

    # ------------------------------------------------------------------
    # After the parent row is written
    # ------------------------------------------------------------------

    async def apply_plural(
        self,
        row: dict[str, Any],
        nested: dict[str, dict[str, Any]],
        context: CRUDContext,
    ) -> None:
        """Apply ``many`` and ``manyToMany`` operations for the stored ``row``."""
        for name, operations in nested.items():
            relation = self._state.relations[name]
            if isinstance(relation, ManyRelation):
                await self._apply_many(row, name, relation, operations, context)
            elif isinstance(relation, ManyToManyRelation):
                await self._apply_many_to_many(row, name, relation, operations, context)

    async def _apply_many(
        self,
        row: dict[str, Any],
        name: str,
        relation: ManyRelation,
        operations: dict[str, Any],
        context: CRUDContext,
    ) -> None:
        fk_columns, ref_columns = self._registry.many_keys(self._state.name, name)
        link = {fk: row[ref] for fk, ref in zip(fk_columns, ref_columns)}
        target = self._registry.get_collection(relation.collection)

        for item in _as_list(operations.get("create")):
            await target.create({**item, **link}, context=context)

        for where in _as_list(operations.get("connect")):
            child = await self._require(
                relation.collection, self._connect_where(where, "id"), context, name
            )
            await target.update_by_id(child["id"], link, context=context)

        for item in _as_list(operations.get("connectOrCreate")):
            if not isinstance(item, dict) or "where" not in item or "create" not in item:
                raise BadRequestError(f"connectOrCreate on '{name}' needs 'where' and 'create'")
            child = await target.find_one(where=item["where"], context=system_context(context))
            if child is None:
                await target.create({**item["create"], **link}, context=context)
            else:
                await target.update_by_id(child["id"], link, context=context)

    async def _apply_many_to_many(
        self,
        row: dict[str, Any],
        name: str,
        relation: ManyToManyRelation,
        operations: dict[str, Any],
        context: CRUDContext,
    ) -> None:
        junction = self._registry.get_collection(relation.through)
        target = self._registry.get_collection(relation.collection)
        source_value = row[relation.source_key]
        system = system_context(context)

        linked = [
            j[relation.target_field]
            for j in await junction.find_rows(
                where={relation.source_field: source_value}, context=system
            )
        ]

        async def link(target_value: Any) -> None:
            if target_value in linked:
                return
            await junction.create(
                {relation.source_field: source_value, relation.target_field: target_value},
                context=system,
            )
            linked.append(target_value)

        if "set" in operations:
            desired: list[Any] = []
            for item in _as_list(operations["set"]):
                value = item.get(relation.target_key) if isinstance(item, dict) else item
                if value not in desired:
                    desired.append(value)
            stale = [v for v in linked if v not in desired]
            if stale:
                await junction.delete(
                    where={
                        relation.source_field: source_value,
                        relation.target_field: {"in": stale},
                    },
                    context=system,
                )
                linked = [v for v in linked if v not in stale]
            missing = [v for v in desired if v not in linked]
            if missing:
                found = await target.find_rows(
                    where={relation.target_key: {"in": missing}}, context=system
                )
                found_keys = {t[relation.target_key] for t in found}
                absent = [v for v in missing if v not in found_keys]
                if absent:
                    raise BadRequestError(
                        f"Cannot set '{name}': unknown '{relation.collection}' records {absent}"
                    )
            for value in missing:
                await link(value)

        for item in _as_list(operations.get("create")):
            created = await target.create(item, context=context)
            await link(created[relation.target_key])

        for where in _as_list(operations.get("connect")):
            found = await self._require(
                relation.collection,
                self._connect_where(where, relation.target_key),
                context,
                name,
            )
            await link(found[relation.target_key])

        for item in _as_list(operations.get("connectOrCreate")):
            found = await self._connect_or_create(target, item, context, name)
            await link(found[relation.target_key])
