"""Compile declarative where trees into SQLAlchemy predicates.

A where tree is a dict whose keys are:

- field names (declared fields, system columns, ``_title``) mapped to a
  scalar (equality, ``None`` meaning ``IS NULL``) or an operator map
- relation names mapped to a nested where, optionally wrapped in a
  quantifier: ``is``/``isNot`` for singular relations, ``some``/``none``/
  ``every`` for plural ones
- ``AND``/``OR`` (lists), ``NOT`` (a single tree)
- ``RAW``: a callable receiving the scope's table and returning a clause

Unknown keys and operators raise ``BadRequestError``.

Usage:
    compiler = WhereCompiler(registry, max_depth=8)
    scope = QueryScope(topology=posts, table=posts.main, locale="en")
    predicate = compiler.compile(
        {"status": "published", "comments": {"some": {"approved": True}}},
        scope,
    )
    stmt = select(posts.main).where(predicate)
"""

from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import and_, false, func, literal_column, not_, or_, select, true
from sqlalchemy.sql import ColumnElement, FromClause

from record_engine.errors import BadRequestError
from record_engine.schema.models import (
    ManyToManyRelation,
    OneRelation,
    PolymorphicRelation,
    RelationKind,
    SchemaState,
)
from record_engine.schema.topology import TableTopology

LOGICAL_KEYS = frozenset({"AND", "OR", "NOT", "RAW"})
SINGULAR_QUANTIFIERS = frozenset({"is", "isNot"})
PLURAL_QUANTIFIERS = frozenset({"some", "none", "every"})

OPERATORS = frozenset(
    {
        "eq", "ne", "not", "gt", "gte", "lt", "lte",
        "in", "notIn",
        "like", "ilike", "notLike", "notIlike",
        "contains", "startsWith", "endsWith",
        "isNull", "isNotNull",
        "arrayOverlaps", "arrayContains", "arrayContained",
    }
)


class SchemaCatalog(Protocol):
    """What the compiler needs from the registry."""

    def topology(self, name: str) -> TableTopology:
        ...

    def many_keys(self, state_name: str, relation_name: str) -> tuple[list[str], list[str]]:
        ...


@dataclass
class QueryScope:
    """The table a where tree is compiled against.

    ``i18n``/``i18n_fallback`` are the joined locale aliases of a top-level
    query. Inside relation subqueries they are ``None`` and localized
    fields are read through a correlated subquery instead.
    """

    topology: TableTopology
    table: FromClause
    locale: str | None = None
    i18n: FromClause | None = None
    i18n_fallback: FromClause | None = None

    @property
    def state(self) -> SchemaState:
        return self.topology.state


class WhereCompiler:
    """Recursive-descent compiler with a depth cap."""

    def __init__(self, catalog: SchemaCatalog, max_depth: int = 8) -> None:
        self._catalog = catalog
        self._max_depth = max_depth

    def compile(
        self, where: dict[str, Any] | None, scope: QueryScope, depth: int = 0
    ) -> ColumnElement[bool] | None:
        """Compile ``where`` against ``scope``.

        Returns:
            A boolean clause, or ``None`` when the tree is empty.

        Raises:
            BadRequestError: Unknown keys or operators, malformed values,
                or nesting deeper than ``max_depth``.
        """
        if not where:
            return None
        if not isinstance(where, dict):
            raise BadRequestError(f"Where clause must be a mapping, got {type(where).__name__}")
        if depth > self._max_depth:
            raise BadRequestError(f"Where clause nested deeper than {self._max_depth} levels")

        state = scope.state
        conditions: list[ColumnElement[bool]] = []

        for key, value in where.items():
            if key in ("AND", "OR"):
                if not isinstance(value, list):
                    raise BadRequestError(f"'{key}' expects a list of where clauses")
                children = [self.compile(child, scope, depth + 1) for child in value]
                children = [c for c in children if c is not None]
                if children:
                    conditions.append(and_(*children) if key == "AND" else or_(*children))
            elif key == "NOT":
                child = self.compile(value, scope, depth + 1)
                if child is not None:
                    conditions.append(not_(child))
            elif key == "RAW":
                if not callable(value):
                    raise BadRequestError("'RAW' expects a callable receiving the table")
                conditions.append(value(scope.table))
            elif key in state.relations:
                conditions.append(
                    self._relation_condition(scope, key, state.relations[key], value, depth)
                )
            else:
                column = self.field_expression(scope, key)
                conditions.append(self._field_condition(column, key, value))

        if not conditions:
            return None
        return conditions[0] if len(conditions) == 1 else and_(*conditions)

    # ------------------------------------------------------------------
    # Fields
    # ------------------------------------------------------------------

    def field_expression(self, scope: QueryScope, name: str) -> ColumnElement[Any]:
        """Column expression for a field name in ``scope``.

        Localized fields read the current-locale join (coalesced with the
        fallback join when present); ``_title`` maps to the title field,
        or ``id`` when the entity has none.
        """
        state = scope.state
        if name == "_title":
            name = state.title or "id"

        if name in state.localized:
            if scope.i18n is not None:
                current = scope.i18n.c[name]
                if scope.i18n_fallback is not None:
                    return func.coalesce(current, scope.i18n_fallback.c[name])
                return current
            i18n = scope.topology.i18n.alias()
            return (
                select(i18n.c[name])
                .where(i18n.c.parent_id == scope.table.c.id, i18n.c.locale == scope.locale)
                .scalar_subquery()
            )

        if name in scope.table.c:
            return scope.table.c[name]
        raise BadRequestError(f"Unknown field '{name}' in where clause for '{state.name}'")

    def _field_condition(self, column: ColumnElement[Any], name: str, value: Any) -> ColumnElement[bool]:
        if value is None:
            return column.is_(None)
        if not isinstance(value, dict):
            return column == value
        if not value:
            raise BadRequestError(f"Empty operator map for field '{name}'")
        parts = [self._operator(column, name, op, arg) for op, arg in value.items()]
        return parts[0] if len(parts) == 1 else and_(*parts)

    def _operator(self, column: ColumnElement[Any], name: str, op: str, value: Any) -> ColumnElement[bool]:
        if op not in OPERATORS:
            raise BadRequestError(f"Unknown operator '{op}' for field '{name}'")

        if op == "eq":
            return column.is_(None) if value is None else column == value
        if op in ("ne", "not"):
            return column.is_not(None) if value is None else column != value
        if op == "gt":
            return column > value
        if op == "gte":
            return column >= value
        if op == "lt":
            return column < value
        if op == "lte":
            return column <= value
        if op == "isNull":
            return column.is_(None) if value else column.is_not(None)
        if op == "isNotNull":
            return column.is_not(None) if value else column.is_(None)

        if op in ("in", "notIn", "arrayOverlaps", "arrayContains", "arrayContained"):
            if not isinstance(value, (list, tuple, set, frozenset)):
                raise BadRequestError(f"Operator '{op}' on '{name}' expects a list")
            values = list(value)
            if op == "in":
                return column.in_(values)
            if op == "notIn":
                return column.not_in(values)
            if op == "arrayOverlaps":
                return column.op("&&")(values)
            if op == "arrayContains":
                return column.op("@>")(values)
            return column.op("<@")(values)

        if not isinstance(value, str):
            raise BadRequestError(f"Operator '{op}' on '{name}' expects a string")
        if op == "like":
            return column.like(value)
        if op == "ilike":
            return column.ilike(value)
        if op == "notLike":
            return column.not_like(value)
        if op == "notIlike":
            return column.not_ilike(value)
        if op == "contains":
            return column.ilike(f"%{value}%")
        if op == "startsWith":
            return column.ilike(f"{value}%")
        return column.ilike(f"%{value}")

    # ------------------------------------------------------------------
    # Relations
    # ------------------------------------------------------------------

    def _relation_condition(
        self, scope: QueryScope, name: str, relation: Any, value: Any, depth: int
    ) -> ColumnElement[bool]:
        kind: RelationKind = relation.relation_kind
        if value is True:
            value = {}
        if not isinstance(value, dict):
            raise BadRequestError(f"Relation filter '{name}' expects a mapping")

        allowed = PLURAL_QUANTIFIERS if kind.is_plural else SINGULAR_QUANTIFIERS
        quantifiers = [k for k in value if k in SINGULAR_QUANTIFIERS | PLURAL_QUANTIFIERS]
        if not quantifiers:
            return self._exists(scope, name, relation, value, depth)
        if len(quantifiers) != len(value):
            raise BadRequestError(
                f"Relation filter '{name}' mixes quantifiers with field conditions"
            )

        parts: list[ColumnElement[bool]] = []
        for quantifier, nested in value.items():
            if quantifier not in allowed:
                raise BadRequestError(
                    f"Quantifier '{quantifier}' is not valid for {kind.value} relation '{name}'"
                )
            if nested is True:
                nested = {}
            if nested is None and quantifier in SINGULAR_QUANTIFIERS:
                # "is: null" means no related row
                quantifier = "isNot" if quantifier == "is" else "is"
                nested = {}
            if not isinstance(nested, dict):
                raise BadRequestError(f"Quantifier '{quantifier}' on '{name}' expects a mapping")

            if quantifier in ("is", "some"):
                parts.append(self._exists(scope, name, relation, nested, depth))
            elif quantifier in ("isNot", "none"):
                parts.append(not_(self._exists(scope, name, relation, nested, depth)))
            else:
                parts.append(not_(self._exists(scope, name, relation, nested, depth, invert=True)))
        return parts[0] if len(parts) == 1 else and_(*parts)

    def _target_scope(self, collection: str, locale: str | None) -> QueryScope:
        topology = self._catalog.topology(collection)
        return QueryScope(topology=topology, table=topology.main.alias(), locale=locale)

    def _exists(
        self,
        scope: QueryScope,
        name: str,
        relation: Any,
        nested: dict[str, Any],
        depth: int,
        invert: bool = False,
    ) -> ColumnElement[bool]:
        """EXISTS over the related rows; ``invert`` negates the nested filter."""
        parent = scope.table

        if isinstance(relation, PolymorphicRelation):
            branches = []
            for type_value, collection in relation.collections.items():
                target = self._target_scope(collection, scope.locale)
                join = [target.table.c.id == parent.c[relation.id_field]]
                branches.append(
                    and_(
                        parent.c[relation.type_field] == type_value,
                        self._subquery(target, join, nested, depth, invert),
                    )
                )
            return or_(*branches) if branches else false()

        target = self._target_scope(relation.collection, scope.locale)
        child = target.table

        if isinstance(relation, OneRelation):
            join = [
                child.c[ref] == parent.c[local]
                for local, ref in zip(relation.fields, relation.references)
            ]
            return self._subquery(target, join, nested, depth, invert)

        if isinstance(relation, ManyToManyRelation):
            junction_topology = self._catalog.topology(relation.through)
            junction = junction_topology.main.alias()
            join = [junction.c[relation.source_field] == parent.c[relation.source_key]]
            if junction_topology.state.soft_delete:
                join.append(junction.c.deleted_at.is_(None))
            from_ = junction.join(child, junction.c[relation.target_field] == child.c[relation.target_key])
            return self._subquery(target, join, nested, depth, invert, from_=from_)

        fk_columns, ref_columns = self._catalog.many_keys(scope.state.name, name)
        join = [child.c[fk] == parent.c[ref] for fk, ref in zip(fk_columns, ref_columns)]
        return self._subquery(target, join, nested, depth, invert)

    def _subquery(
        self,
        target: QueryScope,
        conditions: list[ColumnElement[bool]],
        nested: dict[str, Any],
        depth: int,
        invert: bool,
        from_: FromClause | None = None,
    ) -> ColumnElement[bool]:
        if target.state.soft_delete:
            conditions.append(target.table.c.deleted_at.is_(None))
        inner = self.compile(nested, target, depth + 1)
        if invert:
            # every: NOT EXISTS (related AND NOT nested)
            conditions.append(not_(inner) if inner is not None else false())
        elif inner is not None:
            conditions.append(inner)
        stmt = (
            select(literal_column("1"))
            .select_from(from_ if from_ is not None else target.table)
            .where(and_(*conditions) if conditions else true())
        )
        return stmt.exists()
