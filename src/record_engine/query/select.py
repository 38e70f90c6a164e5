"""Select-list, join and ordering construction for entity queries."""

from typing import Any

from sqlalchemy import and_, asc, desc
from sqlalchemy.sql import ColumnElement, FromClause

from record_engine.context import CRUDContext
from record_engine.errors import BadRequestError
from record_engine.query.localization import I18N_FALLBACK_PREFIX, I18N_PREFIX
from record_engine.query.where import QueryScope, WhereCompiler
from record_engine.schema.models import SchemaState
from record_engine.schema.topology import TableTopology


def selectable_names(state: SchemaState) -> list[str]:
    """Every name a ``columns`` option may refer to, in output order."""
    names = ["id", *state.fields, *state.system_columns[1:]]
    return names + ["_title"]


def included_fields(state: SchemaState, columns: dict[str, bool] | None) -> list[str]:
    """Resolve a ``columns`` option.

    If any value is ``True`` only those names are selected (inclusion
    mode); otherwise every name not set to ``False`` is (omission mode).
    ``id`` is always included.

    Raises:
        BadRequestError: When a name is neither a field nor a system column.
    """
    names = selectable_names(state)
    if not columns:
        return names

    unknown = set(columns) - set(names)
    if unknown:
        raise BadRequestError(f"Unknown columns for '{state.name}': {sorted(unknown)}")

    if any(v is True for v in columns.values()):
        selected = [n for n in names if columns.get(n) is True]
    else:
        selected = [n for n in names if columns.get(n) is not False]
    if "id" not in selected:
        selected.insert(0, "id")
    return selected


def build_scope(
    topology: TableTopology, context: CRUDContext
) -> tuple[QueryScope, FromClause]:
    """Top-level scope and FROM clause with the locale joins.

    The fallback join is only added when the requested locale differs from
    the default locale and fallback is enabled.
    """
    main = topology.main
    scope = QueryScope(topology=topology, table=main, locale=context.locale)
    from_clause: FromClause = main

    if topology.i18n is not None:
        current = topology.i18n.alias("i18n_current")
        from_clause = from_clause.outerjoin(
            current, and_(current.c.parent_id == main.c.id, current.c.locale == context.locale)
        )
        scope.i18n = current
        if context.use_fallback:
            fallback = topology.i18n.alias("i18n_fallback")
            from_clause = from_clause.outerjoin(
                fallback,
                and_(
                    fallback.c.parent_id == main.c.id,
                    fallback.c.locale == context.default_locale,
                ),
            )
            scope.i18n_fallback = fallback

    return scope, from_clause


def select_columns(scope: QueryScope, names: list[str]) -> list[ColumnElement[Any]]:
    """Labelled columns for ``names``; localized fields come from the joins."""
    state = scope.state
    columns: list[ColumnElement[Any]] = []
    for name in names:
        if name == "_title":
            continue
        if name in state.localized:
            columns.append(scope.i18n.c[name].label(f"{I18N_PREFIX}{name}"))
            if scope.i18n_fallback is not None:
                columns.append(
                    scope.i18n_fallback.c[name].label(f"{I18N_FALLBACK_PREFIX}{name}")
                )
        else:
            columns.append(scope.table.c[name])
    return columns


def order_by_clauses(
    compiler: WhereCompiler, scope: QueryScope, order_by: Any
) -> list[ColumnElement[Any]]:
    """Accepts ``{"field": "asc"|"desc"}``, ``"field"``/``"-field"`` or a list of either."""
    if not order_by:
        return []
    items = order_by if isinstance(order_by, list) else [order_by]

    clauses: list[ColumnElement[Any]] = []
    for item in items:
        if isinstance(item, str):
            direction = "desc" if item.startswith("-") else "asc"
            pairs = [(item.lstrip("-"), direction)]
        elif isinstance(item, dict):
            pairs = list(item.items())
        else:
            raise BadRequestError(f"Invalid order_by entry: {item!r}")

        for name, direction in pairs:
            direction = str(direction).lower()
            if direction not in ("asc", "desc"):
                raise BadRequestError(f"Invalid sort direction '{direction}' for '{name}'")
            column = compiler.field_expression(scope, name)
            clauses.append(desc(column) if direction == "desc" else asc(column))
    return clauses
