"""Merge locale-specific i18n columns into flat records.

Queries over localized entities join the i18n table twice at most: once for
the requested locale (columns labelled ``_i18n_<field>``) and, when a
fallback is needed, once for the default locale (``_i18n_fallback_<field>``).
The merge happens here, after the query, so the SQL stays a plain join.
"""

from typing import Any

from record_engine.schema.models import SchemaState

I18N_PREFIX = "_i18n_"
I18N_FALLBACK_PREFIX = "_i18n_fallback_"


def merge_localized_row(
    row: dict[str, Any], localized: list[str], use_fallback: bool
) -> dict[str, Any]:
    """Replace prefixed i18n columns with the resolved field value.

    The requested-locale value wins when it is not ``None``; otherwise the
    default-locale value is used if ``use_fallback`` is set. Mutates and
    returns ``row``.
    """
    for field_name in localized:
        current_key = f"{I18N_PREFIX}{field_name}"
        fallback_key = f"{I18N_FALLBACK_PREFIX}{field_name}"
        if current_key not in row and fallback_key not in row:
            continue
        value = row.pop(current_key, None)
        fallback = row.pop(fallback_key, None)
        if value is None and use_fallback:
            value = fallback
        row[field_name] = value
    return row


def merge_localized_rows(
    rows: list[dict[str, Any]], localized: list[str], use_fallback: bool
) -> list[dict[str, Any]]:
    return [merge_localized_row(row, localized, use_fallback) for row in rows]


def split_localized(
    data: dict[str, Any], localized: frozenset[str] | set[str]
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Split a write payload into ``(non_localized, localized)``."""
    plain: dict[str, Any] = {}
    translated: dict[str, Any] = {}
    for key, value in data.items():
        (translated if key in localized else plain)[key] = value
    return plain, translated


def attach_title(row: dict[str, Any], state: SchemaState) -> dict[str, Any]:
    """Set ``_title`` from the title field, falling back to the id."""
    title = row.get(state.title) if state.title else None
    row["_title"] = title if title is not None else row.get("id")
    return row
