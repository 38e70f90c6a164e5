"""Query construction: where compilation, select lists and locale merging."""

from record_engine.query.localization import (
    merge_localized_row,
    merge_localized_rows,
    split_localized,
)
from record_engine.query.where import QueryScope, WhereCompiler

__all__ = [
    "WhereCompiler",
    "QueryScope",
    "merge_localized_row",
    "merge_localized_rows",
    "split_localized",
]
