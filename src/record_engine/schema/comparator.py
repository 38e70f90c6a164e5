"""Schema comparison using set operations.

Compares the columns a registry expects (derived from its table topology)
against the columns found in the database. Pure logic, no I/O.

Usage:
    from record_engine.schema.comparator import validate_schema
    from record_engine.schema.introspector import SchemaIntrospector

    with SchemaIntrospector(database_url) as introspector:
        actual_columns = introspector.get_column_names()

    result = validate_schema(actual_columns, registry.expected_columns())
    if not result.valid:
        print(result.format_report())
"""

from record_engine.schema.models import ColumnDiff, SchemaValidationResult
from record_engine.schema.topology import TableTopology


def collect_expected_columns(topologies: list[TableTopology]) -> dict[str, set[str]]:
    """Merge the expected columns of several topologies into one mapping."""
    expected: dict[str, set[str]] = {}
    for topology in topologies:
        for table_name, columns in topology.expected_columns().items():
            expected.setdefault(table_name, set()).update(columns)
    return expected


def validate_schema(
    actual_columns: dict[str, set[str]],
    expected_columns: dict[str, set[str]],
) -> SchemaValidationResult:
    """Validate actual database schema against expected columns.

    - Missing tables: expected but not present
    - Missing columns: expected in a table that exists but lacks them
    - Extra tables: present but unknown to the registry (warning only)

    Args:
        actual_columns: Table name to column names, as returned by
            ``SchemaIntrospector.get_column_names()``.
        expected_columns: Table name to column names, as returned by
            ``CollectionRegistry.expected_columns()``.

    Returns:
        ``SchemaValidationResult``; ``valid`` is ``True`` when nothing is
        missing.

    Examples:
        >>> validate_schema({"posts": {"id"}}, {"posts": {"id", "status"}}).valid
        False
    """
    actual_tables = set(actual_columns)
    expected_tables = set(expected_columns)

    missing_columns: list[ColumnDiff] = []
    for table_name in sorted(expected_tables & actual_tables):
        for col_name in sorted(expected_columns[table_name] - actual_columns[table_name]):
            missing_columns.append(
                ColumnDiff(
                    table=table_name,
                    column=col_name,
                    message=f"Column '{col_name}' missing from table '{table_name}'",
                )
            )

    missing_tables = sorted(expected_tables - actual_tables)

    return SchemaValidationResult(
        valid=not missing_tables and not missing_columns,
        missing_tables=missing_tables,
        missing_columns=missing_columns,
        extra_tables=sorted(actual_tables - expected_tables),
    )
