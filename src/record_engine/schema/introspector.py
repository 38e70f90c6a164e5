"""PostgreSQL column introspection via information_schema.

Reads the live column set of every base table so the derived topology of a
registry can be checked against what is actually deployed.

Uses psycopg (v3) for PostgreSQL connections.
"""

import psycopg
from psycopg import Connection


class SchemaIntrospector:
    """Reads table and column names from a PostgreSQL database.

    Usage:
        with SchemaIntrospector(database_url) as introspector:
            columns = introspector.get_column_names()
            # {"posts": {"id", "status", ...}, "posts_i18n": {...}}
    """

    # Tables to exclude from introspection (system tables)
    EXCLUDED_TABLES = {
        "schema_migrations",
        "alembic_version",
        "pg_stat_statements",
        "spatial_ref_sys",
    }

    def __init__(self, database_url: str):
        """Initialize with database connection URL.

        Args:
            database_url: PostgreSQL connection URL. SQLAlchemy driver
                suffixes (``postgresql+asyncpg://``) are stripped.
        """
        self._database_url = _libpq_url(database_url)
        self._conn: Connection | None = None

    def __enter__(self) -> "SchemaIntrospector":
        """Context manager entry - opens connection."""
        # Append connect_timeout if not already in URL
        url = self._database_url
        if "connect_timeout" not in url:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}connect_timeout=10"

        self._conn = psycopg.connect(url)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - closes connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def get_column_names(self, schema_name: str = "public") -> dict[str, set[str]]:
        """Get column names for all base tables in one query.

        Args:
            schema_name: PostgreSQL schema to query (default: public)

        Returns:
            Dict mapping table name to set of column names
        """
        if not self._conn:
            raise RuntimeError("Introspector not connected. Use with statement.")

        query = """
            SELECT c.table_name, c.column_name
            FROM information_schema.columns c
            JOIN information_schema.tables t
              ON t.table_schema = c.table_schema
             AND t.table_name = c.table_name
            WHERE c.table_schema = %s
              AND t.table_type = 'BASE TABLE'
            ORDER BY c.table_name, c.ordinal_position
        """
        result: dict[str, set[str]] = {}
        with self._conn.cursor() as cur:
            cur.execute(query, (schema_name,))
            for table_name, column_name in cur.fetchall():
                if table_name in self.EXCLUDED_TABLES:
                    continue
                result.setdefault(table_name, set()).add(column_name)
        return result


def _libpq_url(url: str) -> str:
    """Strip a SQLAlchemy driver suffix so libpq accepts the URL."""
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    base = scheme.split("+", 1)[0]
    if base == "postgres":
        base = "postgresql"
    return f"{base}://{rest}"
