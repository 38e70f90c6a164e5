"""Physical table derivation from a ``SchemaState``.

Each entity maps to up to four SQLAlchemy Core tables:

- ``<name>``: id, non-localized fields, timestamps, ``deleted_at``
- ``<name>_i18n``: one row per ``(parent_id, locale)`` holding localized fields
- ``<name>_versions``: append-only snapshots of the main row
- ``<name>_i18n_versions``: snapshots of the i18n rows per version number

Usage:
    from sqlalchemy import MetaData
    from record_engine.schema.topology import build_topology

    metadata = MetaData()
    topology = build_topology(posts_state, metadata)
    topology.main.c.title  # KeyError when "title" is localized
    topology.i18n.c.title
"""

import uuid
from dataclasses import dataclass

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.types import TypeEngine

from record_engine.schema.models import FieldSpec, FieldType, SchemaState

ID_LENGTH = 36


def new_id() -> str:
    """Generate a primary key value for a new row."""
    return str(uuid.uuid4())


def column_type(spec: FieldSpec) -> TypeEngine:
    """Map a declared field type to a portable SQLAlchemy type."""
    if spec.type is FieldType.STRING:
        return String(spec.length or 255)
    if spec.type is FieldType.INTEGER:
        return Integer()
    if spec.type is FieldType.NUMBER:
        return Float()
    if spec.type is FieldType.BOOLEAN:
        return Boolean()
    if spec.type is FieldType.DATETIME:
        return DateTime(timezone=True)
    if spec.type is FieldType.DATE:
        return Date()
    if spec.type is FieldType.JSON:
        return JSON().with_variant(JSONB(), "postgresql")
    if spec.type is FieldType.ARRAY:
        # Array operators (&&, @>, <@) need a native array on PostgreSQL
        return JSON().with_variant(ARRAY(Text()), "postgresql")
    return Text()


def _field_column(name: str, spec: FieldSpec, snapshot: bool = False) -> Column:
    kwargs: dict = {}
    if spec.default is not None:
        kwargs["default"] = spec.default
    if snapshot:
        # Snapshots must accept any historical value
        return Column(name, column_type(spec), nullable=True)
    return Column(
        name,
        column_type(spec),
        nullable=spec.nullable,
        unique=spec.unique,
        index=spec.index,
        **kwargs,
    )


def _localized_column(name: str, spec: FieldSpec) -> Column:
    # A missing translation is NULL, so localized columns are always nullable
    return Column(name, column_type(spec), nullable=True)


@dataclass
class TableTopology:
    """The physical tables backing one collection or global."""

    state: SchemaState
    main: Table
    i18n: Table | None = None
    versions: Table | None = None
    i18n_versions: Table | None = None

    @property
    def tables(self) -> list[Table]:
        """All tables in creation order."""
        return [
            t for t in (self.main, self.i18n, self.versions, self.i18n_versions) if t is not None
        ]

    def expected_columns(self) -> dict[str, set[str]]:
        """Table name to column names, in the shape ``validate_schema`` expects."""
        return {table.name: {c.name for c in table.columns} for table in self.tables}


def build_topology(state: SchemaState, metadata: MetaData) -> TableTopology:
    """Derive and register the tables for ``state`` in ``metadata``.

    Args:
        state: Compiled entity description.
        metadata: Shared MetaData; every entity of a registry lives in one.

    Returns:
        ``TableTopology`` with the optional tables set to ``None`` when the
        entity has no localized fields or no versioning.
    """
    name = state.name

    main_columns: list[Column] = [
        Column("id", String(ID_LENGTH), primary_key=True, default=new_id)
    ]
    for field_name in state.non_localized_fields:
        main_columns.append(_field_column(field_name, state.fields[field_name]))
    if state.options.timestamps:
        main_columns.append(Column("created_at", DateTime(timezone=True), nullable=False))
        main_columns.append(Column("updated_at", DateTime(timezone=True), nullable=False))
    if state.options.soft_delete:
        main_columns.append(Column("deleted_at", DateTime(timezone=True), nullable=True, index=True))

    main = Table(name, metadata, *main_columns)
    topology = TableTopology(state=state, main=main)

    if state.has_i18n:
        topology.i18n = Table(
            f"{name}_i18n",
            metadata,
            Column("id", String(ID_LENGTH), primary_key=True, default=new_id),
            Column(
                "parent_id",
                String(ID_LENGTH),
                ForeignKey(f"{name}.id", ondelete="CASCADE"),
                nullable=False,
            ),
            Column("locale", String(16), nullable=False),
            *[_localized_column(f, state.fields[f]) for f in state.localized_fields],
            UniqueConstraint("parent_id", "locale", name=f"uq_{name}_i18n_parent_locale"),
        )

    if state.versioned:
        topology.versions = Table(
            f"{name}_versions",
            metadata,
            Column("version_id", String(ID_LENGTH), primary_key=True, default=new_id),
            Column("id", String(ID_LENGTH), nullable=False, index=True),
            Column("version_number", Integer, nullable=False),
            Column("version_operation", String(16), nullable=False),
            Column("version_user_id", String(255), nullable=True),
            Column("version_created_at", DateTime(timezone=True), nullable=False),
            *[
                _field_column(f, state.fields[f], snapshot=True)
                for f in state.non_localized_fields
            ],
        )

        if state.has_i18n:
            topology.i18n_versions = Table(
                f"{name}_i18n_versions",
                metadata,
                Column("id", String(ID_LENGTH), primary_key=True, default=new_id),
                Column("parent_id", String(ID_LENGTH), nullable=False, index=True),
                Column("version_number", Integer, nullable=False),
                Column("locale", String(16), nullable=False),
                *[_localized_column(f, state.fields[f]) for f in state.localized_fields],
                UniqueConstraint(
                    "parent_id",
                    "version_number",
                    "locale",
                    name=f"uq_{name}_i18n_versions_parent_version_locale",
                ),
            )

    return topology
