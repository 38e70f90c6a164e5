"""Entity descriptions, physical table topology, and live schema validation.

Usage:
    from record_engine.schema import SchemaState, FieldSpec, build_topology
    from record_engine.schema import validate_schema, SchemaIntrospector
"""

from record_engine.schema.comparator import collect_expected_columns, validate_schema
from record_engine.schema.introspector import SchemaIntrospector
from record_engine.schema.models import (
    AccessRules,
    CollectionOptions,
    ColumnDiff,
    ConnectionResult,
    FieldAccess,
    FieldSpec,
    FieldType,
    Hooks,
    ManyRelation,
    ManyToManyRelation,
    OneRelation,
    PolymorphicRelation,
    RelationKind,
    SchemaState,
    SchemaValidationResult,
    VersioningOptions,
)
from record_engine.schema.topology import TableTopology, build_topology

__all__ = [
    "SchemaState",
    "FieldSpec",
    "FieldType",
    "FieldAccess",
    "AccessRules",
    "Hooks",
    "CollectionOptions",
    "VersioningOptions",
    "RelationKind",
    "OneRelation",
    "ManyRelation",
    "ManyToManyRelation",
    "PolymorphicRelation",
    "TableTopology",
    "build_topology",
    "validate_schema",
    "collect_expected_columns",
    "SchemaIntrospector",
    "SchemaValidationResult",
    "ColumnDiff",
    "ConnectionResult",
]
