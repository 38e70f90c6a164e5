"""record-engine: declarative collections over async SQLAlchemy.

Turns ``SchemaState`` descriptions (fields, localized fields, relations,
versioning, access rules, hooks) into find/count/create/update/delete
operations with relation loading, locale fallback and version history.

Usage:
    from record_engine import AsyncDatabase, CollectionRegistry, CRUDContext
    from record_engine import SchemaState, FieldSpec, OneRelation
    from record_engine import load_engine_config, create_database
"""

__version__ = "0.1.0"

# Adapters
from record_engine.adapters.base import DatabaseClient
from record_engine.adapters.database import AsyncDatabase

# Config
from record_engine.config.loader import load_engine_config
from record_engine.config.models import DatabaseProfile, EngineConfig, LocaleSettings

# Context and errors
from record_engine.context import CRUDContext, HookContext
from record_engine.errors import (
    BadRequestError,
    ConflictError,
    EngineError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    OperationNotImplementedError,
)

# CRUD
from record_engine.crud.collection import CollectionCRUD
from record_engine.crud.globals import GlobalCRUD
from record_engine.crud.models import DeleteResult, PaginatedResult
from record_engine.crud.registry import CollectionRegistry

# Factory
from record_engine.factory import (
    ProfileNotFoundError,
    connect_and_validate,
    create_database,
    resolve_url,
)

# Realtime
from record_engine.realtime import InMemoryRealtimeNotifier, RealtimeChange, RealtimeNotifier

# Schema
from record_engine.schema.comparator import validate_schema
from record_engine.schema.models import (
    AccessRules,
    CollectionOptions,
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
    VersioningOptions,
)

# Transactions
from record_engine.transaction import flush_after_commit, on_after_commit, with_transaction

__all__ = [
    # Adapters
    "DatabaseClient",
    "AsyncDatabase",
    # Config
    "load_engine_config",
    "DatabaseProfile",
    "EngineConfig",
    "LocaleSettings",
    # Context and errors
    "CRUDContext",
    "HookContext",
    "EngineError",
    "ForbiddenError",
    "NotFoundError",
    "BadRequestError",
    "ConflictError",
    "InternalError",
    "OperationNotImplementedError",
    # CRUD
    "CollectionRegistry",
    "CollectionCRUD",
    "GlobalCRUD",
    "PaginatedResult",
    "DeleteResult",
    # Factory
    "create_database",
    "connect_and_validate",
    "ProfileNotFoundError",
    "resolve_url",
    # Realtime
    "RealtimeChange",
    "RealtimeNotifier",
    "InMemoryRealtimeNotifier",
    # Schema
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
    "validate_schema",
    # Transactions
    "with_transaction",
    "on_after_commit",
    "flush_after_commit",
]
