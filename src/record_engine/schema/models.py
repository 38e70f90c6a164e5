"""Pydantic models describing collections, globals and schema validation.

A ``SchemaState`` is the compiled, immutable description of one collection
or global: its fields, which of them are localized, its relations, options,
hooks and access rules. Everything downstream (table topology, where
compilation, CRUD) is derived from it.

Usage:
    from record_engine.schema.models import FieldSpec, OneRelation, SchemaState

    posts = SchemaState(
        name="posts",
        fields={
            "title": FieldSpec(type="text"),
            "author_id": FieldSpec(type="string", length=36),
        },
        localized={"title"},
        relations={
            "author": OneRelation(collection="users", fields=["author_id"]),
        },
        title="title",
        options={"versioning": {"max_versions": 10}, "soft_delete": True},
    )
"""

from enum import Enum
from typing import Annotated, Any, Callable, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# Columns managed by the engine on every main table
SYSTEM_COLUMNS = frozenset({"id", "created_at", "updated_at", "deleted_at"})

# Keys that may appear in records but are never stored
META_KEYS = frozenset({"_title"})


# ============================================================================
# Field Models
# ============================================================================


class FieldType(str, Enum):
    """Storage type of a declared field."""

    TEXT = "text"
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATETIME = "datetime"
    DATE = "date"
    JSON = "json"
    ARRAY = "array"


class FieldSpec(BaseModel):
    """A single declared field."""

    model_config = ConfigDict(frozen=True)

    type: FieldType = FieldType.TEXT
    nullable: bool = True
    default: Any = None
    unique: bool = False
    index: bool = False
    length: int | None = None  # Only used by "string"


# ============================================================================
# Relation Models
# ============================================================================


class RelationKind(str, Enum):
    """Closed set of relation kinds, resolved once at schema compile time."""

    ONE = "one"
    MANY = "many"
    MANY_TO_MANY = "manyToMany"
    POLYMORPHIC = "polymorphic"

    @property
    def is_plural(self) -> bool:
        return self in (RelationKind.MANY, RelationKind.MANY_TO_MANY)


class _RelationBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def relation_kind(self) -> RelationKind:
        return RelationKind(self.kind)


class OneRelation(_RelationBase):
    """Local foreign key pointing at ``references`` on ``collection``."""

    kind: Literal["one"] = "one"
    collection: str
    fields: list[str]
    references: list[str] = Field(default_factory=lambda: ["id"])
    relation_name: str | None = None

    @model_validator(mode="after")
    def _pairs_match(self) -> "OneRelation":
        if not self.fields or len(self.fields) != len(self.references):
            raise ValueError(
                "one relation needs matching, non-empty 'fields' and 'references'"
            )
        return self


class ManyRelation(_RelationBase):
    """Remote foreign key on ``collection`` pointing back at this entity.

    Without ``fields`` the foreign key is discovered from the reverse ``one``
    relation on the target (``relation_name`` or the only one pointing back).
    With ``fields`` they name the foreign key columns on the target and
    ``references`` the columns on this entity.
    """

    kind: Literal["many"] = "many"
    collection: str
    fields: list[str] = Field(default_factory=list)
    references: list[str] = Field(default_factory=lambda: ["id"])
    relation_name: str | None = None


class ManyToManyRelation(_RelationBase):
    """Junction collection ``through`` linking this entity to ``collection``."""

    kind: Literal["manyToMany"] = "manyToMany"
    collection: str
    through: str
    source_key: str = "id"
    source_field: str
    target_key: str = "id"
    target_field: str


class PolymorphicRelation(_RelationBase):
    """Discriminated pointer: ``type_field`` picks the collection, ``id_field`` the row."""

    kind: Literal["polymorphic"] = "polymorphic"
    type_field: str
    id_field: str
    collections: dict[str, str]


RelationConfig = Annotated[
    Union[OneRelation, ManyRelation, ManyToManyRelation, PolymorphicRelation],
    Field(discriminator="kind"),
]


# ============================================================================
# Options, Hooks and Access Models
# ============================================================================


class VersioningOptions(BaseModel):
    """Snapshot policy. ``max_versions`` keeps only the N most recent."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    max_versions: int | None = Field(default=None, ge=1)


class CollectionOptions(BaseModel):
    """Storage options for a collection or global."""

    model_config = ConfigDict(frozen=True)

    timestamps: bool = True
    soft_delete: bool = False
    versioning: VersioningOptions = Field(
        default_factory=lambda: VersioningOptions(enabled=False)
    )

    @field_validator("versioning", mode="before")
    @classmethod
    def _coerce_versioning(cls, value: Any) -> Any:
        if isinstance(value, bool):
            return {"enabled": value}
        if value is None:
            return {"enabled": False}
        return value


# bool -> itself, str -> role match, callable -> must return exactly True
AccessRule = Union[bool, str, Callable[..., Any], None]

HookFn = Callable[..., Any]


class FieldAccess(BaseModel):
    """Per-field read/write rules, enforced in user mode only."""

    read: AccessRule = None
    write: AccessRule = None


class AccessRules(BaseModel):
    """Operation-level rules plus per-field rules."""

    read: AccessRule = None
    create: AccessRule = None
    update: AccessRule = None
    delete: AccessRule = None
    fields: dict[str, FieldAccess] = Field(default_factory=dict)


class Hooks(BaseModel):
    """Lifecycle hooks. Each entry may be sync or async."""

    before_read: list[HookFn] = Field(default_factory=list)
    after_read: list[HookFn] = Field(default_factory=list)
    before_validate: list[HookFn] = Field(default_factory=list)
    before_change: list[HookFn] = Field(default_factory=list)
    after_change: list[HookFn] = Field(default_factory=list)
    before_update: list[HookFn] = Field(default_factory=list)
    after_update: list[HookFn] = Field(default_factory=list)
    before_delete: list[HookFn] = Field(default_factory=list)
    after_delete: list[HookFn] = Field(default_factory=list)


# ============================================================================
# Schema State
# ============================================================================


class SchemaState(BaseModel):
    """Immutable description of one collection or global."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: Literal["collection", "global"] = "collection"
    fields: dict[str, FieldSpec] = Field(default_factory=dict)
    localized: frozenset[str] = Field(default_factory=frozenset)
    relations: dict[str, RelationConfig] = Field(default_factory=dict)
    title: str | None = None
    options: CollectionOptions = Field(default_factory=CollectionOptions)
    hooks: Hooks = Field(default_factory=Hooks)
    access: AccessRules = Field(default_factory=AccessRules)

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        if not value.replace("_", "").isalnum() or not value[0].isalpha():
            raise ValueError(f"Invalid entity name '{value}': use letters, digits and '_'")
        return value

    @model_validator(mode="after")
    def _check_invariants(self) -> "SchemaState":
        unknown_localized = self.localized - set(self.fields)
        if unknown_localized:
            raise ValueError(
                f"Localized fields not declared in '{self.name}': {sorted(unknown_localized)}"
            )

        reserved = (SYSTEM_COLUMNS | META_KEYS) & set(self.fields)
        if reserved:
            raise ValueError(f"Fields use reserved names in '{self.name}': {sorted(reserved)}")

        for rel_name, relation in self.relations.items():
            if rel_name in self.fields or rel_name in SYSTEM_COLUMNS or rel_name in META_KEYS:
                raise ValueError(
                    f"Relation '{rel_name}' collides with a field in '{self.name}'"
                )
            local: list[str] = []
            if isinstance(relation, OneRelation):
                local = relation.fields
            elif isinstance(relation, PolymorphicRelation):
                local = [relation.type_field, relation.id_field]
            for column in local:
                if column not in self.fields:
                    raise ValueError(
                        f"Relation '{rel_name}' in '{self.name}' uses undeclared field '{column}'"
                    )
                if column in self.localized:
                    raise ValueError(
                        f"Relation '{rel_name}' in '{self.name}' uses localized field '{column}'"
                    )

        if self.title is not None and self.title not in self.fields:
            raise ValueError(f"Title field '{self.title}' not declared in '{self.name}'")
        return self

    # ------------------------------------------------------------------
    # Derived views
    # ------------------------------------------------------------------

    @property
    def localized_fields(self) -> list[str]:
        """Localized field names in declaration order."""
        return [name for name in self.fields if name in self.localized]

    @property
    def non_localized_fields(self) -> list[str]:
        """Non-localized field names in declaration order."""
        return [name for name in self.fields if name not in self.localized]

    @property
    def has_i18n(self) -> bool:
        return bool(self.localized)

    @property
    def versioned(self) -> bool:
        return self.options.versioning.enabled

    @property
    def soft_delete(self) -> bool:
        return self.options.soft_delete

    @property
    def system_columns(self) -> list[str]:
        """System columns present on the main table."""
        columns = ["id"]
        if self.options.timestamps:
            columns += ["created_at", "updated_at"]
        if self.options.soft_delete:
            columns.append("deleted_at")
        return columns


# ============================================================================
# Validation Result Models
# ============================================================================


class ColumnDiff(BaseModel):
    """A missing column detected during validation."""

    table: str
    column: str
    message: str = ""


class SchemaValidationResult(BaseModel):
    """Result of comparing a live database against the derived topology."""

    valid: bool
    missing_tables: list[str] = Field(default_factory=list)
    missing_columns: list[ColumnDiff] = Field(default_factory=list)
    extra_tables: list[str] = Field(default_factory=list)  # Warning only

    @property
    def error_count(self) -> int:
        """Count of critical errors (missing tables + missing columns)."""
        return len(self.missing_tables) + len(self.missing_columns)

    def format_report(self) -> str:
        """Format validation result as human-readable report."""
        if self.valid:
            return "Schema valid"

        lines = ["Schema validation failed:"]

        if self.missing_tables:
            lines.append(f"\n  Missing tables ({len(self.missing_tables)}):")
            for table in self.missing_tables:
                lines.append(f"    - {table}")

        if self.missing_columns:
            lines.append(f"\n  Missing columns ({len(self.missing_columns)}):")
            for diff in self.missing_columns:
                lines.append(f"    - {diff.table}.{diff.column}")

        if self.extra_tables:
            lines.append(f"\n  Extra tables (warning): {', '.join(self.extra_tables)}")

        return "\n".join(lines)


class ConnectionResult(BaseModel):
    """Result of ``connect_and_validate()``.

    Example:
        >>> result = ConnectionResult(success=True, profile_name="dev", schema_valid=True)
        >>> result.success
        True
    """

    success: bool
    profile_name: str | None = None
    schema_valid: bool | None = None
    schema_report: SchemaValidationResult | None = None
    error: str | None = None
