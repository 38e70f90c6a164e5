"""Shared fixtures: a SQLite-backed registry covering every relation kind.

Entities:
    users        - salary is readable and writable by admins only
    posts        - localized title/body, soft delete, versioning, author (one),
                   comments (many), tags (manyToMany through posts_tags)
    comments     - post (one), deletable by admins in user mode
    tags         - unique name
    posts_tags   - junction
    activities   - polymorphic subject (post or comment)
    site_settings (global) - localized tagline, keeps 3 versions
"""

from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import event

from record_engine import (
    AccessRules,
    AsyncDatabase,
    CollectionRegistry,
    CRUDContext,
    FieldAccess,
    FieldSpec,
    InMemoryRealtimeNotifier,
    LocaleSettings,
    ManyRelation,
    ManyToManyRelation,
    OneRelation,
    PolymorphicRelation,
    SchemaState,
)


def _role(ctx: Any) -> str | None:
    user = ctx.user or {}
    return user.get("role")


def posts_read_rule(ctx: Any) -> Any:
    if _role(ctx) == "admin":
        return True
    return {"status": "published"}


def posts_update_rule(ctx: Any) -> Any:
    if _role(ctx) == "admin":
        return True
    return {"author_id": (ctx.user or {}).get("id")}


SCHEMAS: list[SchemaState] = [
    SchemaState(
        name="users",
        fields={
            "name": FieldSpec(type="string"),
            "role": FieldSpec(type="string", default="editor"),
            "salary": FieldSpec(type="integer"),
        },
        relations={"posts": ManyRelation(collection="posts")},
        title="name",
        access=AccessRules(fields={"salary": FieldAccess(read="admin", write="admin")}),
    ),
    SchemaState(
        name="posts",
        fields={
            "title": FieldSpec(type="text"),
            "body": FieldSpec(type="text"),
            "status": FieldSpec(type="string", default="draft"),
            "views": FieldSpec(type="integer", default=0),
            "author_id": FieldSpec(type="string", length=36),
        },
        localized={"title", "body"},
        relations={
            "author": OneRelation(collection="users", fields=["author_id"]),
            "comments": ManyRelation(collection="comments"),
            "tags": ManyToManyRelation(
                collection="tags",
                through="posts_tags",
                source_field="post_id",
                target_field="tag_id",
            ),
        },
        title="title",
        options={"soft_delete": True, "versioning": True},
        access=AccessRules(read=posts_read_rule, update=posts_update_rule),
    ),
    SchemaState(
        name="comments",
        fields={
            "body": FieldSpec(type="text"),
            "approved": FieldSpec(type="boolean", default=False),
            "likes": FieldSpec(type="integer", default=0),
            "post_id": FieldSpec(type="string", length=36),
        },
        relations={"post": OneRelation(collection="posts", fields=["post_id"])},
        access=AccessRules(delete="admin"),
    ),
    SchemaState(
        name="tags",
        fields={"name": FieldSpec(type="string", unique=True, nullable=False)},
        title="name",
    ),
    SchemaState(
        name="posts_tags",
        fields={
            "post_id": FieldSpec(type="string", length=36, nullable=False),
            "tag_id": FieldSpec(type="string", length=36, nullable=False),
        },
    ),
    SchemaState(
        name="activities",
        fields={
            "action": FieldSpec(type="string"),
            "subject_type": FieldSpec(type="string"),
            "subject_id": FieldSpec(type="string", length=36),
        },
        relations={
            "subject": PolymorphicRelation(
                type_field="subject_type",
                id_field="subject_id",
                collections={"post": "posts", "comment": "comments"},
            )
        },
    ),
]

SITE_SETTINGS = SchemaState(
    name="site_settings",
    kind="global",
    fields={
        "site_name": FieldSpec(type="string", default="Site"),
        "tagline": FieldSpec(type="text"),
    },
    localized={"tagline"},
    options={"versioning": {"max_versions": 3}},
)

SETTINGS = LocaleSettings(default_locale="en", locales=["en", "sk"], locale_fallback=True)


def build_registry(database: Any, notifier: Any = None) -> CollectionRegistry:
    registry = CollectionRegistry(database, config=SETTINGS, notifier=notifier)
    for state in SCHEMAS:
        registry.register_collection(state)
    registry.register_global(SITE_SETTINGS)
    return registry


@pytest.fixture
async def database(tmp_path: Path):
    """File-backed SQLite database, disposed after the test."""
    db = AsyncDatabase(f"sqlite:///{tmp_path / 'engine.db'}")
    yield db
    await db.close()


@pytest.fixture
def notifier() -> InMemoryRealtimeNotifier:
    return InMemoryRealtimeNotifier()


@pytest.fixture
async def registry(database: AsyncDatabase, notifier: InMemoryRealtimeNotifier) -> CollectionRegistry:
    """Registry with every table created."""
    registry = build_registry(database, notifier)
    await registry.create_all()
    return registry


@pytest.fixture
def offline_registry() -> CollectionRegistry:
    """Registry without a database, for statement compilation tests."""
    registry = build_registry(None)
    registry.validate()
    return registry


@pytest.fixture
def statements(database: AsyncDatabase):
    """Every SQL statement sent to the database during the test."""
    captured: list[str] = []

    def record(conn, cursor, statement, parameters, context, executemany) -> None:
        captured.append(statement)

    event.listen(database.engine.sync_engine, "before_cursor_execute", record)
    yield captured
    event.remove(database.engine.sync_engine, "before_cursor_execute", record)


@pytest.fixture
def admin() -> CRUDContext:
    return CRUDContext(user={"id": "admin-1", "role": "admin"}, access_mode="user")


@pytest.fixture
async def people(registry: CollectionRegistry) -> dict[str, dict]:
    """Two users: alice (admin) and bob (editor)."""
    users = registry.get_collection("users")
    alice = await users.create({"name": "Alice", "role": "admin", "salary": 9000})
    bob = await users.create({"name": "Bob", "role": "editor", "salary": 5000})
    return {"alice": alice, "bob": bob}
