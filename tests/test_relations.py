"""Tests for batched relation loading and relation aggregates."""

import pytest

from record_engine import (
    AccessRules,
    BadRequestError,
    CollectionRegistry,
    CRUDContext,
    FieldAccess,
    FieldSpec,
    ManyRelation,
    OneRelation,
    SchemaState,
)


@pytest.fixture
async def blog(registry: CollectionRegistry, people: dict) -> dict:
    """Posts by alice and bob with comments and tags."""
    posts = registry.get_collection("posts")
    comments = registry.get_collection("comments")
    tags = registry.get_collection("tags")
    alice, bob = people["alice"], people["bob"]

    python = await tags.create({"name": "python"})
    sql = await tags.create({"name": "sql"})

    first = await posts.create(
        {"title": "A", "author": alice["id"], "status": "published", "tags": [sql["id"], python["id"]]}
    )
    second = await posts.create({"title": "B", "author": bob["id"], "tags": [python["id"]]})
    third = await posts.create({"title": "C", "author": alice["id"]})

    await comments.create({"body": "x", "likes": 3, "post": first["id"]})
    await comments.create({"body": "y", "likes": 4, "post": first["id"], "approved": True})
    await comments.create({"body": "z", "likes": 10, "post": second["id"]})

    return {
        "posts": [first, second, third],
        "tags": {"python": python, "sql": sql},
        **people,
    }


def _by_title(docs: list[dict]) -> dict[str, dict]:
    return {d["title"]: d for d in docs}


class TestOneRelation:
    """Singular relations load in one batched query."""

    async def test_author_batched(self, registry: CollectionRegistry, blog: dict, statements: list) -> None:
        posts = registry.get_collection("posts")
        statements.clear()

        page = await posts.find(with_={"author": True})

        docs = _by_title(page.docs)
        assert docs["A"]["author"]["name"] == "Alice"
        assert docs["B"]["author"]["name"] == "Bob"
        assert docs["C"]["author"]["name"] == "Alice"
        assert len([s for s in statements if "FROM users" in s]) == 1

    async def test_missing_foreign_key_is_none(self, registry: CollectionRegistry) -> None:
        posts = registry.get_collection("posts")
        await posts.create({"title": "orphan"})

        page = await posts.find(with_={"author": True})
        assert page.docs[0]["author"] is None

    async def test_foreign_key_hidden_when_not_selected(
        self, registry: CollectionRegistry, blog: dict
    ) -> None:
        """Join columns fetched only for matching are not returned."""
        posts = registry.get_collection("posts")

        page = await posts.find(columns={"title": True}, with_={"author": {"columns": {"name": True}}})

        for doc in page.docs:
            assert set(doc) == {"id", "title", "author"}
            assert set(doc["author"]) == {"id", "name"}

    async def test_nested_with(self, registry: CollectionRegistry, blog: dict) -> None:
        """A mapping without option keys is a nested with tree."""
        comments = registry.get_collection("comments")

        page = await comments.find(with_={"post": {"author": True}}, order_by="likes")

        assert [c["post"]["author"]["name"] for c in page.docs] == ["Alice", "Alice", "Bob"]


class TestManyRelation:
    """Plural relations through a remote foreign key."""

    async def test_children_grouped_per_parent(self, registry: CollectionRegistry, blog: dict) -> None:
        users = registry.get_collection("users")

        page = await users.find(with_={"posts": {"order_by": "title"}}, order_by="name")

        alice, bob = page.docs
        assert [p["title"] for p in alice["posts"]] == ["A", "C"]
        assert [p["title"] for p in bob["posts"]] == ["B"]

    async def test_limit_applies_per_parent(self, registry: CollectionRegistry, blog: dict) -> None:
        users = registry.get_collection("users")

        page = await users.find(
            with_={"posts": {"order_by": "-title", "limit": 1}}, order_by="name"
        )

        assert [[p["title"] for p in u["posts"]] for u in page.docs] == [["C"], ["B"]]

    async def test_relation_where(self, registry: CollectionRegistry, blog: dict) -> None:
        users = registry.get_collection("users")

        page = await users.find(
            with_={"posts": {"where": {"status": "published"}}}, order_by="name"
        )

        assert [[p["title"] for p in u["posts"]] for u in page.docs] == [["A"], []]

    async def test_soft_deleted_children_skipped(self, registry: CollectionRegistry, blog: dict) -> None:
        users = registry.get_collection("users")
        posts = registry.get_collection("posts")
        await posts.delete_by_id(blog["posts"][2]["id"])

        alice = await users.find_one(where={"name": "Alice"}, with_={"posts": True})

        assert [p["title"] for p in alice["posts"]] == ["A"]

    async def test_child_foreign_key_hidden(self, registry: CollectionRegistry, blog: dict) -> None:
        users = registry.get_collection("users")

        alice = await users.find_one(
            where={"name": "Alice"}, with_={"posts": {"columns": {"title": True}}}
        )

        assert all(set(p) == {"id", "title"} for p in alice["posts"])


class TestManyToManyRelation:
    """Plural relations through a junction collection."""

    async def test_targets_per_parent(self, registry: CollectionRegistry, blog: dict) -> None:
        posts = registry.get_collection("posts")

        docs = _by_title((await posts.find(with_={"tags": {"order_by": "name"}})).docs)

        assert [t["name"] for t in docs["A"]["tags"]] == ["python", "sql"]
        assert [t["name"] for t in docs["B"]["tags"]] == ["python"]
        assert docs["C"]["tags"] == []

    async def test_deleted_target_leaves_no_phantom(
        self, registry: CollectionRegistry, blog: dict
    ) -> None:
        """A junction row pointing at a deleted target is skipped."""
        posts = registry.get_collection("posts")
        tags = registry.get_collection("tags")
        await tags.delete_by_id(blog["tags"]["sql"]["id"])

        first = await posts.find_one(where={"title": "A"}, with_={"tags": True})

        assert [t["name"] for t in first["tags"]] == ["python"]

    async def test_reverse_filter_through_junction(self, registry: CollectionRegistry, blog: dict) -> None:
        posts = registry.get_collection("posts")

        page = await posts.find(where={"tags": {"some": {"name": "sql"}}})

        assert [p["title"] for p in page.docs] == ["A"]


class TestPolymorphicRelation:
    """Discriminated relations load one batch per mapped collection."""

    async def test_subjects_resolved_by_type(self, registry: CollectionRegistry, blog: dict) -> None:
        activities = registry.get_collection("activities")
        comments = registry.get_collection("comments")
        post = blog["posts"][0]
        comment = await comments.find_one(where={"likes": 10})

        await activities.create({"action": "liked", "subject_type": "post", "subject_id": post["id"]})
        await activities.create(
            {"action": "flagged", "subject_type": "comment", "subject_id": comment["id"]}
        )
        await activities.create({"action": "odd", "subject_type": "video", "subject_id": "v1"})

        page = await activities.find(with_={"subject": True})
        by_action = {a["action"]: a for a in page.docs}

        assert by_action["liked"]["subject"]["title"] == "A"
        assert by_action["flagged"]["subject"]["body"] == "z"
        assert by_action["odd"]["subject"] is None


class TestAggregates:
    """_count and _aggregate on plural relations."""

    async def test_count_many(self, registry: CollectionRegistry, blog: dict) -> None:
        posts = registry.get_collection("posts")

        docs = _by_title((await posts.find(with_={"comments": {"_count": True}})).docs)

        assert docs["A"]["comments"] == {"_count": 2}
        assert docs["B"]["comments"] == {"_count": 1}
        assert docs["C"]["comments"] == {"_count": 0}

    async def test_sum_and_max(self, registry: CollectionRegistry, blog: dict) -> None:
        posts = registry.get_collection("posts")

        docs = _by_title(
            (
                await posts.find(
                    with_={
                        "comments": {
                            "_aggregate": {"_sum": {"likes": True}, "_max": {"likes": True}}
                        }
                    }
                )
            ).docs
        )

        assert docs["A"]["comments"] == {"_count": 2, "_sum": {"likes": 7}, "_max": {"likes": 4}}
        assert docs["C"]["comments"] == {"_count": 0}

    async def test_aggregate_with_where(self, registry: CollectionRegistry, blog: dict) -> None:
        posts = registry.get_collection("posts")

        first = await posts.find_one(
            where={"title": "A"},
            with_={"comments": {"_count": True, "where": {"approved": True}}},
        )

        assert first["comments"] == {"_count": 1}

    async def test_count_many_to_many(self, registry: CollectionRegistry, blog: dict) -> None:
        posts = registry.get_collection("posts")
        tags = registry.get_collection("tags")
        await tags.delete_by_id(blog["tags"]["sql"]["id"])

        docs = _by_title((await posts.find(with_={"tags": {"_count": True}})).docs)

        assert docs["A"]["tags"] == {"_count": 1}
        assert docs["B"]["tags"] == {"_count": 1}
        assert docs["C"]["tags"] == {"_count": 0}

    async def test_aggregate_rejects_localized_field(self, registry: CollectionRegistry, blog: dict) -> None:
        users = registry.get_collection("users")
        with pytest.raises(BadRequestError, match="Cannot aggregate"):
            await users.find(with_={"posts": {"_aggregate": {"_min": {"title": True}}}})


class TestWithErrors:
    """Malformed with trees."""

    async def test_aggregate_on_singular_relation(self, registry: CollectionRegistry, blog: dict) -> None:
        posts = registry.get_collection("posts")
        with pytest.raises(BadRequestError, match="plural"):
            await posts.find(with_={"author": {"_count": True}})

    async def test_unknown_relation(self, registry: CollectionRegistry, blog: dict) -> None:
        posts = registry.get_collection("posts")
        with pytest.raises(BadRequestError, match="Unknown relation"):
            await posts.find(with_={"editor": True})

    async def test_unknown_option(self, registry: CollectionRegistry, blog: dict) -> None:
        posts = registry.get_collection("posts")
        with pytest.raises(BadRequestError, match="Unknown with options"):
            await posts.find(with_={"comments": {"limit": 1, "sort": "likes"}})


class TestRelationAccess:
    """Loaded relations honor the target's read rules."""

    async def test_target_read_filter_applies(self, registry: CollectionRegistry, blog: dict) -> None:
        users = registry.get_collection("users")
        editor = CRUDContext(user={"id": blog["bob"]["id"], "role": "editor"}, access_mode="user")

        page = await users.find(
            with_={"posts": {"order_by": "title"}}, order_by="name", context=editor
        )

        alice, bob = page.docs
        assert [p["title"] for p in alice["posts"]] == ["A"]
        assert bob["posts"] == []
        assert "salary" not in alice

    async def test_count_honors_read_filter(self, registry: CollectionRegistry, blog: dict) -> None:
        users = registry.get_collection("users")
        editor = CRUDContext(user={"id": blog["bob"]["id"], "role": "editor"}, access_mode="user")

        alice = await users.find_one(
            where={"name": "Alice"}, with_={"posts": {"_count": True}}, context=editor
        )

        assert alice["posts"] == {"_count": 1}


class TestProtectedJoinColumns:
    """Relations still match when a field rule hides the join column."""

    @pytest.fixture
    async def library(self, database):
        registry = CollectionRegistry(database)
        authors = registry.register_collection(
            SchemaState(
                name="authors",
                fields={"name": FieldSpec(type="string")},
                relations={"books": ManyRelation(collection="books")},
            )
        )
        books = registry.register_collection(
            SchemaState(
                name="books",
                fields={
                    "title": FieldSpec(type="string"),
                    "author_id": FieldSpec(type="string", length=36),
                },
                relations={"author": OneRelation(collection="authors", fields=["author_id"])},
                access=AccessRules(fields={"author_id": FieldAccess(read="admin")}),
            )
        )
        await registry.create_all()

        ann = await authors.create({"name": "Ann"})
        ben = await authors.create({"name": "Ben"})
        await books.create({"title": "A1", "author_id": ann["id"]})
        await books.create({"title": "A2", "author_id": ann["id"]})
        await books.create({"title": "B1", "author_id": ben["id"]})
        return registry

    @pytest.fixture
    def editor(self) -> CRUDContext:
        return CRUDContext(user={"id": "u1", "role": "editor"}, access_mode="user")

    async def test_many_groups_by_hidden_foreign_key(
        self, library: CollectionRegistry, editor: CRUDContext
    ) -> None:
        authors = library.get_collection("authors")

        page = await authors.find(
            with_={"books": {"order_by": "title"}}, order_by="name", context=editor
        )
        counts = await authors.find(with_={"books": {"_count": True}}, order_by="name", context=editor)

        ann, ben = page.docs
        assert [b["title"] for b in ann["books"]] == ["A1", "A2"]
        assert [b["title"] for b in ben["books"]] == ["B1"]
        assert all("author_id" not in b for b in ann["books"] + ben["books"])
        assert [d["books"] for d in counts.docs] == [{"_count": 2}, {"_count": 1}]

    async def test_many_keeps_foreign_key_for_admin(self, library: CollectionRegistry) -> None:
        authors = library.get_collection("authors")
        admin = CRUDContext(user={"id": "a1", "role": "admin"}, access_mode="user")

        ann = await authors.find_one(where={"name": "Ann"}, with_={"books": True}, context=admin)

        assert {b["author_id"] for b in ann["books"]} == {ann["id"]}

    async def test_one_resolves_through_hidden_column(
        self, library: CollectionRegistry, editor: CRUDContext
    ) -> None:
        books = library.get_collection("books")

        page = await books.find(with_={"author": True}, order_by="title", context=editor)

        assert [d["author"]["name"] for d in page.docs] == ["Ann", "Ann", "Ben"]
        assert all("author_id" not in d for d in page.docs)
