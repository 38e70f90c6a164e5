"""Tests for version snapshots, listing and revert."""

import pytest

from record_engine import (
    BadRequestError,
    CollectionRegistry,
    CRUDContext,
    FieldSpec,
    NotFoundError,
    OperationNotImplementedError,
    SchemaState,
)

SK = CRUDContext(locale="sk")


class TestSnapshots:
    """Every mutation appends one version."""

    async def test_version_numbers_grow_by_one(self, registry: CollectionRegistry) -> None:
        posts = registry.get_collection("posts")
        post = await posts.create({"title": "v1"})
        await posts.update_by_id(post["id"], {"status": "review"})
        await posts.update_by_id(post["id"], {"status": "published"})

        versions = await posts.find_versions(post["id"])

        assert [v["version_number"] for v in versions] == [1, 2, 3]
        assert [v["version_operation"] for v in versions] == ["create", "update", "update"]
        assert [v["status"] for v in versions] == ["draft", "review", "published"]
        assert all(v["id"] == post["id"] for v in versions)

    async def test_delete_snapshots_last_state(self, registry: CollectionRegistry) -> None:
        posts = registry.get_collection("posts")
        post = await posts.create({"title": "bye", "status": "published"})

        await posts.delete_by_id(post["id"])

        versions = await posts.find_versions(post["id"])
        assert versions[-1]["version_operation"] == "delete"
        assert versions[-1]["status"] == "published"

    async def test_restore_snapshots_update(self, registry: CollectionRegistry) -> None:
        posts = registry.get_collection("posts")
        post = await posts.create({"title": "back"})
        await posts.delete_by_id(post["id"])
        await posts.restore_by_id(post["id"])

        versions = await posts.find_versions(post["id"])
        assert [v["version_operation"] for v in versions] == ["create", "delete", "update"]

    async def test_user_id_recorded(self, registry: CollectionRegistry, admin: CRUDContext) -> None:
        posts = registry.get_collection("posts")
        post = await posts.create({"title": "x"}, context=admin)

        versions = await posts.find_versions(post["id"])
        assert versions[0]["version_user_id"] == "admin-1"

    async def test_limit_and_offset(self, registry: CollectionRegistry) -> None:
        posts = registry.get_collection("posts")
        post = await posts.create({"title": "x"})
        for views in range(1, 4):
            await posts.update_by_id(post["id"], {"views": views})

        versions = await posts.find_versions(post["id"], limit=2, offset=1)
        assert [v["version_number"] for v in versions] == [2, 3]


class TestLocalizedVersions:
    """Localized fields are snapshotted per locale."""

    async def test_versions_read_in_requested_locale(self, registry: CollectionRegistry) -> None:
        posts = registry.get_collection("posts")
        post = await posts.create({"title": "Hello"})
        await posts.update_by_id(post["id"], {"title": "Ahoj"}, context=SK)

        en = await posts.find_versions(post["id"])
        sk = await posts.find_versions(post["id"], context=SK)

        assert [v["title"] for v in en] == ["Hello", "Hello"]
        # v1 has no Slovak row yet and falls back to English
        assert [v["title"] for v in sk] == ["Hello", "Ahoj"]

    async def test_revert_replaces_only_current_locale(self, registry: CollectionRegistry) -> None:
        posts = registry.get_collection("posts")
        post = await posts.create({"title": "Hello"})  # v1
        await posts.update_by_id(post["id"], {"title": "Ahoj"}, context=SK)  # v2
        await posts.update_by_id(post["id"], {"title": "Hello again"})  # v3
        await posts.update_by_id(post["id"], {"title": "Ahoj znova"}, context=SK)  # v4

        reverted = await posts.revert_to_version(post["id"], version=2, context=SK)

        assert reverted["title"] == "Ahoj"
        en = await posts.find_one(where={"id": post["id"]})
        assert en["title"] == "Hello again"

        versions = await posts.find_versions(post["id"], context=SK)
        assert [v["version_number"] for v in versions] == [1, 2, 3, 4, 5]
        assert versions[-1]["version_operation"] == "update"
        assert versions[-1]["title"] == "Ahoj"

    async def test_revert_by_version_id(self, registry: CollectionRegistry) -> None:
        posts = registry.get_collection("posts")
        post = await posts.create({"title": "x", "status": "draft"})
        await posts.update_by_id(post["id"], {"status": "published"})
        first = (await posts.find_versions(post["id"]))[0]

        reverted = await posts.revert_to_version(post["id"], version_id=first["version_id"])

        assert reverted["status"] == "draft"
        history = await posts.find_versions(post["id"])
        assert [v["status"] for v in history] == ["draft", "published", "draft"]


class TestRevertErrors:
    """Selector validation and missing targets."""

    @pytest.mark.parametrize(
        "selector",
        [
            {},
            {"version": 1, "version_id": "abc"},
            {"version": 0},
            {"version": True},
            {"version": "1"},
            {"version_id": ""},
        ],
    )
    async def test_bad_selector(self, registry: CollectionRegistry, selector: dict) -> None:
        posts = registry.get_collection("posts")
        post = await posts.create({"title": "x"})
        with pytest.raises(BadRequestError):
            await posts.revert_to_version(post["id"], **selector)

    async def test_missing_version(self, registry: CollectionRegistry) -> None:
        posts = registry.get_collection("posts")
        post = await posts.create({"title": "x"})
        with pytest.raises(NotFoundError, match="version"):
            await posts.revert_to_version(post["id"], version=99)

    async def test_missing_record(self, registry: CollectionRegistry) -> None:
        with pytest.raises(NotFoundError):
            await registry.get_collection("posts").revert_to_version("missing", version=1)

    async def test_unversioned_collection(self, registry: CollectionRegistry) -> None:
        comments = registry.get_collection("comments")
        comment = await comments.create({"body": "x"})

        with pytest.raises(OperationNotImplementedError):
            await comments.find_versions(comment["id"])
        with pytest.raises(OperationNotImplementedError):
            await comments.revert_to_version(comment["id"], version=1)


class TestPruning:
    """max_versions keeps only the newest snapshots."""

    async def test_oldest_versions_pruned(self, database) -> None:
        registry = CollectionRegistry(database)
        pages = registry.register_collection(
            SchemaState(
                name="pages",
                fields={"heading": FieldSpec(), "position": FieldSpec(type="integer")},
                localized={"heading"},
                options={"versioning": {"max_versions": 2}},
            )
        )
        await registry.create_all()
        page = await pages.create({"heading": "a", "position": 1})
        await pages.update_by_id(page["id"], {"heading": "b"})
        await pages.update_by_id(page["id"], {"heading": "c"})

        versions = await pages.find_versions(page["id"])

        assert [v["version_number"] for v in versions] == [2, 3]
        assert [v["heading"] for v in versions] == ["b", "c"]
        i18n_versions = registry.topology("pages").i18n_versions
        async with database.connection() as conn:
            numbers = (await conn.execute(i18n_versions.select())).mappings().all()
        assert sorted(row["version_number"] for row in numbers) == [2, 3]
