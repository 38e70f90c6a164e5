"""Tests for operation rules, access filters and field-level rules."""

import pytest

from record_engine import (
    AccessRules,
    CollectionRegistry,
    CRUDContext,
    FieldAccess,
    FieldSpec,
    ForbiddenError,
    SchemaState,
)
from record_engine.access import AccessControl, matches_conditions, merge_where
from record_engine.errors import BadRequestError


def _user(person: dict) -> CRUDContext:
    return CRUDContext(user={"id": person["id"], "role": person["role"]}, access_mode="user")


# ============================================================================
# Rule evaluation
# ============================================================================


class TestEvaluate:
    """AccessControl.evaluate over each rule form."""

    @pytest.fixture
    def control(self) -> AccessControl:
        return AccessControl(SchemaState(name="things", fields={"x": FieldSpec()}))

    @pytest.fixture
    def editor(self) -> CRUDContext:
        return CRUDContext(user={"id": "u1", "role": "editor"}, access_mode="user")

    async def test_none_and_bool(self, control: AccessControl, editor: CRUDContext) -> None:
        assert await control.evaluate(None, editor, "read") is True
        assert await control.evaluate(True, editor, "read") is True
        assert await control.evaluate(False, editor, "read") is False

    async def test_role_string(self, control: AccessControl, editor: CRUDContext) -> None:
        assert await control.evaluate("editor", editor, "read") is True
        assert await control.evaluate("admin", editor, "read") is False

    async def test_role_from_session(self, control: AccessControl) -> None:
        ctx = CRUDContext(session={"user": {"role": "admin"}}, access_mode="user")
        assert await control.evaluate("admin", ctx, "read") is True

    async def test_callable_must_return_exactly_true(
        self, control: AccessControl, editor: CRUDContext
    ) -> None:
        """Truthy values other than True deny."""
        assert await control.evaluate(lambda ctx: True, editor, "read") is True
        assert await control.evaluate(lambda ctx: 1, editor, "read") is False
        assert await control.evaluate(lambda ctx: "yes", editor, "read") is False
        assert await control.evaluate(lambda ctx: None, editor, "read") is False

    async def test_callable_returning_filter(self, control: AccessControl, editor: CRUDContext) -> None:
        result = await control.evaluate(lambda ctx: {"owner": ctx.user["id"]}, editor, "read")
        assert result == {"owner": "u1"}

    async def test_async_callable_receives_context(
        self, control: AccessControl, editor: CRUDContext
    ) -> None:
        seen = {}

        async def rule(ctx) -> bool:
            seen.update(operation=ctx.operation, row=ctx.row, input=ctx.input)
            return True

        assert await control.evaluate(rule, editor, "update", row={"x": 1}, input={"x": 2}) is True
        assert seen == {"operation": "update", "row": {"x": 1}, "input": {"x": 2}}

    async def test_system_mode_bypasses(self) -> None:
        control = AccessControl(
            SchemaState(name="things", fields={"x": FieldSpec()}, access=AccessRules(read=False))
        )
        assert await control.authorize("read", CRUDContext()) is True
        assert await control.authorize("read", CRUDContext(access_mode="user")) is False

    async def test_require_checks_row_against_filter(self, editor: CRUDContext) -> None:
        control = AccessControl(
            SchemaState(
                name="things",
                fields={"owner": FieldSpec()},
                access=AccessRules(update=lambda ctx: {"owner": ctx.user["id"]}),
            )
        )

        assert await control.require("update", editor) == {"owner": "u1"}
        assert await control.require("update", editor, row={"owner": "u1"}) == {"owner": "u1"}
        with pytest.raises(ForbiddenError) as exc_info:
            await control.require("update", editor, row={"owner": "u2"})
        assert exc_info.value.operation == "update"
        assert exc_info.value.resource == "things"


class TestMatchesConditions:
    """In-memory evaluation of access filters."""

    def test_scalars_and_logic(self) -> None:
        record = {"status": "published", "views": 10, "owner": None}

        assert matches_conditions({"status": "published"}, record)
        assert not matches_conditions({"status": "draft"}, record)
        assert matches_conditions({"OR": [{"status": "draft"}, {"views": 10}]}, record)
        assert matches_conditions({"AND": [{"status": "published"}, {"views": 10}]}, record)
        assert not matches_conditions({"NOT": {"status": "published"}}, record)

    def test_operators(self) -> None:
        record = {"views": 10, "owner": None, "tag": "a"}

        assert matches_conditions({"views": {"gt": 5, "lte": 10}}, record)
        assert not matches_conditions({"views": {"lt": 10}}, record)
        assert matches_conditions({"tag": {"in": ["a", "b"]}}, record)
        assert matches_conditions({"tag": {"notIn": ["c"]}}, record)
        assert matches_conditions({"owner": {"isNull": True}}, record)
        assert matches_conditions({"tag": {"isNotNull": True}}, record)
        assert not matches_conditions({"owner": {"gt": 1}}, record)
        assert matches_conditions({"tag": {"ne": "b"}}, record)

    def test_unknown_operator(self) -> None:
        with pytest.raises(BadRequestError):
            matches_conditions({"tag": {"contains": "a"}}, {"tag": "abc"})

    def test_merge_where(self) -> None:
        assert merge_where(None, None) is None
        assert merge_where({"a": 1}, None) == {"a": 1}
        assert merge_where(None, {"b": 2}) == {"b": 2}
        assert merge_where({"a": 1}, {"b": 2}) == {"AND": [{"a": 1}, {"b": 2}]}


# ============================================================================
# Enforcement through CRUD
# ============================================================================


class TestFieldRules:
    """Field read and write rules on users.salary."""

    async def test_salary_hidden_from_editor(self, registry: CollectionRegistry, people: dict) -> None:
        users = registry.get_collection("users")

        as_editor = await users.find(context=_user(people["bob"]))
        as_admin = await users.find(context=_user(people["alice"]))
        as_system = await users.find()

        assert all("salary" not in d for d in as_editor.docs)
        assert all("salary" in d for d in as_admin.docs)
        assert sorted(d["salary"] for d in as_system.docs) == [5000, 9000]

    async def test_salary_write_denied_for_editor(
        self, registry: CollectionRegistry, people: dict
    ) -> None:
        users = registry.get_collection("users")
        bob = people["bob"]

        with pytest.raises(ForbiddenError) as exc_info:
            await users.update_by_id(bob["id"], {"salary": 1, "name": "Robert"}, context=_user(bob))

        assert exc_info.value.field == "salary"
        assert exc_info.value.to_dict()["context"]["field"] == "salary"
        unchanged = await users.find_one(where={"id": bob["id"]})
        assert unchanged["salary"] == 5000
        assert unchanged["name"] == "Bob"

    async def test_salary_write_allowed_for_admin(
        self, registry: CollectionRegistry, people: dict
    ) -> None:
        users = registry.get_collection("users")

        updated = await users.update_by_id(
            people["bob"]["id"], {"salary": 6000}, context=_user(people["alice"])
        )

        assert updated["salary"] == 6000

    async def test_field_rule_on_create(self, registry: CollectionRegistry, people: dict) -> None:
        users = registry.get_collection("users")
        with pytest.raises(ForbiddenError):
            await users.create({"name": "Mallory", "salary": 1}, context=_user(people["bob"]))
        assert await users.count() == 2


class TestOperationRules:
    """Operation rules on posts and comments."""

    async def test_read_filter_restricts_editor(self, registry: CollectionRegistry, people: dict) -> None:
        posts = registry.get_collection("posts")
        await posts.create({"title": "public", "status": "published"})
        await posts.create({"title": "private"})

        as_editor = await posts.find(context=_user(people["bob"]))
        as_admin = await posts.find(context=_user(people["alice"]))

        assert [d["title"] for d in as_editor.docs] == ["public"]
        assert as_editor.total_docs == 1
        assert as_admin.total_docs == 2
        assert await posts.count(context=_user(people["bob"])) == 1

    async def test_update_filter_limits_to_own_posts(
        self, registry: CollectionRegistry, people: dict
    ) -> None:
        posts = registry.get_collection("posts")
        bob = people["bob"]
        own = await posts.create({"title": "mine", "author": bob["id"]})
        other = await posts.create({"title": "theirs", "author": people["alice"]["id"]})

        updated = await posts.update_by_id(own["id"], {"views": 1}, context=_user(bob))
        assert updated["views"] == 1

        with pytest.raises(ForbiddenError):
            await posts.update_by_id(other["id"], {"views": 1}, context=_user(bob))

    async def test_bulk_update_only_touches_permitted_rows(
        self, registry: CollectionRegistry, people: dict
    ) -> None:
        posts = registry.get_collection("posts")
        bob = people["bob"]
        await posts.create({"title": "mine", "author": bob["id"]})
        await posts.create({"title": "theirs", "author": people["alice"]["id"]})

        updated = await posts.update(None, {"views": 5}, context=_user(bob))

        assert [row["author_id"] for row in updated] == [bob["id"]]
        assert await posts.count(where={"views": 5}) == 1

    async def test_delete_requires_admin(
        self, registry: CollectionRegistry, people: dict, admin: CRUDContext
    ) -> None:
        comments = registry.get_collection("comments")
        comment = await comments.create({"body": "spam"})

        with pytest.raises(ForbiddenError):
            await comments.delete_by_id(comment["id"], context=_user(people["bob"]))
        with pytest.raises(ForbiddenError):
            await comments.delete({"body": "spam"}, context=_user(people["bob"]))
        assert await comments.count() == 1

        result = await comments.delete_by_id(comment["id"], context=admin)
        assert result.success is True

    async def test_system_mode_bypasses_rules(self, registry: CollectionRegistry) -> None:
        comments = registry.get_collection("comments")
        comment = await comments.create({"body": "spam"})

        result = await comments.delete_by_id(comment["id"], context=CRUDContext())

        assert result.count == 1

    async def test_create_rule_checks_input(self, database) -> None:
        registry = CollectionRegistry(database)
        drafts = registry.register_collection(
            SchemaState(
                name="drafts",
                fields={"owner": FieldSpec(type="string"), "secret": FieldSpec()},
                access=AccessRules(
                    create=lambda ctx: {"owner": ctx.user["id"]},
                    fields={"secret": FieldAccess(read=False)},
                ),
            )
        )
        await registry.create_all()
        ctx = CRUDContext(user={"id": "u1"}, access_mode="user")

        created = await drafts.create({"owner": "u1", "secret": "s"}, context=ctx)
        assert "secret" not in created

        with pytest.raises(ForbiddenError):
            await drafts.create({"owner": "u2"}, context=ctx)


class TestGlobalReadRules:
    """A read filter on a global is checked against its stored record."""

    @pytest.fixture
    async def secrets(self, database):
        registry = CollectionRegistry(database)
        secrets = registry.register_global(
            SchemaState(
                name="secrets",
                kind="global",
                fields={"visibility": FieldSpec(type="string"), "code": FieldSpec(type="string")},
                options={"versioning": True},
                access=AccessRules(read=lambda ctx: {"visibility": "public"}),
            )
        )
        await registry.create_all()
        return secrets

    async def test_record_outside_filter_denied(self, secrets) -> None:
        await secrets.update({"visibility": "private", "code": "s3cret"})
        ctx = CRUDContext(user={"id": "u1"}, access_mode="user")

        with pytest.raises(ForbiddenError):
            await secrets.get(context=ctx)
        with pytest.raises(ForbiddenError):
            await secrets.get(columns={"code": True}, context=ctx)
        with pytest.raises(ForbiddenError):
            await secrets.find_versions(context=ctx)

        assert (await secrets.get())["code"] == "s3cret"

    async def test_record_inside_filter_returned(self, secrets) -> None:
        await secrets.update({"visibility": "public", "code": "open"})
        ctx = CRUDContext(user={"id": "u1"}, access_mode="user")

        record = await secrets.get(context=ctx)

        assert record["code"] == "open"
        assert len(await secrets.find_versions(context=ctx)) == 1
