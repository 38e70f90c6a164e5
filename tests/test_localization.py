"""Tests for merging and splitting localized values."""

from record_engine import FieldSpec, SchemaState
from record_engine.query.localization import (
    attach_title,
    merge_localized_row,
    merge_localized_rows,
    split_localized,
)


class TestMergeLocalizedRow:
    """Requested locale first, default locale as fallback."""

    def test_requested_locale_wins(self) -> None:
        row = {"id": "p1", "_i18n_title": "Ahoj", "_i18n_fallback_title": "Hello"}

        assert merge_localized_row(row, ["title"], use_fallback=True) == {"id": "p1", "title": "Ahoj"}

    def test_fallback_when_missing(self) -> None:
        row = {"id": "p1", "_i18n_title": None, "_i18n_fallback_title": "Hello"}

        assert merge_localized_row(dict(row), ["title"], use_fallback=True)["title"] == "Hello"
        assert merge_localized_row(dict(row), ["title"], use_fallback=False)["title"] is None

    def test_unselected_field_left_out(self) -> None:
        row = {"id": "p1", "_i18n_title": "Hello"}

        merged = merge_localized_row(row, ["title", "body"], use_fallback=True)

        assert merged == {"id": "p1", "title": "Hello"}

    def test_rows(self) -> None:
        rows = [{"_i18n_title": "a"}, {"_i18n_title": None, "_i18n_fallback_title": "b"}]
        assert [r["title"] for r in merge_localized_rows(rows, ["title"], True)] == ["a", "b"]


def test_split_localized() -> None:
    plain, translated = split_localized(
        {"title": "Hi", "status": "draft", "body": None}, {"title", "body"}
    )

    assert plain == {"status": "draft"}
    assert translated == {"title": "Hi", "body": None}


def test_attach_title() -> None:
    titled = SchemaState(name="posts", fields={"title": FieldSpec()}, title="title")
    untitled = SchemaState(name="logs", fields={"line": FieldSpec()})

    assert attach_title({"id": "p1", "title": "Hi"}, titled)["_title"] == "Hi"
    assert attach_title({"id": "p1", "title": None}, titled)["_title"] == "p1"
    assert attach_title({"id": "l1", "line": "x"}, untitled)["_title"] == "l1"
