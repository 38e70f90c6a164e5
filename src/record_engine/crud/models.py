"""Result models returned by CRUD operations."""

from typing import Any

from pydantic import BaseModel, Field


class PaginatedResult(BaseModel):
    """A page of records plus paging metadata."""

    docs: list[dict[str, Any]] = Field(default_factory=list)
    total_docs: int = 0
    limit: int = 0
    total_pages: int = 1
    page: int = 1
    paging_counter: int = 1
    has_prev_page: bool = False
    has_next_page: bool = False
    prev_page: int | None = None
    next_page: int | None = None

    @classmethod
    def build(
        cls, docs: list[dict[str, Any]], total: int, limit: int | None, offset: int | None
    ) -> "PaginatedResult":
        """Compute paging fields; ``limit`` defaults to the total."""
        offset = offset or 0
        effective_limit = limit if limit is not None else total
        if effective_limit > 0:
            total_pages = max(1, -(-total // effective_limit))
            page = offset // effective_limit + 1
        else:
            total_pages = 1
            page = 1
        has_prev = page > 1
        has_next = page < total_pages
        return cls(
            docs=docs,
            total_docs=total,
            limit=effective_limit,
            total_pages=total_pages,
            page=page,
            paging_counter=offset + 1,
            has_prev_page=has_prev,
            has_next_page=has_next,
            prev_page=page - 1 if has_prev else None,
            next_page=page + 1 if has_next else None,
        )


class DeleteResult(BaseModel):
    """Outcome of a delete."""

    success: bool
    count: int = 0
    data: dict[str, Any] | None = None  # The deleted record for delete_by_id
