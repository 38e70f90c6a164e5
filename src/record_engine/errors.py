"""Error taxonomy raised by CRUD operations.

Every error carries a machine-readable ``code`` and the HTTP ``status`` a
transport layer would map it to. The engine itself never maps errors to
responses; callers do.

Usage:
    from record_engine.errors import ForbiddenError, NotFoundError

    try:
        await posts.update_by_id(post_id, {"salary": 1}, context=ctx)
    except ForbiddenError as e:
        print(e.field)  # "salary"
"""

from typing import Any

from sqlalchemy.exc import IntegrityError


class EngineError(Exception):
    """Base class for all record-engine errors."""

    code: str = "INTERNAL"
    status: int = 500

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = self.context
        return payload


class ForbiddenError(EngineError):
    """Authorization denied.

    Carries the denied ``field`` for field-level write violations.
    """

    code = "FORBIDDEN"
    status = 403

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        resource: str | None = None,
        field: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(
            message, operation=operation, resource=resource, field=field, reason=reason
        )
        self.operation = operation
        self.resource = resource
        self.field = field


class NotFoundError(EngineError):
    """Entity, version or registry entry absent."""

    code = "NOT_FOUND"
    status = 404

    def __init__(self, resource: str, identifier: Any = None) -> None:
        message = (
            f"{resource} not found: {identifier}"
            if identifier is not None
            else f"{resource} not found"
        )
        super().__init__(message, resource=resource, id=identifier)
        self.resource = resource
        self.identifier = identifier


class BadRequestError(EngineError):
    """Malformed input: unknown keys, bad selectors, missing relation targets."""

    code = "BAD_REQUEST"
    status = 400


class ConflictError(EngineError):
    """Unique constraint violated."""

    code = "CONFLICT"
    status = 409


class InternalError(EngineError):
    """Invariant violation inside the engine."""

    code = "INTERNAL"
    status = 500


class OperationNotImplementedError(EngineError):
    """Operation requested on an entity without the required option enabled."""

    code = "NOT_IMPLEMENTED"
    status = 501


# PostgreSQL SQLSTATE codes for integrity violations
_PG_UNIQUE_VIOLATION = "23505"
_PG_FOREIGN_KEY_VIOLATION = "23503"
_PG_NOT_NULL_VIOLATION = "23502"
_PG_CHECK_VIOLATION = "23514"


def translate_database_error(exc: IntegrityError) -> EngineError:
    """Map a SQLAlchemy ``IntegrityError`` to an engine error.

    PostgreSQL drivers expose a SQLSTATE (``pgcode`` on psycopg,
    ``sqlstate`` on asyncpg); SQLite only reports a message, so both are
    checked.

    Args:
        exc: The integrity error raised by the driver.

    Returns:
        ``ConflictError`` for unique violations, ``BadRequestError`` for
        foreign key, not-null and check violations, ``InternalError``
        otherwise.
    """
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    text = str(orig).lower()

    if code == _PG_UNIQUE_VIOLATION or "unique constraint" in text or "duplicate key" in text:
        return ConflictError(f"Unique constraint violated: {orig}")
    if code == _PG_FOREIGN_KEY_VIOLATION or "foreign key constraint" in text:
        return BadRequestError(f"Foreign key constraint violated: {orig}")
    if code == _PG_NOT_NULL_VIOLATION or "not null constraint" in text or "not-null constraint" in text:
        return BadRequestError(f"Required value missing: {orig}")
    if code == _PG_CHECK_VIOLATION or "check constraint" in text:
        return BadRequestError(f"Check constraint violated: {orig}")
    return InternalError(f"Database integrity error: {orig}")
