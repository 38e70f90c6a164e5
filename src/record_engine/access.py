"""Row-level and field-level authorization.

Rules are evaluated in this order:

- ``None``: no rule, allowed
- ``bool``: allowed or denied outright
- ``str``: allowed when it equals the caller's ``role``
- callable (sync or async): receives an ``AccessRuleContext`` and permits
  only by returning exactly ``True``. A returned ``dict`` is an access
  filter (same shape as a where clause) restricting which rows the caller
  may touch. Anything else denies.

System mode bypasses every rule.
"""

import logging
from dataclasses import dataclass
from typing import Any

from record_engine.context import CRUDContext, get_attr, maybe_await
from record_engine.errors import BadRequestError, ForbiddenError
from record_engine.schema.models import AccessRule, SchemaState

logger = logging.getLogger(__name__)

# Never stripped by field read rules
ALWAYS_READABLE = frozenset({"id", "_title", "created_at", "updated_at", "deleted_at"})

AccessResult = bool | dict[str, Any]


@dataclass
class AccessRuleContext:
    """Argument passed to callable access rules."""

    operation: str
    user: Any = None
    session: Any = None
    row: dict[str, Any] | None = None
    input: dict[str, Any] | None = None
    db: Any = None
    locale: str | None = None


class AccessControl:
    """Evaluates the access rules of one entity."""

    def __init__(self, state: SchemaState) -> None:
        self._state = state

    async def evaluate(
        self,
        rule: AccessRule,
        context: CRUDContext,
        operation: str,
        row: dict[str, Any] | None = None,
        input: dict[str, Any] | None = None,
    ) -> AccessResult:
        """Evaluate a single rule without the system-mode bypass."""
        if rule is None:
            return True
        if isinstance(rule, bool):
            return rule
        if isinstance(rule, str):
            return get_attr(context.current_user, "role") == rule
        if callable(rule):
            result = await maybe_await(
                rule(
                    AccessRuleContext(
                        operation=operation,
                        user=context.current_user,
                        session=context.session,
                        row=row,
                        input=input,
                        db=context.db,
                        locale=context.locale,
                    )
                )
            )
            if result is True:
                return True
            if isinstance(result, dict):
                return result
            return False
        return False

    async def authorize(
        self,
        operation: str,
        context: CRUDContext,
        row: dict[str, Any] | None = None,
        input: dict[str, Any] | None = None,
    ) -> AccessResult:
        """Evaluate the operation rule (``read``, ``create``, ``update``, ``delete``).

        Returns:
            ``True``, ``False``, or an access filter dict.
        """
        if context.is_system:
            return True
        rule = getattr(self._state.access, operation)
        return await self.evaluate(rule, context, operation, row=row, input=input)

    async def require(
        self,
        operation: str,
        context: CRUDContext,
        row: dict[str, Any] | None = None,
        input: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Authorize or raise.

        When the rule returns a filter and a ``row`` (or, for create, the
        ``input``) is given, that record must satisfy it.

        Returns:
            The access filter for query-time use, or ``None``.

        Raises:
            ForbiddenError: When access is denied.
        """
        result = await self.authorize(operation, context, row=row, input=input)
        if result is False:
            logger.debug(f"Denied {operation} on {self._state.name}")
            raise ForbiddenError(
                f"Cannot {operation} {self._state.name}: access denied",
                operation=operation,
                resource=self._state.name,
                reason="rule denied",
            )
        if isinstance(result, dict):
            target = row if row is not None else input
            if target is not None and not matches_conditions(result, target):
                raise ForbiddenError(
                    f"Cannot {operation} {self._state.name}: record does not match access conditions",
                    operation=operation,
                    resource=self._state.name,
                    reason="conditions not met",
                )
            return result
        return None

    async def filter_readable_fields(
        self, row: dict[str, Any], context: CRUDContext
    ) -> dict[str, Any]:
        """Delete fields the caller may not read. Mutates and returns ``row``."""
        if context.is_system:
            return row
        for field_name, rules in self._state.access.fields.items():
            if field_name in ALWAYS_READABLE or rules.read is None or field_name not in row:
                continue
            allowed = await self.evaluate(rules.read, context, "read", row=row)
            if allowed is not True:
                del row[field_name]
        return row

    async def validate_writeable_fields(
        self,
        input: dict[str, Any],
        context: CRUDContext,
        operation: str,
        row: dict[str, Any] | None = None,
    ) -> None:
        """Raise on the first field the caller may not write.

        Raises:
            ForbiddenError: Naming the offending field; nothing is applied.
        """
        if context.is_system:
            return
        for field_name in input:
            rules = self._state.access.fields.get(field_name)
            if rules is None or rules.write is None:
                continue
            allowed = await self.evaluate(rules.write, context, operation, row=row, input=input)
            if allowed is not True:
                raise ForbiddenError(
                    f"Cannot write field '{field_name}': access denied",
                    operation=operation,
                    resource=self._state.name,
                    field=field_name,
                )


def merge_where(
    where: dict[str, Any] | None, access_where: dict[str, Any] | None
) -> dict[str, Any] | None:
    """Combine a caller filter with an access filter."""
    if where and access_where:
        return {"AND": [where, access_where]}
    return where or access_where


def matches_conditions(conditions: dict[str, Any], record: dict[str, Any]) -> bool:
    """Check an in-memory record against an access filter.

    Supports ``AND``/``OR``/``NOT``, scalar equality and the comparison
    operators ``eq, ne, in, notIn, gt, gte, lt, lte, isNull, isNotNull``.
    """
    for key, expected in conditions.items():
        if key == "AND":
            if not all(matches_conditions(c, record) for c in expected):
                return False
        elif key == "OR":
            if expected and not any(matches_conditions(c, record) for c in expected):
                return False
        elif key == "NOT":
            if matches_conditions(expected, record):
                return False
        elif isinstance(expected, dict):
            actual = record.get(key)
            for op, value in expected.items():
                if not _match_operator(op, actual, value):
                    return False
        elif record.get(key) != expected:
            return False
    return True


def _match_operator(op: str, actual: Any, value: Any) -> bool:
    if op == "eq":
        return actual == value
    if op in ("ne", "not"):
        return actual != value
    if op == "in":
        return actual in value
    if op == "notIn":
        return actual not in value
    if op == "isNull":
        return (actual is None) == bool(value)
    if op == "isNotNull":
        return (actual is not None) == bool(value)
    if op in ("gt", "gte", "lt", "lte"):
        if actual is None or value is None:
            return False
        if op == "gt":
            return actual > value
        if op == "gte":
            return actual >= value
        if op == "lt":
            return actual < value
        return actual <= value
    raise BadRequestError(f"Unsupported operator in access conditions: '{op}'")
