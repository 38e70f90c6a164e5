"""Per-call context and hook plumbing.

``CRUDContext`` travels with every operation: who is calling, which locale
is requested, whether authorization is enforced, and optionally the
connection to run on.

Usage:
    from record_engine.context import CRUDContext

    ctx = CRUDContext(user={"id": "u1", "role": "editor"}, access_mode="user", locale="sk")
    await posts.find(context=ctx)
"""

import inspect
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict

from record_engine.config.models import LocaleSettings


class CRUDContext(BaseModel):
    """Caller identity, locale and access mode for one operation.

    ``access_mode`` defaults to ``"system"``, the trusted path that skips
    every access rule; user-facing callers must pass ``"user"``.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    user: Any = None
    session: Any = None
    locale: str | None = None
    default_locale: str | None = None
    access_mode: Literal["system", "user"] = "system"
    db: Any = None  # AsyncConnection supplied by the caller
    locale_fallback: bool | None = None
    include_deleted: bool = False

    @property
    def is_system(self) -> bool:
        return self.access_mode == "system"

    @property
    def current_user(self) -> Any:
        """``user``, or the user carried by ``session``."""
        if self.user is not None:
            return self.user
        return get_attr(self.session, "user")

    @property
    def use_fallback(self) -> bool:
        """Whether the default-locale fallback join is needed."""
        return bool(self.locale_fallback) and self.locale != self.default_locale


def get_attr(obj: Any, name: str) -> Any:
    """Read ``name`` from a dict or an object, ``None`` when absent."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def normalize_context(
    context: CRUDContext | None,
    settings: LocaleSettings,
    **overrides: Any,
) -> CRUDContext:
    """Fill locale defaults from engine settings.

    Args:
        context: Caller-supplied context or ``None`` (system mode).
        settings: Engine locale settings.
        **overrides: Non-``None`` values replace fields of the context
            (``locale``, ``locale_fallback``, ``include_deleted``).

    Returns:
        A new context with ``locale``, ``default_locale`` and
        ``locale_fallback`` always set.
    """
    ctx = context or CRUDContext()
    updates = {k: v for k, v in overrides.items() if v is not None}
    default_locale = ctx.default_locale or settings.default_locale
    updates.setdefault("default_locale", default_locale)
    if "locale" not in updates:
        updates["locale"] = ctx.locale or default_locale
    if "locale_fallback" not in updates:
        updates["locale_fallback"] = (
            ctx.locale_fallback if ctx.locale_fallback is not None else settings.locale_fallback
        )
    return ctx.model_copy(update=updates)


def system_context(context: CRUDContext) -> CRUDContext:
    """Same caller and locale, authorization bypassed."""
    return context.model_copy(update={"access_mode": "system"})


# ============================================================================
# Hooks
# ============================================================================


@dataclass
class HookContext:
    """Argument passed to every lifecycle hook.

    ``input`` is the write payload and may be mutated in place; ``data`` is
    the stored (or about-to-be-returned) record.
    """

    operation: str
    data: Any = None
    input: Any = None
    original: Any = None
    user: Any = None
    session: Any = None
    locale: str | None = None
    access_mode: str = "system"
    db: Any = None

    @classmethod
    def from_context(cls, operation: str, context: CRUDContext, db: Any = None, **values: Any) -> "HookContext":
        return cls(
            operation=operation,
            user=context.current_user,
            session=context.session,
            locale=context.locale,
            access_mode=context.access_mode,
            db=db if db is not None else context.db,
            **values,
        )


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def run_hooks(hooks: list, hook_context: HookContext) -> None:
    """Run hooks in order; any exception aborts the operation."""
    for hook in hooks:
        await maybe_await(hook(hook_context))
