"""Transaction scope shared by nested CRUD calls.

A write operation opens one transaction; every CRUD call made while it is
open (hooks, nested relation mutations) joins it instead of opening its
own. The current transaction lives in a ``ContextVar`` so it follows the
calling task across ``await`` points.

Usage:
    from record_engine.transaction import on_after_commit, with_transaction

    async def write(conn):
        await conn.execute(insert(table).values(...))
        await on_after_commit(lambda: notifier.publish(change))

    await with_transaction(database, write, context)

When ``context.db`` is a connection already inside a transaction the
caller owns, the callbacks wait for that transaction instead. They are
dropped if it rolls back; once it commits, the caller runs them:

    async with conn.begin():
        await posts.create(data, context=CRUDContext(db=conn))
    await flush_after_commit(conn)
"""

import logging
from collections.abc import Awaitable, Callable
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection

from record_engine.errors import translate_database_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

AfterCommitCallback = Callable[[], Awaitable[Any]]

PENDING_KEY = "record_engine_pending_after_commit"
COMMITTED_KEY = "record_engine_committed_after_commit"


@dataclass
class _TransactionState:
    connection: AsyncConnection
    after_commit: list[AfterCommitCallback] = field(default_factory=list)


_current: ContextVar[_TransactionState | None] = ContextVar(
    "record_engine_transaction", default=None
)


def current_connection() -> AsyncConnection | None:
    """Connection of the enclosing transaction, if any."""
    state = _current.get()
    return state.connection if state is not None else None


def in_transaction() -> bool:
    return _current.get() is not None


async def with_transaction(
    database: Any,
    fn: Callable[[AsyncConnection], Awaitable[T]],
    context: Any = None,
) -> T:
    """Run ``fn`` inside a transaction, joining the enclosing one if present.

    Only the outermost call commits. After-commit callbacks queued by any
    nested call run once the outermost transaction has committed; they are
    discarded on rollback. Inside a transaction the caller owns they are
    left for ``flush_after_commit``.

    Args:
        database: ``DatabaseClient`` providing the engine.
        fn: Coroutine function receiving the transaction's connection.
        context: Optional ``CRUDContext``; a connection in ``context.db``
            is used instead of a pooled one.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        ConflictError: On unique violations.
        BadRequestError: On foreign key, not-null or check violations.
    """
    state = _current.get()
    if state is not None:
        return await fn(state.connection)

    explicit: AsyncConnection | None = getattr(context, "db", None)
    try:
        if explicit is not None:
            state = _TransactionState(explicit)
            token = _current.set(state)
            try:
                if explicit.in_transaction():
                    # The caller owns the transaction and commits it
                    result = await fn(explicit)
                    _defer_to_caller(explicit, state.after_commit)
                    return result
                async with explicit.begin():
                    result = await fn(explicit)
            finally:
                _current.reset(token)
        else:
            async with database.engine.begin() as conn:
                state = _TransactionState(conn)
                token = _current.set(state)
                try:
                    result = await fn(conn)
                finally:
                    _current.reset(token)
    except IntegrityError as e:
        raise translate_database_error(e) from e

    await _run_callbacks(state.after_commit)
    return result


async def on_after_commit(callback: AfterCommitCallback) -> None:
    """Queue ``callback`` for after the outermost commit.

    Outside a transaction the callback runs immediately. Failures are
    logged and never raised.
    """
    state = _current.get()
    if state is None:
        await _run_callbacks([callback])
        return
    state.after_commit.append(callback)


async def _run_callbacks(callbacks: list[AfterCommitCallback]) -> None:
    for callback in callbacks:
        try:
            await callback()
        except Exception:
            logger.exception("After-commit callback failed")


def _defer_to_caller(conn: AsyncConnection, callbacks: list[AfterCommitCallback]) -> None:
    """Park ``callbacks`` on the connection until its transaction ends."""
    if not callbacks:
        return
    sync_conn = conn.sync_connection
    if not event.contains(sync_conn, "commit", _on_commit):
        event.listen(sync_conn, "commit", _on_commit)
        event.listen(sync_conn, "rollback", _on_rollback)
    sync_conn.info.setdefault(PENDING_KEY, []).extend(callbacks)
    logger.debug(f"Deferred {len(callbacks)} after-commit callbacks to the caller's transaction")


def _on_commit(sync_conn: Connection) -> None:
    pending = sync_conn.info.pop(PENDING_KEY, [])
    sync_conn.info.setdefault(COMMITTED_KEY, []).extend(pending)


def _on_rollback(sync_conn: Connection) -> None:
    dropped = sync_conn.info.pop(PENDING_KEY, [])
    if dropped:
        logger.debug(f"Dropped {len(dropped)} after-commit callbacks on rollback")


async def flush_after_commit(conn: AsyncConnection) -> int:
    """Run callbacks deferred to transactions the caller committed on ``conn``.

    Callbacks from a transaction that is still open stay queued; those from
    a rolled back one were already dropped.

    Returns:
        The number of callbacks run.
    """
    callbacks = conn.sync_connection.info.pop(COMMITTED_KEY, [])
    await _run_callbacks(callbacks)
    return len(callbacks)
