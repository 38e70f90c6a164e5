"""Realtime change notification boundary.

The engine emits one ``RealtimeChange`` per committed mutation. Transport
(websockets, SSE, pub/sub) is the notifier's concern; a failing notifier
never fails the mutation.

Usage:
    from record_engine.realtime import InMemoryRealtimeNotifier

    notifier = InMemoryRealtimeNotifier()
    registry = CollectionRegistry(database, notifier=notifier)
    await registry.get_collection("posts").create({"status": "draft"})
    notifier.changes[0].operation  # "create"
"""

import logging
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class RealtimeChange(BaseModel):
    """A committed mutation."""

    resource_type: Literal["collection", "global"]
    resource: str
    operation: str  # create, update, bulk_update, delete, bulk_delete
    record_id: str | None = None
    locale: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class RealtimeNotifier(Protocol):
    """Receives changes after commit."""

    async def publish(self, change: RealtimeChange) -> None:
        ...


class InMemoryRealtimeNotifier:
    """Notifier that keeps every change in a list."""

    def __init__(self) -> None:
        self.changes: list[RealtimeChange] = []

    async def publish(self, change: RealtimeChange) -> None:
        self.changes.append(change)

    def clear(self) -> None:
        self.changes.clear()


async def publish_safely(notifier: RealtimeNotifier | None, change: RealtimeChange) -> None:
    """Publish ``change``, logging instead of raising on failure."""
    if notifier is None:
        return
    try:
        await notifier.publish(change)
    except Exception:
        logger.warning(
            f"Dropped realtime change {change.operation} on {change.resource}",
            exc_info=True,
        )
