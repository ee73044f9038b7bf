from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

from loguru import logger

from session_engine import identifier

Subscriber = Callable[["DomainEvent"], Awaitable[None] | None]


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds")


@dataclass(frozen=True)
class DomainEvent:
    type: str
    session_id: str
    message_id: str | None = None
    properties: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: identifier.ascending("event"))
    created_at: str = field(default_factory=utc_now)


class EventBus:
    """In-process publish/subscribe.

    ``publish`` never blocks and never raises: synchronous subscribers run
    inline, coroutine subscribers are scheduled on the running loop, and any
    subscriber failure is logged and dropped.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(
        self,
        event_type: str,
        session_id: str,
        *,
        message_id: str | None = None,
        **properties: Any,
    ) -> DomainEvent:
        event = DomainEvent(type=event_type, session_id=session_id, message_id=message_id, properties=properties)
        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event)
            except Exception as ex:
                logger.warning(f"Event subscriber failed for {event_type}: {ex}")
                continue
            if inspect.isawaitable(result):
                self._schedule(result, event_type)
        return event

    async def drain(self) -> None:
        """Wait for scheduled coroutine subscribers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _schedule(self, awaitable: Awaitable[None], event_type: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; dropping async subscriber for {event_type}")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        task = loop.create_task(self._guard(awaitable, event_type))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    async def _guard(awaitable: Awaitable[None], event_type: str) -> None:
        try:
            await awaitable
        except Exception as ex:
            logger.warning(f"Async event subscriber failed for {event_type}: {ex}")
