from __future__ import annotations

import asyncio
import json

from loguru import logger

from session_engine.memory.events import DomainEvent, EventBus
from session_engine.memory.store import MemoryStore

# High-frequency streaming events are not worth persisting.
_SKIPPED_TYPES = frozenset({"message.part.delta"})


class AsyncEventSink:
    """Batches domain events into the ``events`` table off the hot path."""

    def __init__(self, store: MemoryStore, *, batch_size: int = 50, flush_interval_seconds: float = 0.5):
        self._store = store
        self._batch_size = max(1, batch_size)
        self._flush_interval_seconds = max(0.05, flush_interval_seconds)
        self._queue: asyncio.Queue[DomainEvent] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._closed = False
        self._unsubscribe = None

    def attach(self, bus: EventBus) -> None:
        self._unsubscribe = bus.subscribe(self.emit)

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    def emit(self, event: DomainEvent) -> None:
        if self._closed or event.type in _SKIPPED_TYPES:
            return
        self._queue.put_nowait(event)

    async def close(self) -> None:
        self._closed = True
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._flush_all()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval_seconds)
            await self._flush_once()

    async def _flush_all(self) -> None:
        while not self._queue.empty():
            await self._flush_once()

    async def _flush_once(self) -> None:
        items: list[DomainEvent] = []
        while len(items) < self._batch_size and not self._queue.empty():
            items.append(self._queue.get_nowait())

        if not items:
            return

        params = [
            (
                event.id,
                event.session_id,
                event.message_id,
                event.type,
                json.dumps(event.properties, ensure_ascii=True, default=str),
                event.created_at,
            )
            for event in items
        ]
        with self._store.transaction():
            self._store.executemany(
                """
                INSERT OR IGNORE INTO events (id, session_id, message_id, type, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                params,
            )
        logger.debug(f"Persisted {len(params)} event(s)")
