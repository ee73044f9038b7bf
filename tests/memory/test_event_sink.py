import asyncio
import unittest

from session_engine.memory.event_sink import AsyncEventSink
from session_engine.memory.events import EventBus
from session_engine.memory.store import MemoryStore


class EventSinkTests(unittest.TestCase):
    def test_event_sink_flushes_events(self) -> None:
        store = MemoryStore(":memory:")
        bus = EventBus()
        sink = AsyncEventSink(store, batch_size=10, flush_interval_seconds=0.05)
        sink.attach(bus)

        async def scenario() -> None:
            await sink.start()
            bus.publish("session.created", "ses_1", title="x")
            bus.publish("message.updated", "ses_1", message_id="msg_1")
            await asyncio.sleep(0.12)
            await sink.close()

        asyncio.run(scenario())

        rows = store.execute(
            "SELECT type, message_id FROM events WHERE session_id = ? ORDER BY id", ("ses_1",)
        ).fetchall()
        self.assertEqual(["session.created", "message.updated"], [r["type"] for r in rows])
        self.assertEqual("msg_1", rows[1]["message_id"])
        store.close()

    def test_delta_events_are_not_persisted(self) -> None:
        store = MemoryStore(":memory:")
        bus = EventBus()
        sink = AsyncEventSink(store)
        sink.attach(bus)

        async def scenario() -> None:
            await sink.start()
            bus.publish("message.part.delta", "ses_1", delta="hi")
            bus.publish("session.status", "ses_1", status="streaming")
            await sink.close()

        asyncio.run(scenario())

        row = store.execute("SELECT COUNT(*) AS c FROM events").fetchone()
        self.assertEqual(1, int(row["c"]))
        store.close()

    def test_close_detaches_from_bus(self) -> None:
        store = MemoryStore(":memory:")
        bus = EventBus()
        sink = AsyncEventSink(store)
        sink.attach(bus)

        async def scenario() -> None:
            await sink.start()
            await sink.close()
            bus.publish("session.created", "ses_1")

        asyncio.run(scenario())

        row = store.execute("SELECT COUNT(*) AS c FROM events").fetchone()
        self.assertEqual(0, int(row["c"]))
        store.close()


class EventBusTests(unittest.TestCase):
    def test_failing_subscriber_does_not_stop_others(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        def broken(event) -> None:
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(lambda event: seen.append(event.type))
        bus.publish("session.updated", "ses_1")
        self.assertEqual(["session.updated"], seen)

    def test_async_subscribers_run_on_drain(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        async def subscriber(event) -> None:
            await asyncio.sleep(0)
            seen.append(event.session_id)

        async def scenario() -> None:
            bus.subscribe(subscriber)
            bus.publish("session.updated", "ses_1")
            await bus.drain()

        asyncio.run(scenario())
        self.assertEqual(["ses_1"], seen)

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        seen: list[str] = []
        unsubscribe = bus.subscribe(lambda event: seen.append(event.type))
        unsubscribe()
        bus.publish("session.updated", "ses_1")
        self.assertEqual([], seen)


if __name__ == "__main__":
    unittest.main()
