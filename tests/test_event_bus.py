"""Tests for EventBus: dispatch, handler isolation, persister, drain on stop."""

import asyncio

from vi_core.events import Event, EventBus
from vi_core.identity.manager import InMemorySelfModelRepository, SelfModelManager


def _make_event(event_type: str = "test_event", data: dict | None = None) -> Event:
    return Event(type=event_type, user_id="user-1", data=data or {}, session_id="sess-1")


async def _settle(bus: EventBus) -> None:
    for _ in range(50):
        if bus.pending == 0:
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.01)


class TestEventBus:
    async def test_handler_receives_event(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event)

        bus.on("test_event", handler)
        await bus.start()
        await bus.emit(_make_event(data={"n": 1}))
        await _settle(bus)
        await bus.stop()

        assert len(seen) == 1
        assert seen[0].data == {"n": 1}
        assert seen[0].user_id == "user-1"

    async def test_multiple_handlers_all_called(self):
        bus = EventBus()
        calls = []

        async def first(event):
            calls.append("first")

        async def second(event):
            calls.append("second")

        bus.on("test_event", first)
        bus.on("test_event", second)
        await bus.emit(_make_event())
        await bus.stop()
        assert sorted(calls) == ["first", "second"]

    async def test_failing_handler_isolated(self):
        bus = EventBus()
        calls = []

        async def broken(event):
            raise RuntimeError("boom")

        async def healthy(event):
            calls.append(event.type)

        bus.on("test_event", broken)
        bus.on("test_event", healthy)
        await bus.start()
        await bus.emit(_make_event())
        await bus.emit(_make_event())
        await _settle(bus)
        await bus.stop()
        assert calls == ["test_event", "test_event"]

    async def test_unhandled_types_ignored(self):
        bus = EventBus()
        await bus.emit(_make_event("nobody_listens"))
        await bus.stop()
        assert bus.pending == 0

    async def test_persister_sees_every_event(self):
        bus = EventBus()
        persisted = []

        async def persist(event):
            persisted.append(event.type)

        bus.set_persister(persist)
        await bus.emit(_make_event("a"))
        await bus.emit(_make_event("b"))
        await bus.stop()
        assert persisted == ["a", "b"]

    async def test_persister_failure_does_not_block_handlers(self):
        bus = EventBus()
        seen = []

        async def persist(event):
            raise RuntimeError("db down")

        async def handler(event):
            seen.append(event)

        bus.set_persister(persist)
        bus.on("test_event", handler)
        await bus.emit(_make_event())
        await bus.stop()
        assert len(seen) == 1

    async def test_queue_full_drops_without_blocking(self):
        bus = EventBus(max_queue=2)
        for _ in range(5):
            await bus.emit(_make_event())
        assert bus.pending == 2

    async def test_start_is_idempotent(self):
        bus = EventBus()
        await bus.start()
        worker = bus._worker
        await bus.start()
        assert bus._worker is worker
        assert bus.running
        await bus.stop()
        assert not bus.running

    async def test_off_unsubscribes(self):
        bus = EventBus()
        seen = []

        async def handler(event):
            seen.append(event)

        bus.on("test_event", handler)
        assert bus.off("test_event", handler)
        assert not bus.off("test_event", handler)
        await bus.emit(_make_event())
        await bus.stop()
        assert seen == []

    async def test_stats_track_outcomes(self):
        bus = EventBus(max_queue=2)

        async def broken(event):
            raise RuntimeError("boom")

        bus.on("test_event", broken)
        for _ in range(3):
            await bus.emit(_make_event())
        await bus.stop()
        assert bus.stats["emitted"] == 2
        assert bus.stats["dropped"] == 1
        assert bus.stats["dispatched"] == 2
        assert bus.stats["handler_failed"] == 2


async def test_self_model_events_reach_bus():
    bus = EventBus()
    seen = []

    async def handler(event):
        seen.append(event)

    bus.on("self_model_violation_detected", handler)
    manager = SelfModelManager(InMemorySelfModelRepository(), bus=bus)
    await manager.initialize()
    await manager.log_event("1.0.0", "violation_detected", {"severity": "high"})
    await bus.stop()
    assert seen[0].data == {"version": "1.0.0", "severity": "high"}
