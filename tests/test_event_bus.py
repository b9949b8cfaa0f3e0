"""Tests for termagent/runtime/events.py -- RuntimeEvent, EventSequence, EventBus."""

from __future__ import annotations

import asyncio
import threading

import pytest

from termagent.runtime.events import EventBus, EventSequence, RuntimeEvent


def _make_event(kind: str = "tool_stream", task_id: int | None = 1, **data) -> RuntimeEvent:
    return EventSequence().make(kind, task_id=task_id, **data)


class TestEventSequence:
    def test_monotonic(self):
        seq = EventSequence()
        numbers = [seq.make("x").seq for _ in range(5)]
        assert numbers == [1, 2, 3, 4, 5]

    def test_threadsafe(self):
        seq = EventSequence()
        seen: list[int] = []
        lock = threading.Lock()

        def worker():
            for _ in range(200):
                n = seq.make("x").seq
                with lock:
                    seen.append(n)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(seen) == list(range(1, 801))

    def test_to_dict(self):
        event = EventSequence().make("task_finished", task_id=3, status="completed")
        out = event.to_dict()
        assert out["seq"] == 1
        assert out["kind"] == "task_finished"
        assert out["task_id"] == 3
        assert out["data"] == {"status": "completed"}
        assert "timestamp" in out

    def test_to_dict_without_task(self):
        assert "task_id" not in EventSequence().make("turn_complete").to_dict()


class TestEventBus:
    @pytest.mark.asyncio
    async def test_handler_receives_events_in_order(self):
        bus = EventBus()
        received: list[str] = []

        async def handler(event: RuntimeEvent) -> None:
            received.append(event.data["data"])

        bus.on("tool_stream", handler)
        await bus.start()
        try:
            seq = EventSequence()
            for chunk in ["a", "b", "c", "d"]:
                bus.emit(seq.make("tool_stream", task_id=1, data=chunk))
            await asyncio.sleep(0.1)
            assert received == ["a", "b", "c", "d"]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_wildcard_handler_sees_every_kind(self):
        bus = EventBus()
        kinds: list[str] = []

        async def handler(event: RuntimeEvent) -> None:
            kinds.append(event.kind)

        bus.on("*", handler)
        await bus.start()
        try:
            bus.emit(_make_event("task_spawned"))
            bus.emit(_make_event("task_finished"))
            await asyncio.sleep(0.1)
            assert kinds == ["task_spawned", "task_finished"]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_handler_error_doesnt_block_other_handlers(self):
        bus = EventBus()
        results: list[str] = []

        async def bad_handler(event: RuntimeEvent) -> None:
            raise RuntimeError("fail")

        async def good_handler(event: RuntimeEvent) -> None:
            results.append("ok")

        bus.on("tool_stream", bad_handler)
        bus.on("tool_stream", good_handler)
        await bus.start()
        try:
            bus.emit(_make_event())
            await asyncio.sleep(0.1)
            # Bus still running after the failure
            bus.emit(_make_event())
            await asyncio.sleep(0.1)
            assert results == ["ok", "ok"]
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_unhandled_kind_is_ignored(self):
        bus = EventBus()
        await bus.start()
        try:
            bus.emit(_make_event("nobody_listens"))
            await asyncio.sleep(0.05)
            assert bus.pending == 0
        finally:
            await bus.stop()

    @pytest.mark.asyncio
    async def test_queue_full_drops_event(self):
        bus = EventBus(max_queue=1)
        bus.emit(_make_event("first"))
        assert bus.pending == 1
        bus.emit(_make_event("second"))
        assert bus.pending == 1

    @pytest.mark.asyncio
    async def test_stop_drains_remaining_events(self):
        bus = EventBus()
        received: list[RuntimeEvent] = []

        async def handler(event: RuntimeEvent) -> None:
            received.append(event)

        bus.on("tool_stream", handler)
        bus.emit(_make_event(data="1"))
        bus.emit(_make_event(data="2"))
        assert bus.pending == 2

        await bus.start()
        await bus.stop()

        assert bus.pending == 0
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        bus = EventBus()
        await bus.start()
        first = bus._task
        await bus.start()
        assert bus._task is first
        await bus.stop()
