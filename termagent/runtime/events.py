"""Runtime events and the in-process async event bus.

Turn events are yielded directly from ``AgentRuntime.submit``; events that
happen outside a turn (background task output, task completion) go through
the EventBus. Both draw sequence numbers from the same counter so a front
end can merge them into one ordered stream.

Bus handlers run concurrently per event, but events are dispatched one at
a time in FIFO order, so the output of a given task is delivered in order.
Handler errors are isolated: one broken handler never crashes the bus.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

# Handler type: async function taking a RuntimeEvent
EventHandler = Callable[["RuntimeEvent"], Awaitable[None]]

ANY = "*"


@dataclass
class RuntimeEvent:
    """A typed event from the runtime."""

    seq: int
    kind: str
    data: dict[str, Any] = field(default_factory=dict)
    task_id: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "seq": self.seq,
            "kind": self.kind,
            "timestamp": self.timestamp.isoformat(),
            "data": self.data,
        }
        if self.task_id is not None:
            out["task_id"] = self.task_id
        return out


class EventSequence:
    """Monotonic sequence numbers shared by every event source."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def make(self, kind: str, task_id: int | None = None, **data: Any) -> RuntimeEvent:
        with self._lock:
            seq = next(self._counter)
        return RuntimeEvent(seq=seq, kind=kind, data=data, task_id=task_id)


class EventBus:
    """In-process async event bus with error isolation.

    Events are queued and processed by a background asyncio task.
    Handlers registered via on() are called concurrently for each event.
    Handler errors are logged but never propagate.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[RuntimeEvent] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, kind: str, handler: EventHandler) -> None:
        """Register a handler for an event kind, or ``"*"`` for all kinds."""
        self._handlers[kind].append(handler)
        logger.debug("Registered handler for '%s': %s", kind, handler.__qualname__)

    def emit(self, event: RuntimeEvent) -> None:
        """Queue an event. Never blocks; drops the event if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping event: %s", event.kind)

    async def start(self) -> None:
        """Start the background processing loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the bus, then drain and dispatch whatever is still queued."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            while not self._queue.empty():
                try:
                    event = self._queue.get_nowait()
                    await self._dispatch(event)
                except asyncio.QueueEmpty:
                    break
        logger.info("Event bus stopped")

    async def _process_loop(self) -> None:
        """Main processing loop, run as a background task."""
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event bus loop")

    async def _dispatch(self, event: RuntimeEvent) -> None:
        handlers = [*self._handlers.get(event.kind, []), *self._handlers.get(ANY, [])]
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: EventHandler, event: RuntimeEvent) -> None:
        """Run handler with error isolation. Only CancelledError propagates."""
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except BaseException:
            logger.exception(
                "Handler %s failed for event %s",
                handler.__qualname__,
                event.kind,
            )

    @property
    def pending(self) -> int:
        """Number of events waiting in queue."""
        return self._queue.qsize()
