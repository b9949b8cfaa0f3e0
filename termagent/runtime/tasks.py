"""Background task lifecycle: spawn, list, cancel, timeouts, delivery.

Each task wraps one tool invocation running as an asyncio task with its
own CancellationToken. Status only moves forward: once a task is
completed, cancelled, timed out or failed, nothing changes it again. The
task table is the one structure shared with other threads (front ends
may list tasks from a UI thread), so it sits behind a threading.Lock.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from termagent.errors import AmbiguousTaskTarget, TaskAlreadyTerminal, TaskNotFound
from termagent.execution.types import CancellationToken
from termagent.runtime.events import EventBus, EventSequence
from termagent.runtime.models import ToolCall

logger = logging.getLogger(__name__)

Work = Callable[[CancellationToken, int], Awaitable[Any]]


class TaskStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self is not TaskStatus.RUNNING


@dataclass
class BackgroundTask:
    id: int
    call: ToolCall
    started_at: float
    token: CancellationToken = field(default_factory=CancellationToken)
    status: TaskStatus = TaskStatus.RUNNING
    result: Any = None
    error: str | None = None
    deadline: float | None = None
    delivered: bool = False
    finished_at: float | None = None
    handle: asyncio.Task | None = None
    done: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass(frozen=True)
class TaskSnapshot:
    id: int
    elapsed: float
    status: TaskStatus
    tool: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "elapsed": round(self.elapsed, 3), "status": self.status.value}


class BackgroundTaskManager:
    def __init__(
        self,
        cancel_grace: float = 3.0,
        supervision_interval: float = 0.25,
        bus: EventBus | None = None,
        sequence: EventSequence | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._grace = cancel_grace
        self._interval = supervision_interval
        self._bus = bus
        self._sequence = sequence or EventSequence()
        self._clock = clock
        self._ids = itertools.count(1)
        self._tasks: dict[int, BackgroundTask] = {}
        self._lock = threading.Lock()
        self._supervisor: asyncio.Task | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._supervisor = asyncio.create_task(self._supervise(), name="task-supervisor")
        logger.info("Background task manager started")

    async def stop(self) -> None:
        """Stop supervision and cancel everything still running."""
        self._running = False
        if self._supervisor:
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
            self._supervisor = None

        with self._lock:
            running = [t for t in self._tasks.values() if not t.status.terminal]
        for task in running:
            task.token.cancel("shutdown")
            self._transition(task, TaskStatus.CANCELLED, error="runtime shut down")
            if task.handle is not None:
                task.handle.cancel()
        handles = [t.handle for t in running if t.handle is not None]
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        logger.info("Background task manager stopped")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def spawn(self, call: ToolCall, work: Work, timeout: float | None = None) -> int:
        now = self._clock()
        with self._lock:
            task = BackgroundTask(id=next(self._ids), call=call, started_at=now)
            if timeout is not None:
                task.deadline = now + timeout
            self._tasks[task.id] = task
        task.handle = asyncio.create_task(self._run(task, work), name=f"bg-task-{task.id}")
        logger.info("Spawned task %d for %s (timeout=%s)", task.id, call.name, timeout)
        self._emit("task_spawned", task.id, tool=call.name, timeout=timeout)
        return task.id

    def list(self) -> list[TaskSnapshot]:
        with self._lock:
            tasks = sorted(self._tasks.values(), key=lambda t: t.id)
            return [self._snapshot(t) for t in tasks]

    def get(self, task_id: int) -> BackgroundTask:
        with self._lock:
            task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(f"No task with id {task_id}")
        return task

    def snapshot(self, task_id: int) -> TaskSnapshot:
        task = self.get(task_id)
        with self._lock:
            return self._snapshot(task)

    async def cancel(self, task_id: int) -> TaskSnapshot:
        """Signal the task, give it the grace period, then force Cancelled."""
        task = self.get(task_id)
        if task.status.terminal:
            raise TaskAlreadyTerminal(f"Task {task_id} is already {task.status.value}")

        logger.info("Cancelling task %d", task_id)
        task.token.cancel("cancelled")
        try:
            await asyncio.wait_for(asyncio.shield(task.done.wait()), timeout=self._grace)
        except asyncio.TimeoutError:
            logger.warning("Task %d did not stop within %.1fs, forcing", task_id, self._grace)
            self._transition(task, TaskStatus.CANCELLED, error="cancelled (forced after grace period)")
            if task.handle is not None:
                task.handle.cancel()
        return self.snapshot(task_id)

    def set_timeout(self, task_id: int | None, seconds: float) -> int:
        """Set a task's deadline to now + ``seconds``.

        With no id, targets the only running task.
        """
        if seconds <= 0:
            raise ValueError("timeout must be positive")
        with self._lock:
            if task_id is None:
                running = [t for t in self._tasks.values() if not t.status.terminal]
                if not running:
                    raise TaskNotFound("No running tasks")
                if len(running) > 1:
                    ids = ", ".join(str(t.id) for t in sorted(running, key=lambda t: t.id))
                    raise AmbiguousTaskTarget(f"Several tasks are running ({ids}); specify a task id")
                task = running[0]
            else:
                task = self._tasks.get(task_id)
                if task is None:
                    raise TaskNotFound(f"No task with id {task_id}")
                if task.status.terminal:
                    raise TaskAlreadyTerminal(f"Task {task_id} is already {task.status.value}")
            task.deadline = self._clock() + seconds
        logger.info("Task %d timeout set to %.1fs", task.id, seconds)
        return task.id

    async def wait(self, task_id: int, timeout: float | None = None) -> TaskSnapshot:
        """Wait until the task is terminal or ``timeout`` elapses."""
        task = self.get(task_id)
        try:
            await asyncio.wait_for(asyncio.shield(task.done.wait()), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        return self.snapshot(task_id)

    def mark_delivered(self, task_id: int) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is not None and task.status.terminal:
                task.delivered = True

    def take_undelivered(self) -> list[BackgroundTask]:
        """Finished tasks whose results the model has not seen yet."""
        with self._lock:
            finished = [t for t in self._tasks.values() if t.status.terminal and not t.delivered]
            for task in finished:
                task.delivered = True
        return sorted(finished, key=lambda t: t.id)

    def check_deadlines(self) -> list[int]:
        """Time out every overdue task. Returns the ids that were timed out."""
        now = self._clock()
        with self._lock:
            overdue = [
                t
                for t in self._tasks.values()
                if not t.status.terminal and t.deadline is not None and now >= t.deadline
            ]
        timed_out = []
        for task in overdue:
            task.token.cancel("timeout")
            if self._transition(task, TaskStatus.TIMED_OUT, error="timed out"):
                logger.warning("Task %d (%s) timed out", task.id, task.call.name)
                timed_out.append(task.id)
                asyncio.get_running_loop().call_later(self._grace, self._force_stop, task)
        return timed_out

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _run(self, task: BackgroundTask, work: Work) -> None:
        try:
            result = await work(task.token, task.id)
        except asyncio.CancelledError:
            self._transition(task, TaskStatus.CANCELLED, error="cancelled")
            return
        except Exception as e:
            if task.token.cancelled:
                self._transition(task, self._stopped_status(task), error=task.token.reason)
                return
            logger.warning("Task %d failed: %s", task.id, e)
            self._transition(task, TaskStatus.FAILED, error=str(e))
            return

        if task.token.cancelled:
            self._transition(task, self._stopped_status(task), result=result, error=task.token.reason)
        else:
            self._transition(task, TaskStatus.COMPLETED, result=result)

    @staticmethod
    def _stopped_status(task: BackgroundTask) -> TaskStatus:
        return TaskStatus.TIMED_OUT if task.token.reason == "timeout" else TaskStatus.CANCELLED

    def _transition(
        self,
        task: BackgroundTask,
        status: TaskStatus,
        result: Any = None,
        error: str | None = None,
    ) -> bool:
        """Move a running task to a terminal status. Refuses to leave a terminal state."""
        with self._lock:
            if task.status.terminal:
                return False
            task.status = status
            task.result = result
            task.error = error
            task.finished_at = self._clock()
        task.done.set()
        logger.info("Task %d -> %s", task.id, status.value)
        self._emit("task_finished", task.id, status=status.value, error=error)
        return True

    def _force_stop(self, task: BackgroundTask) -> None:
        if task.handle is not None and not task.handle.done():
            logger.warning("Task %d ignored cancellation, forcing", task.id)
            task.handle.cancel()

    async def _supervise(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
                self.check_deadlines()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in task supervisor")

    def _snapshot(self, task: BackgroundTask) -> TaskSnapshot:
        end = task.finished_at if task.finished_at is not None else self._clock()
        return TaskSnapshot(
            id=task.id,
            elapsed=end - task.started_at,
            status=task.status,
            tool=task.call.name,
            error=task.error,
        )

    def _emit(self, kind: str, task_id: int, **data: Any) -> None:
        if self._bus is not None:
            self._bus.emit(self._sequence.make(kind, task_id=task_id, **data))
