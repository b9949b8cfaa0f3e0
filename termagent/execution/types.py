"""Execution target variants, wait modes, command output and cancellation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Union

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Targets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LocalTarget:
    kind = "local"

    def label(self) -> str:
        return "local"


@dataclass(frozen=True)
class SshTarget:
    host: str
    port: int = 22
    user: str = ""

    kind = "ssh"

    def label(self) -> str:
        who = f"{self.user}@" if self.user else ""
        return f"ssh:{who}{self.host}"


@dataclass(frozen=True)
class ContainerTarget:
    container: str
    engine: str = ""

    kind = "container"

    def label(self) -> str:
        return f"container:{self.container}"


ExecutionTarget = Union[LocalTarget, SshTarget, ContainerTarget]


# ---------------------------------------------------------------------------
# Wait modes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Blocking:
    pass


@dataclass(frozen=True)
class NonBlocking:
    pass


@dataclass(frozen=True)
class BlockingWithTimeout:
    seconds: float


WaitMode = Union[Blocking, NonBlocking, BlockingWithTimeout]


def wait_timeout(wait: WaitMode) -> float | None:
    """Return the deadline in seconds for a wait mode, or None if unbounded."""
    if isinstance(wait, BlockingWithTimeout):
        return wait.seconds
    return None


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


@dataclass
class ExecOutput:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


OutputCallback = Callable[[str, str], None]
"""Called with (stream, chunk) where stream is "stdout" or "stderr"."""


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationToken:
    """Cooperative cancellation signal shared by a task and its backend call.

    Backends register callbacks (kill a process, send C-c to a pane) and
    poll ``cancelled`` between steps. Callbacks run once, in registration
    order, on the first ``cancel()``; callbacks added afterwards run
    immediately.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], object]] = []
        self.reason: str = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for cb in list(self._callbacks):
            self._invoke(cb)

    def on_cancel(self, callback: Callable[[], object]) -> None:
        if self._event.is_set():
            self._invoke(callback)
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[], object]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    async def wait(self) -> None:
        await self._event.wait()

    @staticmethod
    def _invoke(callback: Callable[[], object]) -> None:
        try:
            result = callback()
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)
        except Exception:
            logger.exception("Cancellation callback failed")
