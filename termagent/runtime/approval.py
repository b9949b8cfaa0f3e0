"""Approval policy for mutating and risky tool calls.

Read-only calls bypass the gate entirely. Gated calls are decided by the
current ApprovalState; under AskEachTime the runtime opens a pending
request, emits ``approval_required`` and waits for the front end to call
``resolve``. Every gated decision lands in an audit trail.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable, Union

from termagent.execution.process import parse_duration
from termagent.runtime.models import ToolCall
from termagent.tools.base import Tool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AskEachTime:
    label = "ask"


@dataclass(frozen=True)
class ApproveAll:
    label = "all"


@dataclass(frozen=True)
class DenyAll:
    label = "none"


@dataclass(frozen=True)
class ApproveForDuration:
    expires_at: float  # clock() seconds
    label = "duration"


ApprovalState = Union[AskEachTime, ApproveAll, DenyAll, ApproveForDuration]


class Verdict(enum.Enum):
    BYPASS = "bypass"
    APPROVE = "approve"
    DENY = "deny"
    ASK = "ask"


@dataclass
class ApprovalRecord:
    call_id: str
    tool: str
    approved: bool
    source: str  # policy | user | auto | non_interactive
    why: str = ""
    risk: str | None = None
    approval_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass
class PendingApproval:
    approval_id: str
    call: ToolCall
    future: asyncio.Future


def parse_policy(text: str, now: float) -> ApprovalState:
    """``ask`` | ``all`` | ``none`` | a duration like ``10m``."""
    value = text.strip().lower()
    if value == "ask":
        return AskEachTime()
    if value == "all":
        return ApproveAll()
    if value == "none":
        return DenyAll()
    return ApproveForDuration(expires_at=now + parse_duration(value))


class ApprovalPolicyEngine:
    def __init__(
        self,
        policy: str = "ask",
        interactive: bool = True,
        auto_approve: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._state: ApprovalState = parse_policy(policy, clock())
        self.interactive = interactive
        self.auto_approve = auto_approve
        self.audit: list[ApprovalRecord] = []
        self._pending: dict[str, PendingApproval] = {}

    @property
    def state(self) -> ApprovalState:
        if isinstance(self._state, ApproveForDuration) and self._clock() >= self._state.expires_at:
            logger.info("Approval window expired, reverting to ask")
            self._state = AskEachTime()
        return self._state

    def set_policy(self, text: str) -> ApprovalState:
        self._state = parse_policy(text, self._clock())
        logger.info("Approval policy set to %s", self.describe())
        return self._state

    def describe(self) -> str:
        state = self.state
        if isinstance(state, ApproveForDuration):
            return f"approve for {max(0, int(state.expires_at - self._clock()))}s"
        return state.label

    @staticmethod
    def is_gated(tool: Tool, call: ToolCall) -> bool:
        if tool.mutating:
            return True
        return call.safety is not None and call.safety.gated

    def evaluate(self, tool: Tool, call: ToolCall) -> Verdict:
        """Decide a call from policy alone. ASK means a human must answer."""
        if not self.is_gated(tool, call):
            return Verdict.BYPASS
        state = self.state
        if isinstance(state, DenyAll):
            self._record(call, approved=False, source="policy")
            return Verdict.DENY
        if isinstance(state, (ApproveAll, ApproveForDuration)):
            self._record(call, approved=True, source="policy")
            return Verdict.APPROVE
        if not self.interactive:
            if self.auto_approve:
                self._record(call, approved=True, source="auto")
                return Verdict.APPROVE
            self._record(call, approved=False, source="non_interactive")
            return Verdict.DENY
        return Verdict.ASK

    def open_request(self, call: ToolCall) -> PendingApproval:
        pending = PendingApproval(
            approval_id=uuid.uuid4().hex[:12],
            call=call,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[pending.approval_id] = pending
        return pending

    def resolve(self, approval_id: str, approved: bool) -> None:
        pending = self._pending.get(approval_id)
        if pending is None:
            raise KeyError(f"No pending approval {approval_id}")
        if not pending.future.done():
            pending.future.set_result(approved)

    async def wait(self, pending: PendingApproval) -> bool:
        try:
            approved = bool(await pending.future)
        finally:
            self._pending.pop(pending.approval_id, None)
        self._record(pending.call, approved=approved, source="user", approval_id=pending.approval_id)
        return approved

    def deny_pending(self) -> None:
        """Resolve every outstanding request as denied (shutdown)."""
        for pending in list(self._pending.values()):
            if not pending.future.done():
                pending.future.set_result(False)

    @property
    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def _record(self, call: ToolCall, approved: bool, source: str, approval_id: str | None = None) -> None:
        safety = call.safety
        record = ApprovalRecord(
            call_id=call.id,
            tool=call.name,
            approved=approved,
            source=source,
            why=safety.why if safety else "",
            risk=safety.risk if safety else None,
            approval_id=approval_id,
        )
        self.audit.append(record)
        logger.info(
            "Approval %s for %s (%s, source=%s): %s",
            "granted" if approved else "denied",
            call.name,
            record.risk or "n/a",
            source,
            record.why or "no justification given",
        )
