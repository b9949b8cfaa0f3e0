"""Agent runtime: the turn loop.

One AgentRuntime owns one Conversation and processes turns strictly in
sequence. ``submit`` returns a lazy, ordered stream of RuntimeEvents for
the turn; anything that happens after the turn ends (background task
output and completion) is emitted on the EventBus instead.

Per model iteration:
  1. check the context budget (compacting or refusing the request)
  2. send the conversation to the model transport
  3. append the assistant turn
  4. for each tool call: validate, gate on approval, dispatch inline or
     as a background task, append the tool result turn
  5. repeat until the model stops calling tools or the iteration cap hits
"""

from __future__ import annotations

import enum
import json
import logging
from typing import TYPE_CHECKING, Any, AsyncIterator

from termagent.config import Settings
from termagent.errors import (
    BudgetExceeded,
    ExecutionFailed,
    PolicyDenied,
    ToolError,
    TransportError,
    TurnInProgress,
)
from termagent.execution.types import Blocking, CancellationToken, NonBlocking, wait_timeout
from termagent.runtime.approval import ApprovalPolicyEngine, Verdict
from termagent.runtime.budget import CompactionResult, ContextBudgetManager
from termagent.runtime.events import EventBus, EventSequence, RuntimeEvent
from termagent.runtime.models import Conversation, ToolCall, Turn
from termagent.runtime.tasks import BackgroundTask, BackgroundTaskManager, TaskSnapshot, TaskStatus
from termagent.runtime.tokens import TokenEstimator
from termagent.runtime.transport import ModelTransport
from termagent.tools.base import ToolContext, ToolStreamEvent, error_payload, wrap_result
from termagent.tools.registry import ParsedCall, ToolRegistry

if TYPE_CHECKING:
    from termagent.execution.backend import ExecutionBackend
    from termagent.storage.sessions import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """\
You are {agent_name}, an agent operating a shell on {target} on the user's behalf.
Work step by step with the tools provided. Prefer read-only inspection before
changing anything. For every run_shell and send_keys call, declare its risk
(low, medium, high), whether it mutates state, whether it escalates privileges,
and one sentence explaining why. Long-running commands should use wait=false;
their results are reported to you when they finish."""

SNAPSHOT_HEADER = "The operator's terminal pane currently shows:"


class RuntimeState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    TURN_COMPLETE = "turn_complete"


class AgentRuntime:
    def __init__(
        self,
        settings: Settings,
        transport: ModelTransport,
        registry: ToolRegistry,
        backend: "ExecutionBackend",
        approvals: ApprovalPolicyEngine,
        tasks: BackgroundTaskManager,
        budget: ContextBudgetManager,
        bus: EventBus,
        sequence: EventSequence,
        conversation: Conversation | None = None,
        store: "SessionStore | None" = None,
        startup_snapshot: str = "",
        system_prompt: str | None = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.registry = registry
        self.backend = backend
        self.approvals = approvals
        self.tasks = tasks
        self.budget = budget
        self.bus = bus
        self.sequence = sequence
        self.conversation = conversation or Conversation()
        self.store = store
        self.state = RuntimeState.IDLE
        self._base_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT.format(
            agent_name=settings.agent_name,
            target=backend.summary(),
        )
        self._snapshot = startup_snapshot
        self._busy = False
        self._held_notice: Turn | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.bus.start()
        await self.tasks.start()

    async def close(self) -> None:
        """Deny outstanding approvals, stop tasks, flush events, persist."""
        self.approvals.deny_pending()
        await self.tasks.stop()
        await self.bus.stop()
        if self.store is not None:
            await self.save()
        await self.backend.close()

    # ------------------------------------------------------------------
    # Turn loop
    # ------------------------------------------------------------------

    async def submit(self, text: str) -> AsyncIterator[RuntimeEvent]:
        """Process one user turn, yielding events in the order they happen.

        Raises TurnInProgress if another turn on this runtime is still being
        iterated.
        """
        if self._busy:
            raise TurnInProgress("A turn is already in progress for this conversation")
        self._busy = True
        try:
            async for event in self._turn(text):
                yield event
        finally:
            self._busy = False
            self.state = RuntimeState.IDLE

    async def _turn(self, text: str) -> AsyncIterator[RuntimeEvent]:
        conv = self.conversation
        user = Turn.user(text)
        notice = self._task_notice()
        system_prompt = self._system_prompt()
        tools = self.registry.definitions()
        overhead = self._overhead(system_prompt, tools)

        try:
            compaction = await self.budget.check_send(
                conv,
                pending=user,
                overhead=overhead + (notice.cost if notice else 0),
            )
        except BudgetExceeded as e:
            self._held_notice = notice
            yield self._event("budget_refused", message=str(e), projected=e.projected,
                              ceiling=e.ceiling, remedies=e.remedies)
            yield self._event("turn_complete", reason="budget_refused")
            return
        if compaction is not None:
            yield self._compaction_event(compaction)

        if notice is not None:
            conv.append(notice)
        conv.append(user)
        self._snapshot = ""
        yield self._event("user_turn", content=text, estimate=user.cost)

        for iteration in range(self.settings.max_tool_turns):
            if iteration:
                try:
                    compaction = await self.budget.check_send(conv, overhead=overhead)
                except BudgetExceeded as e:
                    yield self._event("budget_refused", message=str(e), projected=e.projected,
                                      ceiling=e.ceiling, remedies=e.remedies)
                    yield self._event("turn_complete", reason="budget_refused")
                    return
                if compaction is not None:
                    yield self._compaction_event(compaction)

            yield self._set_state(RuntimeState.AWAITING_MODEL)
            try:
                response = await self.transport.send(conv, tools, system_prompt)
            except TransportError as e:
                logger.error("Model transport failed: %s", e)
                data: dict[str, Any] = {"error": type(e).__name__, "message": str(e)}
                if getattr(e, "retry_after", None) is not None:
                    data["retry_after"] = e.retry_after
                yield self._event("error", **data)
                yield self._event("turn_complete", reason="error")
                return

            assistant = Turn(role="assistant", content=response.text, tool_calls=response.tool_calls)
            conv.append(assistant)
            yield self._event(
                "assistant_turn",
                content=response.text,
                tool_calls=[c.name for c in response.tool_calls],
                usage=response.usage,
            )

            if not response.tool_calls:
                yield self._set_state(RuntimeState.TURN_COMPLETE)
                yield self._event("turn_complete", reason="done")
                return

            yield self._set_state(RuntimeState.TOOL_CALLS_PENDING)
            for call in response.tool_calls:
                async for event in self._handle_call(call):
                    yield event

            compaction = await self.budget.after_append(conv, overhead)
            if compaction is not None:
                yield self._compaction_event(compaction)

        logger.warning("Turn reached max_tool_turns=%d", self.settings.max_tool_turns)
        yield self._event("capped_iterations", limit=self.settings.max_tool_turns)
        yield self._set_state(RuntimeState.TURN_COMPLETE)
        yield self._event("turn_complete", reason="capped")

    async def _handle_call(self, call: ToolCall) -> AsyncIterator[RuntimeEvent]:
        yield self._event("tool_call", call_id=call.id, tool=call.name, arguments=call.arguments)

        try:
            parsed = self.registry.parse_call(call)
        except ToolError as e:
            yield self._tool_result(call, error_payload(e.kind, str(e)), is_error=True)
            return

        verdict = self.approvals.evaluate(parsed.tool, parsed.call)
        if verdict is Verdict.ASK:
            pending = self.approvals.open_request(parsed.call)
            safety = parsed.call.safety
            yield self._event(
                "approval_required",
                approval_id=pending.approval_id,
                call_id=call.id,
                tool=call.name,
                arguments=parsed.args.model_dump(),
                risk=safety.risk if safety else None,
                mutation=safety.mutation if safety else parsed.tool.mutating,
                privesc=safety.privesc if safety else False,
                why=safety.why if safety else "",
            )
            approved = await self.approvals.wait(pending)
            yield self._event("approval_decision", approval_id=pending.approval_id,
                              call_id=call.id, approved=approved, source="user")
        elif verdict is Verdict.BYPASS:
            approved = True
        else:
            approved = verdict is Verdict.APPROVE
            yield self._event("approval_decision", call_id=call.id, approved=approved,
                              source="policy", policy=self.approvals.describe())

        if not approved:
            denied = PolicyDenied(f"{call.name} was not approved (policy: {self.approvals.describe()})")
            yield self._tool_result(call, error_payload(denied.kind, str(denied)), is_error=True)
            return

        mode = parsed.tool.wait_mode(parsed.args)
        if isinstance(mode, Blocking):
            async for event in self._run_inline(parsed):
                yield event
            return

        timeout = wait_timeout(mode)
        task_id = self.tasks.spawn(parsed.call, self._background_work(parsed), timeout=timeout)
        yield self._event("task_spawned", task_id=task_id, call_id=call.id, tool=call.name, timeout=timeout)

        if isinstance(mode, NonBlocking):
            yield self._tool_result(call, {"task_id": task_id, "status": "running"})
            return

        wait_for = min(timeout, self.settings.interactive_wait_seconds)
        snapshot = await self.tasks.wait(task_id, timeout=wait_for)
        if not snapshot.status.terminal:
            yield self._tool_result(call, {
                "task_id": task_id,
                "status": "running",
                "message": f"still running after {wait_for:g}s; its result will be reported when it finishes",
            })
            return
        self.tasks.mark_delivered(task_id)
        task = self.tasks.get(task_id)
        payload, is_error = self._task_payload(task)
        yield self._tool_result(call, payload, is_error=is_error)

    async def _run_inline(self, parsed: ParsedCall) -> AsyncIterator[RuntimeEvent]:
        ctx = ToolContext(
            backend=self.backend,
            settings=self.settings,
            token=CancellationToken(),
        )
        final: ToolStreamEvent | None = None
        async for event in self.registry.invoke(parsed, ctx):
            if event.type == "completed":
                final = event
            else:
                yield self._event("tool_stream", call_id=parsed.call.id, stream=event.to_dict())
        assert final is not None
        turn = Turn.tool_result(parsed.call, final.data or "", is_error=final.is_error)
        self.conversation.append(turn)
        yield self._event("tool_result", call_id=parsed.call.id, tool=parsed.call.name,
                          content=turn.content, is_error=turn.is_error)

    def _background_work(self, parsed: ParsedCall):
        async def work(token: CancellationToken, task_id: int) -> Any:
            ctx = ToolContext(
                backend=self.backend,
                settings=self.settings,
                token=token,
                task_id=str(task_id),
            )
            final: ToolStreamEvent | None = None
            async for event in self.registry.invoke(parsed, ctx):
                if event.type == "completed":
                    final = event
                self.bus.emit(
                    self.sequence.make("tool_stream", task_id=task_id, call_id=parsed.call.id, stream=event.to_dict())
                )
            assert final is not None
            if final.is_error:
                raise ExecutionFailed(final.payload.get("message", "tool failed"))
            return final.payload

        return work

    # ------------------------------------------------------------------
    # Runtime commands
    # ------------------------------------------------------------------

    def set_approval_policy(self, policy: str) -> str:
        self.approvals.set_policy(policy)
        return self.approvals.describe()

    def resolve_approval(self, approval_id: str, approved: bool) -> None:
        self.approvals.resolve(approval_id, approved)

    async def compact(self) -> CompactionResult | None:
        """Manual /compact. Not allowed while a turn is running."""
        if self._busy:
            raise TurnInProgress("Cannot compact while a turn is in progress")
        return await self.budget.compact(self.conversation)

    def list_tasks(self) -> list[dict[str, Any]]:
        return [s.to_dict() for s in self.tasks.list()]

    async def cancel_task(self, task_id: int) -> TaskSnapshot:
        return await self.tasks.cancel(task_id)

    def set_task_timeout(self, task_id: int | None, seconds: float) -> int:
        return self.tasks.set_timeout(task_id, seconds)

    def status(self) -> dict[str, Any]:
        overhead = self._overhead(self._system_prompt(), self.registry.definitions())
        return {
            "session_id": self.conversation.session_id,
            "state": self.state.value,
            "target": self.backend.summary(),
            "approval": self.approvals.describe(),
            "budget": self.budget.state(self.conversation, overhead).to_dict(),
            "turns": len(self.conversation.turns),
            "tasks": self.list_tasks(),
        }

    async def save(self) -> None:
        if self.store is None:
            raise RuntimeError("No session store configured")
        await self.store.save(self.conversation)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _event(self, kind: str, task_id: int | None = None, **data: Any) -> RuntimeEvent:
        return self.sequence.make(kind, task_id=task_id, **data)

    def _set_state(self, state: RuntimeState) -> RuntimeEvent:
        self.state = state
        return self._event("state", state=state.value)

    def _compaction_event(self, result: CompactionResult) -> RuntimeEvent:
        return self._event(
            "compaction",
            removed_turns=result.removed_turns,
            tokens_before=result.tokens_before,
            tokens_after=result.tokens_after,
            compaction_count=self.conversation.compaction_count,
        )

    def _tool_result(self, call: ToolCall, payload: Any, is_error: bool = False) -> RuntimeEvent:
        turn = Turn.tool_result(call, wrap_result(payload), is_error=is_error)
        self.conversation.append(turn)
        return self._event("tool_result", call_id=call.id, tool=call.name,
                           content=turn.content, is_error=is_error)

    def _system_prompt(self) -> str:
        if not self._snapshot:
            return self._base_prompt
        return f"{self._base_prompt}\n\n{SNAPSHOT_HEADER}\n```\n{self._snapshot}\n```"

    @staticmethod
    def _overhead(system_prompt: str, tools: list[dict[str, Any]]) -> int:
        return TokenEstimator.text_tokens(system_prompt) + TokenEstimator.text_tokens(
            json.dumps(tools, sort_keys=True)
        )

    @staticmethod
    def _task_payload(task: BackgroundTask) -> tuple[Any, bool]:
        if task.status is TaskStatus.COMPLETED:
            return task.result, False
        payload: dict[str, Any] = {"task_id": task.id, "status": task.status.value}
        if task.error:
            payload["error"] = task.error
        if task.result is not None:
            payload["partial"] = task.result
        return payload, task.status is not TaskStatus.CANCELLED

    def _task_notice(self) -> Turn | None:
        """Results of finished background tasks the model has not seen."""
        held, self._held_notice = self._held_notice, None
        finished = self.tasks.take_undelivered()
        if not finished:
            return held
        lines = [held.content] if held is not None else ["[Background task updates]"]
        for task in finished:
            payload, _ = self._task_payload(task)
            lines.append(
                f"- task {task.id} ({task.call.name}) {task.status.value}: "
                f"{json.dumps(payload, sort_keys=True, default=str)}"
            )
        logger.info("Delivering %d background task result(s)", len(finished))
        return Turn.user("\n".join(lines))


async def collect(events: AsyncIterator[RuntimeEvent]) -> list[RuntimeEvent]:
    """Drain an event stream into a list."""
    return [event async for event in events]


__all__ = ["AgentRuntime", "RuntimeState", "collect", "DEFAULT_SYSTEM_PROMPT"]
