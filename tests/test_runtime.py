"""Tests for termagent/runtime/core.py -- the turn loop against a scripted model."""

import asyncio
import json
import sys
from collections import defaultdict

import pytest

from termagent.errors import RateLimited, TurnInProgress
from termagent.execution.types import NonBlocking
from termagent.runtime.core import SNAPSHOT_HEADER, RuntimeState, collect
from termagent.runtime.models import ModelResponse, ToolCall
from termagent.storage import SessionStore
from termagent.tools.clock import TimeTool

SAFE = {"risk": "low", "mutation": False, "privesc": False, "why": "inspect only"}


def _python(code: str) -> str:
    return f'{sys.executable} -c "{code}"'


def _shell(command: str, call_id: str = "toolu_1", **extra) -> ModelResponse:
    return ModelResponse(
        tool_calls=[ToolCall(id=call_id, name="run_shell", arguments={"command": command, **SAFE, **extra})],
        stop_reason="tool_use",
    )


def _kinds(events) -> list[str]:
    return [e.kind for e in events]


def _payload(event) -> dict:
    return json.loads(event.data["content"])["result"]


class StubbornTool(TimeTool):
    """Runs in the background and ignores its cancellation token."""

    name = "stubborn"

    def wait_mode(self, args):
        return NonBlocking()

    async def run(self, args, ctx):
        await asyncio.sleep(60)


def _record_streams(runtime) -> dict[int, list[dict]]:
    streams: dict[int, list[dict]] = defaultdict(list)

    async def record(event):
        streams[event.task_id].append(event.data["stream"])

    runtime.bus.on("tool_stream", record)
    return streams


class TestPlainTurns:
    @pytest.mark.asyncio
    async def test_text_reply(self, settings, make_runtime, script):
        transport = script(ModelResponse(text="Hello there.", usage={"input_tokens": 10}))
        runtime = await make_runtime(settings, transport)

        events = await collect(runtime.submit("hi"))

        assert _kinds(events) == ["user_turn", "state", "assistant_turn", "state", "turn_complete"]
        assert events[1].data["state"] == "awaiting_model"
        assert events[2].data["content"] == "Hello there."
        assert events[-1].data["reason"] == "done"
        seqs = [e.seq for e in events]
        assert seqs == sorted(seqs) and len(set(seqs)) == len(seqs)
        assert [t.role for t in runtime.conversation.turns] == ["user", "assistant"]
        assert runtime.state is RuntimeState.IDLE

    @pytest.mark.asyncio
    async def test_request_carries_tools_and_system_prompt(self, settings, make_runtime, script):
        transport = script(ModelResponse(text="ok"))
        runtime = await make_runtime(settings, transport)
        await collect(runtime.submit("hi"))

        request = transport.requests[0]
        assert {t["name"] for t in request["tools"]} == {"run_shell", "read_file", "write_file", "time"}
        assert "termagent" in request["system_prompt"]
        assert "local" in request["system_prompt"]

    @pytest.mark.asyncio
    async def test_startup_snapshot_only_in_first_request(self, settings, make_runtime, script):
        transport = script(ModelResponse(text="I see it."), ModelResponse(text="ok"))
        runtime = await make_runtime(settings, transport, startup_snapshot="ERROR: disk full")

        await collect(runtime.submit("what is on screen?"))
        await collect(runtime.submit("thanks"))

        assert SNAPSHOT_HEADER in transport.requests[0]["system_prompt"]
        assert "ERROR: disk full" in transport.requests[0]["system_prompt"]
        assert "ERROR: disk full" not in transport.requests[1]["system_prompt"]

    @pytest.mark.asyncio
    async def test_transport_error_ends_turn(self, settings, make_runtime, script):
        runtime = await make_runtime(settings, script(RateLimited("slow down", retry_after=3.0)))

        events = await collect(runtime.submit("hi"))

        error = next(e for e in events if e.kind == "error")
        assert error.data["error"] == "RateLimited"
        assert error.data["retry_after"] == 3.0
        assert events[-1].data["reason"] == "error"
        assert runtime.state is RuntimeState.IDLE


class TestToolCalls:
    @pytest.mark.asyncio
    async def test_inline_shell_call(self, settings, make_runtime, script):
        transport = script(_shell(_python("print('hello from tool')")), ModelResponse(text="It printed hello."))
        runtime = await make_runtime(settings, transport)

        events = await collect(runtime.submit("say hello"))
        kinds = _kinds(events)

        assert kinds.index("tool_call") < kinds.index("tool_stream") < kinds.index("tool_result")
        streams = [e.data["stream"] for e in events if e.kind == "tool_stream"]
        assert streams[0]["type"] == "started"
        assert any(s["type"] == "stdout" and "hello from tool" in s.get("data", "") for s in streams)
        result = next(e for e in events if e.kind == "tool_result")
        assert not result.data["is_error"]
        assert _payload(result)["exit_code"] == 0
        # No approval needed for a low-risk read-only call
        assert "approval_required" not in kinds
        assert [t.role for t in runtime.conversation.turns] == ["user", "assistant", "tool", "assistant"]
        assert transport.requests[1]["turns"][-1].role == "tool"

    @pytest.mark.asyncio
    async def test_invalid_call_reported_to_model(self, settings, make_runtime, script):
        bad = ModelResponse(tool_calls=[ToolCall(id="toolu_x", name="launch_rockets")])
        runtime = await make_runtime(settings, script(bad, ModelResponse(text="Sorry.")))

        events = await collect(runtime.submit("go"))

        result = next(e for e in events if e.kind == "tool_result")
        assert result.data["is_error"]
        assert json.loads(result.data["content"])["result"]["error"] == "invalid_arguments"
        assert events[-1].data["reason"] == "done"

    @pytest.mark.asyncio
    async def test_missing_safety_metadata_rejected(self, settings, make_runtime, script):
        call = ToolCall(id="toolu_s", name="run_shell", arguments={"command": "ls"})
        runtime = await make_runtime(settings, script(ModelResponse(tool_calls=[call]), ModelResponse(text="ok")))

        events = await collect(runtime.submit("list"))

        result = next(e for e in events if e.kind == "tool_result")
        assert "safety metadata" in result.data["content"]

    @pytest.mark.asyncio
    async def test_iteration_cap(self, make_settings, make_runtime, script):
        time_call = ModelResponse(tool_calls=[ToolCall(id="toolu_t", name="time")])
        runtime = await make_runtime(make_settings(max_tool_turns=2), script(time_call, time_call, time_call))

        events = await collect(runtime.submit("what time is it, repeatedly"))

        assert _kinds(events).count("assistant_turn") == 2
        capped = next(e for e in events if e.kind == "capped_iterations")
        assert capped.data["limit"] == 2
        assert events[-1].data["reason"] == "capped"


class TestTurnDiscipline:
    @pytest.mark.asyncio
    async def test_second_submit_while_busy(self, settings, make_runtime, script):
        runtime = await make_runtime(settings, script(ModelResponse(text="one"), ModelResponse(text="two")))

        first = runtime.submit("first")
        assert (await first.__anext__()).kind == "user_turn"

        with pytest.raises(TurnInProgress):
            await runtime.submit("second").__anext__()
        with pytest.raises(TurnInProgress):
            await runtime.compact()

        rest = [event async for event in first]
        assert rest[-1].kind == "turn_complete"
        # Free again once the first turn is drained
        assert _kinds(await collect(runtime.submit("second")))[-1] == "turn_complete"

    @pytest.mark.asyncio
    async def test_budget_refusal_leaves_conversation_untouched(self, make_settings, make_runtime, script):
        transport = script(ModelResponse(text="never sent"))
        runtime = await make_runtime(make_settings(context_window=4000, max_tokens=500), transport)

        events = await collect(runtime.submit("z" * 40_000))

        assert _kinds(events) == ["budget_refused", "turn_complete"]
        refused = events[0].data
        assert refused["remedies"] == ["compact", "new_session"]
        assert refused["projected"] > refused["ceiling"] == 3500
        assert events[1].data["reason"] == "budget_refused"
        assert runtime.conversation.turns == []
        assert transport.requests == []


class TestBackgroundTasks:
    @pytest.mark.asyncio
    async def test_wait_false_spawns_and_delivers_next_turn(self, settings, make_runtime, script):
        transport = script(
            _shell(_python("print('bg done')"), wait=False),
            ModelResponse(text="Started it in the background."),
            ModelResponse(text="The task finished."),
        )
        runtime = await make_runtime(settings, transport)
        bus_events = []

        async def record(event):
            bus_events.append(event)

        runtime.bus.on("*", record)

        events = await collect(runtime.submit("run it in the background"))

        spawned = next(e for e in events if e.kind == "task_spawned")
        task_id = spawned.data["task_id"]
        result = next(e for e in events if e.kind == "tool_result")
        assert _payload(result) == {"task_id": task_id, "status": "running"}

        snap = await runtime.tasks.wait(task_id, timeout=10)
        assert snap.status.value == "completed"

        await collect(runtime.submit("is it done?"))

        turns = transport.requests[2]["turns"]
        notice, user = turns[-2], turns[-1]
        assert notice.role == "user"
        assert notice.content.startswith("[Background task updates]")
        assert f"task {task_id} (run_shell) completed" in notice.content
        assert "bg done" in notice.content
        assert user.content == "is it done?"
        # Delivered exactly once
        assert runtime.tasks.take_undelivered() == []

        await runtime.bus.stop()
        assert any(e.kind == "task_finished" and e.task_id == task_id for e in bus_events)
        assert any(e.kind == "tool_stream" and e.task_id == task_id for e in bus_events)

    @pytest.mark.asyncio
    async def test_timed_wait_returns_result_inline(self, settings, make_runtime, script):
        transport = script(_shell(_python("print(42)"), wait="10s"), ModelResponse(text="42"))
        runtime = await make_runtime(settings, transport)

        events = await collect(runtime.submit("compute"))

        spawned = next(e for e in events if e.kind == "task_spawned")
        assert spawned.data["timeout"] == 10.0
        result = next(e for e in events if e.kind == "tool_result")
        assert _payload(result)["stdout"].strip() == "42"
        assert runtime.tasks.take_undelivered() == []

    @pytest.mark.asyncio
    async def test_timed_wait_still_running(self, make_settings, make_runtime, script):
        transport = script(_shell(_python("import time; time.sleep(30)"), wait="5s"), ModelResponse(text="ok"))
        runtime = await make_runtime(make_settings(interactive_wait_seconds=0.2), transport)

        events = await collect(runtime.submit("sleep"))

        payload = _payload(next(e for e in events if e.kind == "tool_result"))
        assert payload["status"] == "running"
        assert "still running" in payload["message"]
        assert runtime.list_tasks()[0]["status"] == "running"

    @pytest.mark.asyncio
    async def test_cancel_and_timeout_commands(self, settings, make_runtime, script):
        transport = script(_shell(_python("import time; time.sleep(30)"), wait=False), ModelResponse(text="ok"))
        runtime = await make_runtime(settings, transport)
        await collect(runtime.submit("start"))

        task_id = runtime.list_tasks()[0]["id"]
        assert runtime.set_task_timeout(None, 60) == task_id
        snap = await runtime.cancel_task(task_id)
        assert snap.status.value == "cancelled"
        assert runtime.list_tasks()[0]["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_forced_cancel_still_completes_stream(self, settings, make_runtime, script):
        transport = script(
            ModelResponse(tool_calls=[ToolCall(id="toolu_s", name="stubborn")], stop_reason="tool_use"),
            ModelResponse(text="started"),
        )
        runtime = await make_runtime(settings, transport)
        runtime.registry.register(StubbornTool())
        streams = _record_streams(runtime)

        await collect(runtime.submit("go"))
        task_id = runtime.list_tasks()[0]["id"]
        snap = await runtime.cancel_task(task_id)
        assert snap.status.value == "cancelled"

        await asyncio.gather(runtime.tasks.get(task_id).handle, return_exceptions=True)
        await runtime.bus.stop()
        types = [s["type"] for s in streams[task_id]]
        assert types[0] == "started"
        assert types[-1] == "completed"
        assert streams[task_id][-1]["is_error"]

    @pytest.mark.asyncio
    async def test_shutdown_completes_running_streams(self, settings, make_runtime, script):
        transport = script(
            ModelResponse(tool_calls=[ToolCall(id="toolu_s", name="stubborn")], stop_reason="tool_use"),
            ModelResponse(text="started"),
        )
        runtime = await make_runtime(settings, transport)
        runtime.registry.register(StubbornTool())
        streams = _record_streams(runtime)

        await collect(runtime.submit("go"))
        task_id = runtime.list_tasks()[0]["id"]
        await runtime.tasks.stop()
        await runtime.bus.stop()

        assert [s["type"] for s in streams[task_id]] == ["started", "completed"]
        assert runtime.list_tasks()[0]["status"] == "cancelled"


class TestCommands:
    @pytest.mark.asyncio
    async def test_status(self, settings, make_runtime, script):
        runtime = await make_runtime(settings, script(ModelResponse(text="hi")))
        await collect(runtime.submit("hello"))

        status = runtime.status()
        assert status["session_id"] == runtime.conversation.session_id
        assert status["state"] == "idle"
        assert status["target"] == "local"
        assert status["approval"] == "ask"
        assert status["turns"] == 2
        assert status["tasks"] == []
        assert status["budget"]["estimate"] > runtime.conversation.total_cost

    @pytest.mark.asyncio
    async def test_manual_compact_on_short_conversation(self, settings, make_runtime, script):
        runtime = await make_runtime(settings, script(ModelResponse(text="hi")))
        await collect(runtime.submit("hello"))
        assert await runtime.compact() is None

    @pytest.mark.asyncio
    async def test_save_and_resume(self, settings, database, make_runtime, script):
        store = SessionStore(database)
        runtime = await make_runtime(settings, script(ModelResponse(text="saved reply")), store=store)
        await collect(runtime.submit("remember this"))
        await runtime.save()

        resumed = await store.resume(runtime.conversation.session_id)
        assert resumed.model_dump_json() == runtime.conversation.model_dump_json()

        second = await make_runtime(settings, script(ModelResponse(text="continuing")), conversation=resumed)
        await collect(second.submit("and now?"))
        assert [t.content for t in second.conversation.turns[:2]] == ["remember this", "saved reply"]

    @pytest.mark.asyncio
    async def test_save_without_store(self, settings, make_runtime, script):
        runtime = await make_runtime(settings, script())
        with pytest.raises(RuntimeError):
            await runtime.save()
