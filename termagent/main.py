"""termagent entry point.

Wires components in dependency order:
  Settings -> Database -> Backend (+ tmux binder) -> Tools -> Transport
  -> Approvals / Tasks / Budget -> AgentRuntime

``run_once`` is the one-shot front end: approvals are non-interactive, so
gated calls fail closed unless TERMAGENT_AUTO_APPROVE is set.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import httpx

from termagent.config import Settings, load_settings
from termagent.errors import ConfigurationError
from termagent.execution.backend import create_backend
from termagent.runtime.approval import ApprovalPolicyEngine
from termagent.runtime.budget import ContextBudgetManager, ExtractiveSummarizer, ModelProfile, ModelSummarizer
from termagent.runtime.core import AgentRuntime
from termagent.runtime.events import EventBus, EventSequence, RuntimeEvent
from termagent.runtime.models import Conversation
from termagent.runtime.tasks import BackgroundTaskManager
from termagent.runtime.transport import AnthropicTransport
from termagent.storage import Database, SessionStore
from termagent.tools import ToolRegistry, register_builtin_tools

logger = logging.getLogger(__name__)


async def create_components(settings: Settings, conversation: Conversation | None = None) -> dict:
    """Initialize all components in dependency order.

    Returns a dict of components; ``runtime`` is the one front ends use.
    If any step fails, whatever was already created is released before the
    error propagates.
    """
    components: dict = {}
    try:
        database = Database(settings)
        await database.connect()
        components["database"] = database
        store = components["store"] = SessionStore(database)

        backend = components["backend"] = create_backend(settings)
        snapshot = ""
        if settings.tmux_enabled:
            binder = backend.attach_tmux(settings.agent_name)
            snapshot = (await binder.bind()).snapshot

        web_http = components["web_http"] = httpx.AsyncClient(follow_redirects=False)
        registry = components["registry"] = ToolRegistry()
        register_builtin_tools(registry, settings, web_http)

        transport = components["transport"] = AnthropicTransport(settings)
        summarizer = ModelSummarizer(transport, ExtractiveSummarizer()) if settings.model_summaries else None
        budget = ContextBudgetManager(ModelProfile.from_settings(settings), settings, summarizer)

        sequence = EventSequence()
        bus = components["bus"] = EventBus()
        tasks = components["tasks"] = BackgroundTaskManager(
            cancel_grace=settings.cancel_grace_seconds,
            supervision_interval=settings.supervision_interval,
            bus=bus,
            sequence=sequence,
        )
        approvals = ApprovalPolicyEngine(
            policy=settings.approval_policy,
            interactive=settings.interactive,
            auto_approve=settings.auto_approve,
        )

        runtime = AgentRuntime(
            settings=settings,
            transport=transport,
            registry=registry,
            backend=backend,
            approvals=approvals,
            tasks=tasks,
            budget=budget,
            bus=bus,
            sequence=sequence,
            conversation=conversation,
            store=store,
            startup_snapshot=snapshot,
        )
        await runtime.start()
        components["runtime"] = runtime
    except Exception:
        logger.error("Startup failed, releasing %s", ", ".join(components) or "nothing")
        await _release_partial(components)
        raise

    logger.info(
        "termagent ready: %s on %s, session %s",
        settings.model,
        backend.summary(),
        runtime.conversation.session_id,
    )
    return components


async def _release_partial(components: dict) -> None:
    """Undo a half-finished create_components. Nothing is persisted."""
    tasks = components.get("tasks")
    if tasks:
        await tasks.stop()
    bus = components.get("bus")
    if bus:
        await bus.stop()
    backend = components.get("backend")
    if backend:
        await backend.close()
    await shutdown_components(components)


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    runtime = components.get("runtime")
    if runtime:
        await runtime.close()

    web_http = components.get("web_http")
    if web_http:
        await web_http.aclose()

    transport = components.get("transport")
    if transport:
        await transport.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("termagent shutdown complete.")


def render_event(event: RuntimeEvent) -> str | None:
    """Plain-text rendering for the one-shot front end."""
    data = event.data
    if event.kind == "assistant_turn" and data.get("content"):
        return data["content"]
    if event.kind == "tool_call":
        return f"$ {data['tool']} {json.dumps(data['arguments'], sort_keys=True)}"
    if event.kind == "tool_stream" and data["stream"].get("data") and data["stream"]["type"] != "completed":
        return data["stream"]["data"].rstrip("\n")
    if event.kind == "tool_result" and data.get("is_error"):
        return f"[{data['tool']} failed] {data['content']}"
    if event.kind in ("budget_refused", "error"):
        return f"[{event.kind}] {data.get('message', '')}"
    if event.kind == "capped_iterations":
        return f"[stopped after {data['limit']} tool iterations]"
    return None


async def run_once(prompt: str, settings: Settings | None = None) -> int:
    """Run a single non-interactive turn and print its output. Returns an exit code."""
    settings = settings or load_settings(interactive=False)
    components = await create_components(settings)
    runtime: AgentRuntime = components["runtime"]
    exit_code = 0
    try:
        async for event in runtime.submit(prompt):
            line = render_event(event)
            if line:
                print(line)
            if event.kind in ("error", "budget_refused"):
                exit_code = 1
    finally:
        await shutdown_components(components)
    return exit_code


def main() -> None:
    """Entry point -- load settings, run the prompt given on the command line or stdin."""
    try:
        settings = load_settings(interactive=False)
    except ConfigurationError as e:
        print(f"termagent: {e}", file=sys.stderr)
        raise SystemExit(2) from e

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    prompt = " ".join(sys.argv[1:]).strip() or sys.stdin.read().strip()
    if not prompt:
        print("usage: termagent <prompt>", file=sys.stderr)
        raise SystemExit(2)

    logger.info("Starting termagent: %s", settings.agent_name)
    logger.info("Model: %s", settings.model)
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set -- model calls will fail")
    if not settings.brave_search_api_key:
        logger.warning("BRAVE_SEARCH_API_KEY not set -- web_search will be unavailable")

    raise SystemExit(asyncio.run(run_once(prompt, settings)))


if __name__ == "__main__":
    main()
