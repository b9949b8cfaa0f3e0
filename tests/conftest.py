"""Shared fixtures: settings on tmp_path, a local backend, tool contexts,
and an AgentRuntime wired to a scripted fake transport.

No test needs tmux, SSH, a container engine or network access. Shell
commands run through ``sys.executable -c`` so they behave the same
everywhere.
"""

import pytest
import pytest_asyncio

from termagent.config import Settings
from termagent.execution.backend import LocalBackend
from termagent.execution.types import CancellationToken
from termagent.runtime.approval import ApprovalPolicyEngine
from termagent.runtime.budget import ContextBudgetManager, ModelProfile
from termagent.runtime.core import AgentRuntime
from termagent.runtime.events import EventBus, EventSequence
from termagent.runtime.models import ModelResponse
from termagent.runtime.tasks import BackgroundTaskManager
from termagent.storage.database import Database
from termagent.tools import ToolRegistry
from termagent.tools.base import ToolContext
from termagent.tools.clock import TimeTool
from termagent.tools.files import ReadFileTool, WriteFileTool
from termagent.tools.shell import RunShellTool


def _make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "workspace_dir": str(tmp_path / "workspace"),
        "session_db_url": f"sqlite+aiosqlite:///{tmp_path / 'sessions.db'}",
        "tmux_enabled": False,
        "cancel_grace_seconds": 0.5,
        "supervision_interval": 0.05,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeTransport:
    """Replays scripted ModelResponses; scripted exceptions are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[dict] = []

    async def send(self, conversation, tools, system_prompt):
        self.requests.append(
            {"turns": list(conversation.turns), "tools": tools, "system_prompt": system_prompt}
        )
        if not self.responses:
            return ModelResponse(text="(script exhausted)")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def _make_runtime(settings, transport, backend=None, **kwargs) -> AgentRuntime:
    backend = backend or LocalBackend(settings)
    registry = ToolRegistry()
    registry.register(RunShellTool(settings.shell_denylist))
    registry.register(ReadFileTool())
    registry.register(WriteFileTool())
    registry.register(TimeTool())

    sequence = EventSequence()
    bus = EventBus()
    tasks = BackgroundTaskManager(
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
    budget = ContextBudgetManager(ModelProfile.from_settings(settings), settings)
    return AgentRuntime(
        settings=settings,
        transport=transport,
        registry=registry,
        backend=backend,
        approvals=approvals,
        tasks=tasks,
        budget=budget,
        bus=bus,
        sequence=sequence,
        **kwargs,
    )


@pytest.fixture
def make_settings(tmp_path):
    """Factory fixture: make_settings(**overrides) -> Settings."""
    return lambda **overrides: _make_settings(tmp_path, **overrides)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return _make_settings(tmp_path)


@pytest.fixture
def backend(settings) -> LocalBackend:
    return LocalBackend(settings)


@pytest.fixture
def ctx(backend, settings) -> ToolContext:
    return ToolContext(backend=backend, settings=settings, token=CancellationToken())


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.connect()
    yield db
    await db.disconnect()


@pytest_asyncio.fixture
async def make_runtime():
    """Async factory: ``await make_runtime(settings, transport, **kwargs)``.

    Runtimes are started on creation and closed at teardown.
    """
    created: list[AgentRuntime] = []

    async def factory(settings, transport, backend=None, **kwargs) -> AgentRuntime:
        runtime = _make_runtime(settings, transport, backend=backend, **kwargs)
        await runtime.start()
        created.append(runtime)
        return runtime

    yield factory
    for runtime in created:
        await runtime.close()


@pytest.fixture
def script():
    """Factory: ``script(*responses)`` -> a FakeTransport replaying them."""
    return FakeTransport
