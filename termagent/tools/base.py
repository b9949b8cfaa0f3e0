"""Tool contract: typed arguments, streamed execution, JSON result envelope."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, ClassVar

from pydantic import BaseModel

from termagent.config import Settings
from termagent.execution.types import Blocking, CancellationToken, OutputCallback, WaitMode

if TYPE_CHECKING:
    from termagent.execution.backend import ExecutionBackend

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "...[truncated]"


class ToolEnvelope(BaseModel):
    result: Any
    harness_timestamp: str


def harness_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def wrap_result(payload: Any) -> str:
    """Serialize a tool payload inside the standard envelope."""
    return ToolEnvelope(result=payload, harness_timestamp=harness_timestamp()).model_dump_json()


def error_payload(kind: str, message: str) -> dict[str, Any]:
    return {"error": kind, "message": message}


def truncate(text: str, limit: int) -> tuple[str, bool]:
    if len(text) <= limit:
        return text, False
    return text[:limit] + TRUNCATION_MARKER, True


def truncate_tail(text: str, limit: int) -> tuple[str, bool]:
    """Keep the last ``limit`` characters."""
    if len(text) <= limit:
        return text, False
    return TRUNCATION_MARKER + text[-limit:], True


@dataclass
class ToolStreamEvent:
    type: str  # started | stdout | stderr | completed
    data: str | None = None
    task_id: str | None = None
    payload: Any = None
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type}
        if self.task_id is not None:
            out["task_id"] = self.task_id
        if self.data is not None:
            out["data"] = self.data
        if self.type == "completed":
            out["is_error"] = self.is_error
        return out


@dataclass
class ToolContext:
    backend: "ExecutionBackend"
    settings: Settings
    token: CancellationToken
    on_output: OutputCallback | None = None
    task_id: str | None = None


class Tool(ABC):
    """Base class for all tools.

    Subclasses declare ``name``, ``description`` and a pydantic ``Args``
    model. Risk-bearing tools additionally require the model to attach
    safety metadata (risk, mutation, privesc, why) to every call.
    """

    name: ClassVar[str]
    description: ClassVar[str]
    Args: ClassVar[type[BaseModel]]
    risk_bearing: ClassVar[bool] = False
    mutating: ClassVar[bool] = False
    max_output_chars: ClassVar[int | None] = None

    def wait_mode(self, args: BaseModel) -> WaitMode:
        return Blocking()

    @abstractmethod
    async def run(self, args: Any, ctx: ToolContext) -> Any:
        """Execute the tool and return a JSON-serializable payload."""

    def input_schema(self) -> dict[str, Any]:
        schema = self.Args.model_json_schema()
        schema.pop("title", None)
        if self.risk_bearing:
            props = schema.setdefault("properties", {})
            props["risk"] = {
                "type": "string",
                "enum": ["low", "medium", "high"],
                "description": "Your assessment of how risky this call is.",
            }
            props["mutation"] = {
                "type": "boolean",
                "description": "True if the call changes files, processes or system state.",
            }
            props["privesc"] = {
                "type": "boolean",
                "description": "True if the call escalates privileges (sudo, su, doas).",
            }
            props["why"] = {
                "type": "string",
                "description": "One sentence justifying the call.",
            }
            required = schema.setdefault("required", [])
            required.extend(k for k in ("risk", "mutation", "privesc", "why") if k not in required)
        return schema

    def definition(self) -> dict[str, Any]:
        """Tool definition in Anthropic API format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema(),
        }

    async def stream(self, args: Any, ctx: ToolContext) -> AsyncIterator[ToolStreamEvent]:
        """Run the tool, yielding output chunks as they arrive.

        Always yields ``started`` first and ``completed`` last when the tool
        returns normally. Exceptions from ``run`` propagate after any
        buffered output has been yielded.
        """
        queue: asyncio.Queue[ToolStreamEvent | None] = asyncio.Queue()

        def on_output(stream: str, chunk: str) -> None:
            queue.put_nowait(ToolStreamEvent(type=stream, data=chunk, task_id=ctx.task_id))

        yield ToolStreamEvent(type="started", task_id=ctx.task_id)
        task = asyncio.create_task(self.run(args, replace(ctx, on_output=on_output)))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            payload = task.result()
        finally:
            if not task.done():
                task.cancel()
        yield ToolStreamEvent(
            type="completed",
            data=wrap_result(payload),
            task_id=ctx.task_id,
            payload=payload,
        )
