"""Name-keyed tool registry: validates calls and runs them as event streams."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator

from pydantic import BaseModel, ValidationError

from termagent.errors import InvalidArguments, ToolError
from termagent.runtime.models import SafetyMetadata, ToolCall
from termagent.tools.base import Tool, ToolContext, ToolStreamEvent, error_payload, wrap_result

logger = logging.getLogger(__name__)

_SAFETY_KEYS = ("risk", "mutation", "privesc", "why")


@dataclass
class ParsedCall:
    tool: Tool
    args: BaseModel
    call: ToolCall


class ToolRegistry:
    """Registers tools and dispatches validated calls to them.

    ``invoke`` never raises for tool failures: the stream always ends with a
    ``completed`` event, carrying an error payload when the tool raised.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning("Replacing tool registration for %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[dict[str, Any]]:
        """Return all tool definitions in Anthropic API format."""
        return [tool.definition() for tool in self._tools.values()]

    def parse_call(self, call: ToolCall) -> ParsedCall:
        """Validate a raw call structurally and attach its safety metadata.

        Raises InvalidArguments for unknown tools, schema violations, or a
        risk-bearing call without safety metadata.
        """
        tool = self._tools.get(call.name)
        if tool is None:
            raise InvalidArguments(f"Unknown tool: {call.name}")

        arguments = dict(call.arguments)
        safety = call.safety
        if tool.risk_bearing:
            declared = {k: arguments.pop(k) for k in _SAFETY_KEYS if k in arguments}
            if safety is None:
                if "risk" not in declared:
                    raise InvalidArguments(
                        f"{call.name} requires safety metadata (risk, mutation, privesc, why)"
                    )
                try:
                    safety = SafetyMetadata.model_validate(declared)
                except ValidationError as e:
                    raise InvalidArguments(f"Invalid safety metadata for {call.name}: {e}") from e

        try:
            args = tool.Args.model_validate(arguments)
        except ValidationError as e:
            raise InvalidArguments(f"Invalid arguments for {call.name}: {e}") from e

        return ParsedCall(
            tool=tool,
            args=args,
            call=call.model_copy(update={"safety": safety}),
        )

    async def invoke(self, parsed: ParsedCall, ctx: ToolContext) -> AsyncIterator[ToolStreamEvent]:
        name = parsed.tool.name
        started = finished = False
        try:
            async for event in parsed.tool.stream(parsed.args, ctx):
                started = started or event.type == "started"
                finished = finished or event.type == "completed"
                yield event
            return
        except asyncio.CancelledError:
            if not finished:
                logger.info("Tool %s cancelled mid-stream", name)
                if not started:
                    yield ToolStreamEvent(type="started", task_id=ctx.task_id)
                yield _failed(error_payload("cancelled", f"{name} was cancelled"), ctx)
            raise
        except ToolError as e:
            logger.info("Tool %s failed: %s", name, e)
            payload = error_payload(e.kind, str(e))
        except Exception as e:
            logger.exception("Tool dispatch error for %s", name)
            payload = error_payload("execution_failed", f"Tool error: {e}")

        if not started:
            yield ToolStreamEvent(type="started", task_id=ctx.task_id)
        yield _failed(payload, ctx)


def _failed(payload: dict[str, Any], ctx: ToolContext) -> ToolStreamEvent:
    return ToolStreamEvent(
        type="completed",
        data=wrap_result(payload),
        task_id=ctx.task_id,
        payload=payload,
        is_error=True,
    )
