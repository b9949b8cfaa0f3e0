"""run_shell: execute a command on the active execution target."""

from __future__ import annotations

import logging
from typing import Any, Union

from pydantic import BaseModel, Field, field_validator

from termagent.errors import CommandBlocked
from termagent.execution.process import parse_duration
from termagent.execution.types import Blocking, BlockingWithTimeout, NonBlocking, WaitMode
from termagent.tools.base import Tool, ToolContext, truncate

logger = logging.getLogger(__name__)

MAX_STREAM_CHARS = 4000


def matched_denylist_pattern(command: str, denylist: list[str]) -> str | None:
    lowered = command.lower()
    for pattern in denylist:
        if pattern and pattern.lower() in lowered:
            return pattern
    return None


def parse_wait(value: Union[bool, int, str, None]) -> WaitMode:
    """``true``/None waits, ``false`` backgrounds, seconds or a duration string bound the wait."""
    if value is None or value is True:
        return Blocking()
    if value is False:
        return NonBlocking()
    if isinstance(value, int):
        if value <= 0:
            raise ValueError("wait seconds must be positive")
        return BlockingWithTimeout(float(value))
    return BlockingWithTimeout(parse_duration(value))


class ShellArgs(BaseModel):
    command: str = Field(min_length=1, description="The shell command to execute")
    wait: Union[bool, int, str] = Field(
        default=True,
        description=(
            "true (default) waits to completion; false runs it in the background and "
            "returns a task id; seconds or a duration like '30s', '10m', '1h' waits up "
            "to that timeout."
        ),
    )

    @field_validator("wait")
    @classmethod
    def _check_wait(cls, v: Union[bool, int, str]) -> Union[bool, int, str]:
        parse_wait(v)
        return v


class RunShellTool(Tool):
    name = "run_shell"
    description = (
        "Run a shell command on the execution target and return its exit code, "
        "stdout and stderr. Use wait=false for long-running commands and poll "
        "with capture_pane or the task list."
    )
    Args = ShellArgs
    risk_bearing = True
    max_output_chars = MAX_STREAM_CHARS

    def __init__(self, denylist: list[str]) -> None:
        self._denylist = denylist

    def wait_mode(self, args: ShellArgs) -> WaitMode:
        return parse_wait(args.wait)

    async def run(self, args: ShellArgs, ctx: ToolContext) -> dict[str, Any]:
        pattern = matched_denylist_pattern(args.command, self._denylist)
        if pattern is not None:
            raise CommandBlocked(f"command blocked by shell denylist pattern `{pattern}`")

        logger.debug("run_shell on %s: %s", ctx.backend.summary(), args.command)
        output = await ctx.backend.run(args.command, token=ctx.token, on_output=ctx.on_output)
        stdout, out_cut = truncate(output.stdout, MAX_STREAM_CHARS)
        stderr, err_cut = truncate(output.stderr, MAX_STREAM_CHARS)
        payload: dict[str, Any] = {
            "exit_code": output.exit_code,
            "stdout": stdout,
            "stderr": stderr,
        }
        if out_cut or err_cut:
            payload["truncated"] = True
        if output.timed_out:
            payload["timed_out"] = True
        if output.cancelled:
            payload["cancelled"] = True
        return payload
