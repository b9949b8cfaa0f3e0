"""capture_pane / send_keys against the bound tmux pane, plus tmux_manage."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, Field, model_validator

from termagent.errors import ExecutionFailed, InvalidArguments
from termagent.execution.process import parse_duration
from termagent.execution.tmux import CaptureOptions, SessionBinder
from termagent.tools.base import Tool, ToolContext, truncate_tail

MAX_CAPTURE_CHARS = 8000


def _binder(ctx: ToolContext) -> SessionBinder:
    binder = ctx.backend.binder
    if binder is None:
        raise ExecutionFailed("tmux is not enabled for this execution target")
    return binder


def _delay_seconds(delay: str | None) -> float:
    if not delay:
        return 0.0
    try:
        return parse_duration(delay)
    except ValueError as e:
        raise InvalidArguments(str(e)) from e


def _check_delay(v: str | None) -> str | None:
    if v is not None:
        parse_duration(v)
    return v


Delay = Annotated[str | None, AfterValidator(_check_delay)]


class CapturePaneArgs(BaseModel):
    start: str | None = Field(default=None, description="First line to capture (tmux -S), e.g. '-200' or '-'")
    end: str | None = Field(default=None, description="Last line to capture (tmux -E)")
    join_wrapped_lines: bool = True
    preserve_trailing_spaces: bool = False
    include_escape_sequences: bool = False
    escape_non_printable: bool = False
    include_alternate_screen: bool = False
    delay: Delay = Field(default=None, description="Wait before capturing, like '500ms' or '2s'")


class CapturePaneTool(Tool):
    name = "capture_pane"
    description = (
        "Capture the visible content of the shared tmux pane. Use it to poll "
        "long-running or interactive commands."
    )
    Args = CapturePaneArgs
    max_output_chars = MAX_CAPTURE_CHARS

    async def run(self, args: CapturePaneArgs, ctx: ToolContext) -> dict[str, Any]:
        binder = _binder(ctx)
        options = CaptureOptions(
            start=args.start,
            end=args.end,
            join_wrapped_lines=args.join_wrapped_lines,
            preserve_trailing_spaces=args.preserve_trailing_spaces,
            include_escape_sequences=args.include_escape_sequences,
            escape_non_printable=args.escape_non_printable,
            include_alternate_screen=args.include_alternate_screen,
            delay=_delay_seconds(args.delay),
        )
        text, cut = truncate_tail(await binder.capture(options), MAX_CAPTURE_CHARS)
        payload: dict[str, Any] = {"pane": binder.pane_id, "content": text}
        if cut:
            payload["truncated"] = True
        return payload


class SendKeysArgs(BaseModel):
    keys: list[str] = Field(
        default_factory=list,
        description='tmux key names to send, e.g. "C-c", "C-z", "Enter", "Up".',
    )
    literal_text: str | None = Field(default=None, description="Literal text to type (tmux send-keys -l)")
    enter: bool = Field(default=False, description="Press Enter after the other keys")
    delay: Delay = Field(default=None, description="Wait before sending, like '500ms' or '2s'")


class SendKeysTool(Tool):
    name = "send_keys"
    description = (
        "Send keys to the shared tmux pane (Ctrl-C, Enter, arrows, or literal "
        "text) to drive interactive or stuck programs."
    )
    Args = SendKeysArgs
    risk_bearing = True

    async def run(self, args: SendKeysArgs, ctx: ToolContext) -> dict[str, Any]:
        if not args.keys and args.literal_text is None and not args.enter:
            raise InvalidArguments("send_keys requires keys, literal_text or enter")
        binder = _binder(ctx)
        message = await binder.send_keys(
            keys=args.keys,
            literal_text=args.literal_text,
            press_enter=args.enter,
            delay=_delay_seconds(args.delay),
        )
        return {"pane": binder.pane_id, "message": message}


class TmuxManageArgs(BaseModel):
    action: Literal["create_session", "kill_session", "create_pane", "kill_pane"]
    session: str | None = Field(
        default=None,
        description="Session name; prefixed with 'termagent-' if needed. Defaults to the shared session.",
    )
    pane: str | None = Field(default=None, description="Pane title, required for the pane actions")

    @model_validator(mode="after")
    def _targets(self) -> "TmuxManageArgs":
        if self.action == "kill_session" and not (self.session or "").strip():
            raise ValueError("kill_session requires session")
        if self.action in ("create_pane", "kill_pane") and not (self.pane or "").strip():
            raise ValueError(f"{self.action} requires pane")
        return self


class TmuxManageTool(Tool):
    name = "tmux_manage"
    description = (
        "Create or kill termagent-owned tmux sessions and panes. Only sessions "
        "named 'termagent-*' that termagent created can be touched; the shared "
        "session and its shared pane can't be killed."
    )
    Args = TmuxManageArgs
    risk_bearing = True
    mutating = True

    async def run(self, args: TmuxManageArgs, ctx: ToolContext) -> dict[str, Any]:
        binder = _binder(ctx)
        if args.action == "create_session":
            return await binder.create_session(args.session)
        if args.action == "kill_session":
            return await binder.kill_session(args.session)
        if args.action == "create_pane":
            return await binder.create_pane(args.session, args.pane)
        return await binder.kill_pane(args.session, args.pane)
