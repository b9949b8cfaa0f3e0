"""tmux session binding: one shared, attachable pane per agent and target.

Everything here is expressed as shell snippets handed to a ``RawRunner``
(the backend's ``run_raw``), so the same binder works for local, SSH and
container targets. Commands typed into the pane are delimited by a prompt
marker ``[ta <id>: <exit>]`` installed into the pane's shell, which lets us
recover each command's output and exit status from captured text.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Any, Protocol

from termagent.errors import ExecutionFailed, NotFound, PermissionDenied, SessionInUse
from termagent.execution.process import shell_quote
from termagent.execution.types import (
    CancellationToken,
    ExecOutput,
    ExecutionTarget,
    OutputCallback,
)

logger = logging.getLogger(__name__)

SESSION_PREFIX = "termagent-"
WINDOW_NAME = "shared"
PANE_TITLE = "shared"
_MAX_NAME_LEN = 48
_POLL_INTERVAL = 0.05  # seconds
_PROMPT_INIT_TIMEOUT = 30.0  # seconds
_INTERRUPT_SETTLE_TIMEOUT = 2.0  # seconds
_MARKER_RE = re.compile(r"\[ta\s+(\d+):\s*(-?\d+)\s*\]")

PROMPT_SETUP_SCRIPT = (
    'if [ "${TA_PROMPT_LAYOUT:-}" != "v1" ]; then '
    "TA_PROMPT_LAYOUT=v1; "
    "TA_CMD_SEQ=${TA_CMD_SEQ:-0}; "
    "__ta_next_id() { TA_CMD_SEQ=$((TA_CMD_SEQ + 1)); TA_CMD_ID=$TA_CMD_SEQ; }; "
    "__ta_prompt_id() { printf '%s' \"${TA_CMD_ID:-0}\"; }; "
    'if [ -n "${BASH_VERSION:-}" ]; then '
    "TA_BASE_PS1=${TA_BASE_PS1:-$PS1}; "
    "__ta_precmd() { __ta_next_id; }; "
    'case ";${PROMPT_COMMAND:-};" in '
    '*";__ta_precmd;"*) ;; '
    '*) PROMPT_COMMAND="__ta_precmd${PROMPT_COMMAND:+;${PROMPT_COMMAND}}" ;; '
    "esac; "
    "PS1='[ta $(__ta_prompt_id): \\?] '\"$TA_BASE_PS1\"; "
    'elif [ -n "${ZSH_VERSION:-}" ]; then '
    "TA_BASE_PROMPT=${TA_BASE_PROMPT:-$PROMPT}; "
    "__ta_precmd() { __ta_next_id; }; "
    "if (( ${precmd_functions[(Ie)__ta_precmd]} == 0 )); then "
    "precmd_functions=(__ta_precmd $precmd_functions); "
    "fi; "
    "setopt PROMPT_SUBST; "
    "PROMPT='[ta $(__ta_prompt_id): %?] '\"$TA_BASE_PROMPT\"; "
    "else "
    "TA_BASE_PS1=${TA_BASE_PS1:-$PS1}; "
    "PS1='[ta $(__ta_next_id): $?] '\"$TA_BASE_PS1\"; "
    "fi; "
    "fi"
)


class RawRunner(Protocol):
    async def run_raw(
        self,
        script: str,
        stdin: bytes | None = None,
        token: CancellationToken | None = None,
    ) -> ExecOutput: ...


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------


def sanitize_name(raw: str) -> str:
    """Lowercase alnum plus single ``-``/``_`` separators, or ``agent``."""
    out: list[str] = []
    for ch in raw.strip().lower():
        if ch.isascii() and ch.isalnum():
            out.append(ch)
        elif ch in "-_":
            if out and out[-1] not in "-_":
                out.append(ch)
        elif out and out[-1] not in "-_":
            out.append("-")
    name = "".join(out).strip("-_")
    return name or "agent"


def session_name(agent_name: str) -> str:
    name = SESSION_PREFIX + sanitize_name(agent_name)
    return name[:_MAX_NAME_LEN].rstrip("-_")


# ---------------------------------------------------------------------------
# Command builders
# ---------------------------------------------------------------------------


@dataclass
class CaptureOptions:
    start: str | None = None
    end: str | None = None
    join_wrapped_lines: bool = True
    preserve_trailing_spaces: bool = False
    include_escape_sequences: bool = False
    escape_non_printable: bool = False
    include_alternate_screen: bool = False
    delay: float = 0.0

    @classmethod
    def full_history(cls) -> "CaptureOptions":
        return cls(start="-", end="-")


def build_capture_command(pane: str, options: CaptureOptions) -> str:
    parts = ["tmux capture-pane -p"]
    if options.join_wrapped_lines:
        parts.append("-J")
    if options.preserve_trailing_spaces:
        parts.append("-N")
    if options.include_escape_sequences:
        parts.append("-e")
    if options.escape_non_printable:
        parts.append("-C")
    if options.include_alternate_screen:
        parts.append("-a")
    if options.start is not None:
        parts.append(f"-S {shell_quote(options.start)}")
    if options.end is not None:
        parts.append(f"-E {shell_quote(options.end)}")
    parts.append(f"-t {shell_quote(pane)}")
    return " ".join(parts)


def build_send_keys_command(pane: str, keys: list[str]) -> str:
    quoted = " ".join(shell_quote(k) for k in keys)
    return f"tmux send-keys -t {shell_quote(pane)} {quoted}"


def build_send_literal_command(pane: str, text: str) -> str:
    return f"tmux send-keys -l -t {shell_quote(pane)} {shell_quote(text)}"


def ensure_pane_script(session: str) -> str:
    """Lookup-or-create script printing ``<pane_id>\\n<created 0|1>``."""
    return (
        "set -e\n"
        f"SESSION={shell_quote(session)}\n"
        f"WINDOW={shell_quote(WINDOW_NAME)}\n"
        "CREATED=0\n"
        'if ! tmux has-session -t "$SESSION" 2>/dev/null; then\n'
        '  tmux new-session -d -s "$SESSION" -n "$WINDOW"\n'
        "  CREATED=1\n"
        "fi\n"
        "if ! tmux list-windows -t \"$SESSION\" -F '#{window_name}' | grep -Fx -- \"$WINDOW\" >/dev/null 2>&1; then\n"
        '  tmux new-window -d -t "$SESSION" -n "$WINDOW"\n'
        "  CREATED=1\n"
        "fi\n"
        "PANE=\"$(tmux list-panes -t \"$SESSION:$WINDOW\" -F '#{pane_id}' | head -n1)\"\n"
        'if [ -z "$PANE" ]; then\n'
        '  echo "failed to resolve tmux pane target for $SESSION:$WINDOW" >&2\n'
        "  exit 1\n"
        "fi\n"
        f'tmux select-pane -t "$PANE" -T {shell_quote(PANE_TITLE)}\n'
        f'tmux set-option -q -t "$SESSION" {MANAGED_OPTION} 1\n'
        f'tmux set-option -q -p -t "$PANE" {MANAGED_OPTION} 1\n'
        "printf '%s\\n%s' \"$PANE\" \"$CREATED\"\n"
    )


def parse_ensured_pane(stdout: str) -> tuple[str, bool] | None:
    lines = [line.strip() for line in stdout.strip().splitlines()]
    if len(lines) != 2 or not lines[0]:
        return None
    if lines[1] not in ("0", "1"):
        return None
    return lines[0], lines[1] == "1"



# ---------------------------------------------------------------------------
# Managed sessions and panes
# ---------------------------------------------------------------------------

# Set on every session and pane termagent creates; the kill and pane scripts
# refuse targets without it.
MANAGED_OPTION = "@termagent_managed"
MAX_MANAGED_SESSIONS = 8
MAX_MANAGED_PANES = 8


def managed_session_name(requested: str | None, default: str) -> str:
    """Map a requested session to a ``termagent-`` name; empty means ``default``."""
    raw = (requested or "").strip()
    if not raw or raw == default:
        return default
    if raw.startswith(SESSION_PREFIX):
        raw = raw[len(SESSION_PREFIX):]
    return session_name(raw)


def managed_pane_title(requested: str | None) -> str:
    raw = (requested or "").strip()
    if not raw or raw == PANE_TITLE:
        return PANE_TITLE
    return sanitize_name(raw)[:_MAX_NAME_LEN]


# Session targets below are written "=$SESSION": tmux otherwise resolves a
# session target by prefix, and a kill must never reach a longer name.


def _require_managed(kind: str, var: str, flags: str = "", exact: bool = False) -> str:
    target = f'"={"$" + var}"' if exact else f'"${var}"'
    return (
        f'if [ "$(tmux show-options -v {flags}-t {target} {MANAGED_OPTION} 2>/dev/null || true)" != "1" ]; then\n'
        f'  echo "tmux {kind} \'${var}\' is not managed by termagent" >&2\n'
        "  exit 1\n"
        "fi\n"
    )


def _require_session(var: str = "SESSION") -> str:
    return (
        f'if ! tmux has-session -t "=${var}" 2>/dev/null; then\n'
        f'  echo "tmux session \'${var}\' was not found" >&2\n'
        "  exit 1\n"
        "fi\n"
    )


_FIND_PANE = (
    "PANE=\"$(tmux list-panes -s -t \"=$SESSION\" -F '#{pane_id}\t#{pane_title}' "
    "| awk -F '\t' -v title=\"$PANE_TITLE\" '$2==title {print $1; exit}')\"\n"
)


def create_session_script(session: str, max_sessions: int = MAX_MANAGED_SESSIONS) -> str:
    """Create or reuse a managed session; prints ``<session>\\n<pane_id>\\n<created>``."""
    return (
        "set -e\n"
        f"SESSION={shell_quote(session)}\n"
        f"WINDOW={shell_quote(WINDOW_NAME)}\n"
        f"PANE_TITLE={shell_quote(PANE_TITLE)}\n"
        "CREATED=0\n"
        'if tmux has-session -t "=$SESSION" 2>/dev/null; then\n'
        + _require_managed("session", "SESSION", exact=True)
        + "else\n"
        f"  COUNT=\"$(tmux list-sessions -F '#{{{MANAGED_OPTION}}}' 2>/dev/null | grep -cx 1 || true)\"\n"
        f'  if [ "$COUNT" -ge {max_sessions} ]; then\n'
        f'    echo "managed tmux session limit reached ($COUNT/{max_sessions})" >&2\n'
        "    exit 1\n"
        "  fi\n"
        '  tmux new-session -d -s "$SESSION" -n "$WINDOW"\n'
        f'  tmux set-option -q -t "=$SESSION" {MANAGED_OPTION} 1\n'
        "  CREATED=1\n"
        "fi\n"
        + _FIND_PANE
        + 'if [ -z "$PANE" ]; then\n'
        "  PANE=\"$(tmux list-panes -s -t \"=$SESSION\" -F '#{pane_id}' | head -n1)\"\n"
        '  tmux select-pane -t "$PANE" -T "$PANE_TITLE"\n'
        "fi\n"
        f'tmux set-option -q -p -t "$PANE" {MANAGED_OPTION} 1\n'
        "printf '%s\\n%s\\n%s' \"$SESSION\" \"$PANE\" \"$CREATED\"\n"
    )


def kill_session_script(session: str) -> str:
    """Kill a managed session; prints the session name."""
    return (
        "set -e\n"
        f"SESSION={shell_quote(session)}\n"
        + _require_session()
        + _require_managed("session", "SESSION", exact=True)
        + 'tmux kill-session -t "=$SESSION"\n'
        "printf '%s' \"$SESSION\"\n"
    )


def create_pane_script(session: str, pane_title: str, max_panes: int = MAX_MANAGED_PANES) -> str:
    """Create or reuse a titled pane; prints ``<session>\\n<pane_id>\\n<title>\\n<created>``."""
    return (
        "set -e\n"
        f"SESSION={shell_quote(session)}\n"
        f"WINDOW={shell_quote(WINDOW_NAME)}\n"
        f"PANE_TITLE={shell_quote(pane_title)}\n"
        + _require_session()
        + _require_managed("session", "SESSION", exact=True)
        + _FIND_PANE
        + "CREATED=0\n"
        'if [ -z "$PANE" ]; then\n'
        f"  COUNT=\"$(tmux list-panes -s -t \"=$SESSION\" -F '#{{{MANAGED_OPTION}}}' | grep -cx 1 || true)\"\n"
        f'  if [ "$COUNT" -ge {max_panes} ]; then\n'
        f'    echo "managed tmux pane limit reached in session \'$SESSION\' ($COUNT/{max_panes})" >&2\n'
        "    exit 1\n"
        "  fi\n"
        "  if tmux list-windows -t \"=$SESSION\" -F '#{window_name}' | grep -Fx -- \"$WINDOW\" >/dev/null 2>&1; then\n"
        "    PANE=\"$(tmux split-window -d -P -F '#{pane_id}' -t \"=$SESSION:=$WINDOW\")\"\n"
        "  else\n"
        "    PANE=\"$(tmux new-window -d -P -F '#{pane_id}' -t \"=$SESSION:\" -n \"$WINDOW\")\"\n"
        "  fi\n"
        '  tmux select-pane -t "$PANE" -T "$PANE_TITLE"\n'
        f'  tmux set-option -q -p -t "$PANE" {MANAGED_OPTION} 1\n'
        "  CREATED=1\n"
        "fi\n"
        "printf '%s\\n%s\\n%s\\n%s' \"$SESSION\" \"$PANE\" \"$PANE_TITLE\" \"$CREATED\"\n"
    )


def kill_pane_script(session: str, pane_title: str) -> str:
    """Kill one managed pane by title; prints ``<session>\\n<pane_id>``."""
    return (
        "set -e\n"
        f"SESSION={shell_quote(session)}\n"
        f"PANE_TITLE={shell_quote(pane_title)}\n"
        + _require_session()
        + _require_managed("session", "SESSION", exact=True)
        + _FIND_PANE
        + 'if [ -z "$PANE" ]; then\n'
        "  echo \"tmux pane '$PANE_TITLE' was not found in session '$SESSION'\" >&2\n"
        "  exit 1\n"
        "fi\n"
        + _require_managed("pane", "PANE", flags="-p ")
        + 'tmux kill-pane -t "$PANE"\n'
        "printf '%s\\n%s' \"$SESSION\" \"$PANE\"\n"
    )


def parse_script_lines(stdout: str, count: int) -> list[str] | None:
    lines = [line.strip() for line in stdout.strip().splitlines()]
    if len(lines) != count or not all(lines[:2]):
        return None
    return lines


# ---------------------------------------------------------------------------
# Prompt markers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PromptMarker:
    command_id: int
    exit_code: int


def parse_prompt_marker(line: str) -> PromptMarker | None:
    match = _MARKER_RE.search(line)
    if not match:
        return None
    return PromptMarker(command_id=int(match.group(1)), exit_code=int(match.group(2)))


def latest_prompt_marker(capture: str) -> PromptMarker | None:
    for line in reversed(capture.splitlines()):
        marker = parse_prompt_marker(line)
        if marker is not None:
            return marker
    return None


def _output_lines_after(lines: list[str], start_idx: int, end_idx: int, command: str) -> list[str]:
    output = lines[start_idx + 1 : end_idx]
    stripped = command.strip()
    # The command is echoed on the prompt line; a wrapped echo spills one line.
    if stripped and output and output[0].rstrip().endswith(stripped):
        output = output[1:]
    while output and not output[0].strip():
        output.pop(0)
    while output and not output[-1].strip():
        output.pop()
    return output


def parse_pane_output(capture: str, start_id: int, command: str) -> ExecOutput | None:
    """Extract the output of the command started at prompt ``start_id``.

    Returns None while the completion prompt has not appeared yet. Raises
    ExecutionFailed if the start marker scrolled out of history or the
    completion marker id is not the expected successor.
    """
    lines = capture.splitlines()
    start_idx = None
    for idx in range(len(lines) - 1, -1, -1):
        marker = parse_prompt_marker(lines[idx])
        if marker is not None and marker.command_id == start_id:
            start_idx = idx
            break

    if start_idx is None:
        latest = latest_prompt_marker(capture)
        if latest is not None and latest.command_id > start_id:
            raise ExecutionFailed(
                f"tmux prompt marker {start_id} is no longer visible in capture history"
            )
        return None

    for idx in range(start_idx + 1, len(lines)):
        marker = parse_prompt_marker(lines[idx])
        if marker is None or marker.command_id <= start_id:
            continue
        if marker.command_id != start_id + 1:
            raise ExecutionFailed(
                f"unexpected tmux prompt command id: expected {start_id + 1}, "
                f"got {marker.command_id}"
            )
        output = _output_lines_after(lines, start_idx, idx, command)
        return ExecOutput(exit_code=marker.exit_code, stdout="\n".join(output))
    return None


def partial_pane_output(capture: str, start_id: int, command: str) -> str:
    """Output produced so far by a command that has not completed yet."""
    lines = capture.splitlines()
    for idx in range(len(lines) - 1, -1, -1):
        marker = parse_prompt_marker(lines[idx])
        if marker is not None and marker.command_id == start_id:
            return "\n".join(_output_lines_after(lines, idx, len(lines), command))
    return ""


# ---------------------------------------------------------------------------
# Claims
# ---------------------------------------------------------------------------


class SessionClaims:
    """Process-wide registry of (target, session) pairs held by a runtime."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._held: set[tuple[str, str]] = set()

    def claim(self, target: ExecutionTarget, name: str) -> None:
        key = (target.label(), name)
        with self._lock:
            if key in self._held:
                raise SessionInUse(
                    f"tmux session '{name}' on {target.label()} is already in use "
                    "by another runtime in this process"
                )
            self._held.add(key)

    def release(self, target: ExecutionTarget, name: str) -> None:
        with self._lock:
            self._held.discard((target.label(), name))

    def held(self, target: ExecutionTarget, name: str) -> bool:
        with self._lock:
            return (target.label(), name) in self._held


CLAIMS = SessionClaims()


# ---------------------------------------------------------------------------
# Binder
# ---------------------------------------------------------------------------


@dataclass
class BindResult:
    pane_id: str
    created: bool
    snapshot: str = ""

    @property
    def reattached(self) -> bool:
        return not self.created


class SessionBinder:
    """Owns the ManagedSession for one (target, agent) pair."""

    def __init__(
        self,
        runner: RawRunner,
        target: ExecutionTarget,
        agent_name: str,
        claims: SessionClaims | None = None,
        poll_interval: float = _POLL_INTERVAL,
        max_sessions: int = MAX_MANAGED_SESSIONS,
        max_panes: int = MAX_MANAGED_PANES,
    ) -> None:
        self._runner = runner
        self.target = target
        self.name = session_name(agent_name)
        self._claims = claims if claims is not None else CLAIMS
        self._poll_interval = poll_interval
        self._max_sessions = max_sessions
        self._max_panes = max_panes
        self._lock = asyncio.Lock()
        self._bind_lock = asyncio.Lock()
        self._claimed = False
        self._prompt_ready = False
        self.pane_id: str | None = None
        self.startup_snapshot: str = ""

    async def bind(self) -> BindResult:
        async with self._bind_lock:
            if not self._claimed:
                self._claims.claim(self.target, self.name)
                self._claimed = True
            out = await self._runner.run_raw(ensure_pane_script(self.name))
            if out.exit_code != 0:
                raise ExecutionFailed(
                    f"failed to prepare tmux session pane: {out.stderr.strip() or out.stdout.strip()}"
                )
            parsed = parse_ensured_pane(out.stdout)
            if parsed is None:
                raise ExecutionFailed("failed to resolve tmux pane target")
            self.pane_id, created = parsed
            result = BindResult(pane_id=self.pane_id, created=created)
            if not created:
                result.snapshot = await self.capture(CaptureOptions())
                self.startup_snapshot = result.snapshot
                logger.info("Reattached to tmux session %s (pane %s)", self.name, self.pane_id)
            else:
                logger.info("Created tmux session %s (pane %s)", self.name, self.pane_id)
            return result

    async def _pane(self) -> str:
        if self.pane_id is None:
            await self.bind()
        assert self.pane_id is not None
        return self.pane_id

    async def _checked(self, script: str, what: str) -> ExecOutput:
        out = await self._runner.run_raw(script)
        if out.exit_code != 0:
            raise ExecutionFailed(f"{what}: {out.stderr.strip() or 'tmux exited with ' + str(out.exit_code)}")
        return out

    async def capture(self, options: CaptureOptions | None = None) -> str:
        options = options or CaptureOptions()
        pane = await self._pane()
        if options.delay > 0:
            await asyncio.sleep(options.delay)
        out = await self._runner.run_raw(build_capture_command(pane, options))
        if out.exit_code == 0:
            return out.stdout
        if options.include_alternate_screen and "no alternate screen" in out.stderr:
            fallback = CaptureOptions(**{**options.__dict__, "include_alternate_screen": False})
            out = await self._checked(build_capture_command(pane, fallback), "failed to capture tmux pane")
            return out.stdout
        raise ExecutionFailed(f"failed to capture tmux pane: {out.stderr.strip()}")

    async def send_keys(
        self,
        keys: list[str] | None = None,
        literal_text: str | None = None,
        press_enter: bool = False,
        delay: float = 0.0,
    ) -> str:
        if not keys and literal_text is None and not press_enter:
            raise ExecutionFailed("send_keys requires keys, literal_text or press_enter")
        pane = await self._pane()
        if delay > 0:
            await asyncio.sleep(delay)
        if keys:
            await self._checked(build_send_keys_command(pane, keys), "failed to send keys to tmux pane")
        if literal_text is not None:
            await self._checked(build_send_literal_command(pane, literal_text), "failed to send keys to tmux pane")
        if press_enter:
            await self._checked(build_send_keys_command(pane, ["Enter"]), "failed to send Enter to tmux pane")
        return f"sent keys to tmux pane {pane}"

    async def current_command(self) -> str:
        pane = await self._pane()
        out = await self._checked(
            f"tmux display-message -p -t {shell_quote(pane)} '#{{pane_current_command}}'",
            "failed to query tmux pane",
        )
        return out.stdout.strip()

    # Managed sessions and panes. The default session and its shared pane
    # belong to the binder and can't be killed through these.

    async def create_session(self, session: str | None) -> dict[str, Any]:
        name = managed_session_name(session, self.name)
        found, pane, created = await self._managed(
            create_session_script(name, self._max_sessions), 3, "failed to create tmux session"
        )
        if created == "1":
            await self._send_line(pane, PROMPT_SETUP_SCRIPT)
        logger.info("%s managed tmux session %s", "Created" if created == "1" else "Reused", found)
        return {"session": found, "pane": pane, "created": created == "1"}

    async def kill_session(self, session: str | None) -> dict[str, Any]:
        name = managed_session_name(session, self.name)
        if name == self.name:
            raise PermissionDenied(f"cannot kill the default tmux session {self.name}")
        (killed,) = await self._managed(kill_session_script(name), 1, "failed to kill tmux session")
        logger.info("Killed managed tmux session %s", killed)
        return {"session": killed, "killed": True}

    async def create_pane(self, session: str | None, pane: str) -> dict[str, Any]:
        name = managed_session_name(session, self.name)
        title = managed_pane_title(pane)
        found, pane_id, title, created = await self._managed(
            create_pane_script(name, title, self._max_panes), 4, "failed to create tmux pane"
        )
        if created == "1":
            await self._send_line(pane_id, PROMPT_SETUP_SCRIPT)
        return {"session": found, "pane": pane_id, "title": title, "created": created == "1"}

    async def kill_pane(self, session: str | None, pane: str) -> dict[str, Any]:
        name = managed_session_name(session, self.name)
        title = managed_pane_title(pane)
        if name == self.name and title == PANE_TITLE:
            raise PermissionDenied("cannot kill the default shared pane")
        found, pane_id = await self._managed(kill_pane_script(name, title), 2, "failed to kill tmux pane")
        logger.info("Killed managed tmux pane %s in %s", pane_id, found)
        return {"session": found, "pane": pane_id, "killed": True}

    async def _managed(self, script: str, fields: int, what: str) -> list[str]:
        out = await self._runner.run_raw(script)
        if out.exit_code != 0:
            message = out.stderr.strip() or f"tmux exited with {out.exit_code}"
            if "not managed" in message:
                raise PermissionDenied(f"{what}: {message}")
            if "was not found" in message:
                raise NotFound(f"{what}: {message}")
            raise ExecutionFailed(f"{what}: {message}")
        lines = parse_script_lines(out.stdout, fields)
        if lines is None:
            raise ExecutionFailed(f"{what}: unexpected tmux output {out.stdout.strip()!r}")
        return lines

    async def _send_line(self, pane: str, text: str) -> None:
        await self._checked(build_send_literal_command(pane, text), "failed to send keys to tmux pane")
        await self._checked(build_send_keys_command(pane, ["Enter"]), "failed to send Enter to tmux pane")

    async def _full_capture(self, pane: str) -> str:
        out = await self._checked(
            build_capture_command(pane, CaptureOptions.full_history()), "failed to capture tmux pane"
        )
        return out.stdout

    async def _wait_any_prompt(self, pane: str) -> None:
        deadline = time.monotonic() + _PROMPT_INIT_TIMEOUT
        while time.monotonic() < deadline:
            if latest_prompt_marker(await self._full_capture(pane)) is not None:
                return
            await asyncio.sleep(self._poll_interval)
        raise ExecutionFailed("timed out waiting for tmux prompt initialization")

    async def _wait_prompt_after(self, pane: str, command_id: int) -> None:
        """Wait for the prompt that closes an interrupted command.

        The next command takes its baseline from the latest marker, so that
        marker must belong to the interrupted command, not an earlier one.
        """
        deadline = time.monotonic() + _INTERRUPT_SETTLE_TIMEOUT
        while time.monotonic() < deadline:
            marker = latest_prompt_marker(await self._full_capture(pane))
            if marker is not None and marker.command_id > command_id:
                return
            await asyncio.sleep(self._poll_interval)
        logger.warning("No prompt after interrupting command %d in %s", command_id, self.name)

    async def _ensure_prompt(self, pane: str) -> None:
        if self._prompt_ready:
            return
        if latest_prompt_marker(await self._full_capture(pane)) is None:
            await self._send_line(pane, PROMPT_SETUP_SCRIPT)
            await self._wait_any_prompt(pane)
            await self._send_line(pane, "clear")
            await self._wait_any_prompt(pane)
        self._prompt_ready = True

    async def run_in_pane(
        self,
        command: str,
        timeout: float | None = None,
        token: CancellationToken | None = None,
        on_output: OutputCallback | None = None,
    ) -> ExecOutput:
        """Type ``command`` into the shared pane and wait for the next prompt."""
        async with self._lock:
            pane = await self._pane()
            await self._ensure_prompt(pane)
            baseline = latest_prompt_marker(await self._full_capture(pane))
            if baseline is None:
                raise ExecutionFailed("failed to detect baseline tmux prompt marker before command execution")

            await self._send_line(pane, command)
            deadline = time.monotonic() + timeout if timeout is not None else None
            emitted = 0
            while True:
                capture = await self._full_capture(pane)
                result = parse_pane_output(capture, baseline.command_id, command)
                if on_output is not None:
                    partial = result.stdout if result is not None else partial_pane_output(
                        capture, baseline.command_id, command
                    )
                    if len(partial) > emitted:
                        on_output("stdout", partial[emitted:])
                        emitted = len(partial)
                if result is not None:
                    return result

                interrupted = token is not None and token.cancelled
                expired = deadline is not None and time.monotonic() >= deadline
                if interrupted or expired:
                    logger.info(
                        "Interrupting pane command in %s (%s)",
                        self.name,
                        "cancelled" if interrupted else "timeout",
                    )
                    await self._checked(build_send_keys_command(pane, ["C-c"]), "failed to send C-c to tmux pane")
                    await self._wait_prompt_after(pane, baseline.command_id)
                    return ExecOutput(
                        exit_code=130 if interrupted else 124,
                        stdout=partial_pane_output(capture, baseline.command_id, command),
                        timed_out=expired and not interrupted,
                        cancelled=interrupted,
                    )
                await asyncio.sleep(self._poll_interval)

    def release(self) -> None:
        """Drop this runtime's claim. The tmux session itself is left running."""
        if self._claimed:
            self._claims.release(self.target, self.name)
            self._claimed = False
