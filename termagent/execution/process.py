"""Subprocess helpers shared by the local and container backends."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import re
import shlex
import signal
from typing import Sequence

from termagent.errors import CommandNotFound, PermissionDenied
from termagent.execution.types import CancellationToken, ExecOutput, OutputCallback

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096
_DEFAULT_GRACE = 2.0  # seconds between SIGTERM and SIGKILL

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)?\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


def shell_quote(value: str) -> str:
    return shlex.quote(value)


def parse_duration(text: str) -> float:
    """Parse ``500ms``, ``30s``, ``10m``, ``1h``, ``1d`` or bare seconds.

    Raises ValueError on anything else, including zero or negative values.
    """
    match = _DURATION_RE.match(text)
    if not match:
        raise ValueError(f"Invalid duration: {text!r} (expected e.g. 500ms, 30s, 10m, 1h, 1d)")
    amount = float(match.group(1))
    unit = (match.group(2) or "s").lower()
    seconds = amount * _UNIT_SECONDS[unit]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {text!r}")
    return seconds


def check_exit(output: ExecOutput, command: str) -> ExecOutput:
    """Raise for exit codes that mean the command could not be run at all."""
    if output.exit_code == 127:
        detail = output.stderr.strip() or command
        raise CommandNotFound(f"Command not found: {detail}")
    if output.exit_code == 126:
        detail = output.stderr.strip() or command
        raise PermissionDenied(f"Permission denied: {detail}")
    return output


async def _pump(
    stream: asyncio.StreamReader | None,
    name: str,
    sink: list[str],
    on_output: OutputCallback | None,
) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            tail = decoder.decode(b"", final=True)
            if tail:
                sink.append(tail)
                if on_output:
                    on_output(name, tail)
            return
        text = decoder.decode(chunk)
        if not text:
            continue
        sink.append(text)
        if on_output:
            on_output(name, text)


async def terminate_process(proc: asyncio.subprocess.Process, grace: float = _DEFAULT_GRACE) -> None:
    """SIGTERM the process group, then SIGKILL if it is still alive after ``grace``."""
    if proc.returncode is not None:
        return
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.terminate()
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace)
    except asyncio.TimeoutError:
        logger.warning("Process %d ignored SIGTERM, killing", proc.pid)
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        await proc.wait()


async def run_subprocess(
    command: str | Sequence[str],
    *,
    shell: bool = False,
    cwd: str | None = None,
    stdin: bytes | None = None,
    timeout: float | None = None,
    token: CancellationToken | None = None,
    on_output: OutputCallback | None = None,
    grace: float = _DEFAULT_GRACE,
) -> ExecOutput:
    """Run a process to completion, timeout or cancellation.

    Output is streamed to ``on_output`` as it arrives and also collected
    into the returned ExecOutput. The child runs in its own process group
    so timeouts and cancellation reach grandchildren too.
    """
    stdin_pipe = asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL
    try:
        if shell:
            proc = await asyncio.create_subprocess_shell(
                command,  # type: ignore[arg-type]
                stdin=stdin_pipe,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                start_new_session=True,
            )
        else:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin_pipe,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                start_new_session=True,
            )
    except FileNotFoundError as e:
        raise CommandNotFound(f"Command not found: {e.filename or command}") from e
    except PermissionError as e:
        raise PermissionDenied(f"Permission denied: {e.filename or command}") from e

    out: list[str] = []
    err: list[str] = []
    pumps = [
        asyncio.create_task(_pump(proc.stdout, "stdout", out, on_output)),
        asyncio.create_task(_pump(proc.stderr, "stderr", err, on_output)),
    ]
    waiter = asyncio.create_task(proc.wait())
    cancel_waiter = asyncio.create_task(token.wait()) if token is not None else None
    timed_out = False
    cancelled = False

    try:
        if stdin is not None and proc.stdin is not None:
            proc.stdin.write(stdin)
            try:
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("Process %d closed stdin early", proc.pid)
            proc.stdin.close()

        watched = {waiter} if cancel_waiter is None else {waiter, cancel_waiter}
        done, _ = await asyncio.wait(watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if waiter not in done:
            if cancel_waiter is not None and cancel_waiter in done:
                cancelled = True
                logger.info("Cancelling process %d: %s", proc.pid, token.reason if token else "")
            else:
                timed_out = True
                logger.info("Process %d timed out after %ss", proc.pid, timeout)
            await terminate_process(proc, grace)
        await waiter
        _, pending = await asyncio.wait(pumps, timeout=grace)
        for task in pending:
            task.cancel()
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        if proc.returncode is None:
            # Caller was cancelled; do not leave the child running.
            await terminate_process(proc, grace)
        for task in pumps:
            if not task.done():
                task.cancel()

    return ExecOutput(
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout="".join(out),
        stderr="".join(err),
        timed_out=timed_out,
        cancelled=cancelled,
    )
