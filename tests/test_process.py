"""Tests for termagent/execution/process.py and the cancellation token."""

import asyncio
import sys
import time

import pytest

from termagent.errors import CommandNotFound, PermissionDenied
from termagent.execution.process import check_exit, parse_duration, run_subprocess
from termagent.execution.types import CancellationToken, ExecOutput


def _py(code: str) -> str:
    return f'{sys.executable} -c "{code}"'


class TestParseDuration:
    @pytest.mark.parametrize(
        "text,seconds",
        [("500ms", 0.5), ("30s", 30.0), ("10m", 600.0), ("1h", 3600.0), ("1d", 86400.0), ("45", 45.0), (" 2M ", 120.0)],
    )
    def test_valid(self, text, seconds):
        assert parse_duration(text) == pytest.approx(seconds)

    @pytest.mark.parametrize("text", ["", "abc", "10 minutes", "-5s", "0s", "1w"])
    def test_invalid(self, text):
        with pytest.raises(ValueError):
            parse_duration(text)


class TestCheckExit:
    def test_127_is_command_not_found(self):
        with pytest.raises(CommandNotFound):
            check_exit(ExecOutput(exit_code=127, stderr="sh: nope: not found"), "nope")

    def test_126_is_permission_denied(self):
        with pytest.raises(PermissionDenied):
            check_exit(ExecOutput(exit_code=126), "./script.sh")

    def test_other_codes_pass_through(self):
        out = ExecOutput(exit_code=3, stdout="x")
        assert check_exit(out, "false") is out


class TestRunSubprocess:
    @pytest.mark.asyncio
    async def test_collects_stdout_and_stderr(self):
        out = await run_subprocess(
            _py("import sys; print('out'); sys.stderr.write('err')"), shell=True
        )
        assert out.exit_code == 0
        assert out.stdout.strip() == "out"
        assert out.stderr == "err"
        assert out.ok

    @pytest.mark.asyncio
    async def test_streams_chunks_in_order(self):
        chunks: list[tuple[str, str]] = []
        out = await run_subprocess(
            _py("print('a', flush=True); print('b', flush=True)"),
            shell=True,
            on_output=lambda stream, data: chunks.append((stream, data)),
        )
        assert "".join(d for s, d in chunks if s == "stdout") == out.stdout
        assert out.stdout.splitlines() == ["a", "b"]

    @pytest.mark.asyncio
    async def test_stdin(self):
        out = await run_subprocess(["cat"], stdin=b"piped input")
        assert out.stdout == "piped input"

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self):
        start = time.monotonic()
        out = await run_subprocess(_py("import time; time.sleep(30)"), shell=True, timeout=0.5, grace=0.5)
        assert out.timed_out
        assert not out.ok
        assert time.monotonic() - start < 10

    @pytest.mark.asyncio
    async def test_token_cancels_process(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.3, token.cancel, "cancelled")
        out = await run_subprocess(_py("import time; time.sleep(30)"), shell=True, token=token, grace=0.5)
        assert out.cancelled
        assert not out.timed_out

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        with pytest.raises(CommandNotFound):
            await run_subprocess(["definitely-not-a-real-binary-xyz"])


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_callbacks_run_once(self):
        token = CancellationToken()
        calls = []
        token.on_cancel(lambda: calls.append("first"))
        token.cancel("timeout")
        token.cancel("again")
        assert calls == ["first"]
        assert token.reason == "timeout"
        assert token.cancelled

    @pytest.mark.asyncio
    async def test_late_callback_runs_immediately(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        token.on_cancel(lambda: calls.append(1))
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_wait(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        await asyncio.wait_for(token.wait(), timeout=2)
        assert token.cancelled
