"""Execution backends: where commands run and files live.

A backend knows how to run a one-shot ``sh -c`` script on its target
(``run_raw``), how to run a user command to completion, timeout or
cancellation (``run``), and how to move file bytes. When a tmux binder is
attached, ``run`` is routed through the shared pane instead.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import posixpath
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

import asyncssh

from termagent.config import Settings
from termagent.errors import (
    CommandNotFound,
    ConnectionLost,
    ContainerNotRunning,
    NotFound,
    PathBlocked,
    PermissionDenied,
)
from termagent.execution.process import check_exit, run_subprocess, shell_quote
from termagent.execution.tmux import SessionBinder, SessionClaims
from termagent.execution.types import (
    Blocking,
    CancellationToken,
    ContainerTarget,
    ExecOutput,
    ExecutionTarget,
    LocalTarget,
    OutputCallback,
    SshTarget,
    WaitMode,
    wait_timeout,
)

logger = logging.getLogger(__name__)

_READ_CHUNK = 4096


def is_blocked_path(path: str, blocked: list[str]) -> bool:
    """Prefix match of a normalized absolute path against blocked prefixes."""
    normalized = posixpath.normpath(path)
    for prefix in blocked:
        root = posixpath.normpath(prefix)
        if normalized == root or normalized.startswith(root.rstrip("/") + "/"):
            return True
    return False


def _raise_for_file_error(out: ExecOutput, path: str) -> None:
    stderr = out.stderr.lower()
    if "no such file" in stderr or "not a directory" in stderr:
        raise NotFound(f"File not found: {path}")
    if "permission denied" in stderr or "read-only file system" in stderr:
        raise PermissionDenied(f"Permission denied: {path}")
    if "is a directory" in stderr:
        raise NotFound(f"Not a file: {path}")
    raise PermissionDenied(f"Cannot access {path}: {out.stderr.strip() or 'exit ' + str(out.exit_code)}")


class ExecutionBackend(ABC):
    """Base class for the local, SSH and container backends."""

    target: ExecutionTarget

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._grace = settings.cancel_grace_seconds
        self.binder: SessionBinder | None = None

    def attach_tmux(self, agent_name: str, claims: SessionClaims | None = None) -> SessionBinder:
        self.binder = SessionBinder(self, self.target, agent_name, claims=claims)
        return self.binder

    async def run(
        self,
        command: str,
        wait: WaitMode | None = None,
        token: CancellationToken | None = None,
        on_output: OutputCallback | None = None,
    ) -> ExecOutput:
        """Run ``command`` to completion, timeout or cancellation."""
        timeout = wait_timeout(wait or Blocking())
        if self.binder is not None:
            out = await self.binder.run_in_pane(command, timeout=timeout, token=token, on_output=on_output)
        else:
            out = await self._exec(command, timeout, token, on_output)
        return check_exit(out, command)

    @abstractmethod
    async def _exec(
        self,
        command: str,
        timeout: float | None,
        token: CancellationToken | None,
        on_output: OutputCallback | None,
    ) -> ExecOutput: ...

    @abstractmethod
    async def run_raw(
        self,
        script: str,
        stdin: bytes | None = None,
        token: CancellationToken | None = None,
    ) -> ExecOutput: ...

    @abstractmethod
    def runner_argv(self) -> list[str]: ...

    @abstractmethod
    def summary(self) -> str: ...

    async def read_file(self, path: str) -> bytes:
        # run_raw output is decoded text; the file crosses it base64-encoded
        out = await self.run_raw(f"base64 < {shell_quote(path)}", stdin=None)
        if out.exit_code != 0:
            _raise_for_file_error(out, path)
        return base64.b64decode(out.stdout)

    async def write_file(self, path: str, data: bytes) -> None:
        self.check_write_path(path)
        parent = posixpath.dirname(path) or "."
        script = f"mkdir -p -- {shell_quote(parent)} && cat > {shell_quote(path)}"
        out = await self.run_raw(script, stdin=data)
        if out.exit_code != 0:
            _raise_for_file_error(out, path)

    def check_write_path(self, path: str) -> None:
        if is_blocked_path(path, self._settings.blocked_paths):
            raise PathBlocked(f"Writes to '{path}' are blocked by policy")

    async def close(self) -> None:
        if self.binder is not None:
            self.binder.release()


# ---------------------------------------------------------------------------
# Local
# ---------------------------------------------------------------------------


class LocalBackend(ExecutionBackend):
    target = LocalTarget()

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self._workspace = Path(settings.workspace_dir)

    def _cwd(self) -> str:
        self._workspace.mkdir(parents=True, exist_ok=True)
        return str(self._workspace)

    def resolve_path(self, path_str: str) -> Path:
        """Resolve relative paths against the workspace.

        With ``restrict_to_workspace`` the result must stay inside it.
        """
        workspace = self._workspace.resolve()
        raw = Path(path_str)
        target = raw.resolve() if raw.is_absolute() else (workspace / raw).resolve()
        if self._settings.restrict_to_workspace and not target.is_relative_to(workspace):
            raise PathBlocked(
                f"Path '{path_str}' is outside workspace '{self._settings.workspace_dir}'. "
                "Only paths within the workspace directory are allowed."
            )
        return target

    async def _exec(self, command, timeout, token, on_output) -> ExecOutput:
        return await run_subprocess(
            command,
            shell=True,
            cwd=self._cwd(),
            timeout=timeout,
            token=token,
            on_output=on_output,
            grace=self._grace,
        )

    async def run_raw(self, script, stdin=None, token=None) -> ExecOutput:
        return await run_subprocess(
            ["sh", "-c", script], cwd=self._cwd(), stdin=stdin, token=token, grace=self._grace
        )

    async def read_file(self, path: str) -> bytes:
        target = self.resolve_path(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as e:
            raise NotFound(f"File not found: {path}") from e
        except IsADirectoryError as e:
            raise NotFound(f"Not a file: {path}") from e
        except PermissionError as e:
            raise PermissionDenied(f"Permission denied: {path}") from e

    async def write_file(self, path: str, data: bytes) -> None:
        target = self.resolve_path(path)
        self.check_write_path(str(target))
        try:
            await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, data)
        except PermissionError as e:
            raise PermissionDenied(f"Permission denied: {path}") from e
        except OSError as e:
            raise PermissionDenied(f"Cannot write {path}: {e}") from e

    def runner_argv(self) -> list[str]:
        return ["sh", "-c"]

    def summary(self) -> str:
        if self.binder is not None:
            return f"local (tmux:{self.binder.name})"
        return "local"


# ---------------------------------------------------------------------------
# SSH
# ---------------------------------------------------------------------------


class SshBackend(ExecutionBackend):
    """One persistent asyncssh connection, opened on first use."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.target = SshTarget(host=settings.ssh_host, port=settings.ssh_port, user=settings.ssh_user)
        self._conn: asyncssh.SSHClientConnection | None = None
        self._connect_lock = asyncio.Lock()

    async def _connection(self) -> asyncssh.SSHClientConnection:
        async with self._connect_lock:
            if self._conn is not None:
                return self._conn
            logger.info("Connecting to %s:%d", self.target.host, self.target.port)
            try:
                self._conn = await asyncssh.connect(
                    host=self.target.host,
                    port=self.target.port,
                    username=self.target.user or None,
                    known_hosts=None,
                    connect_timeout=self._settings.ssh_connect_timeout,
                )
            except (OSError, asyncssh.Error) as e:
                raise ConnectionLost(f"SSH connection to {self.target.host} failed: {e}") from e
            return self._conn

    def _drop(self, error: Exception) -> ConnectionLost:
        logger.warning("SSH connection to %s lost: %s", self.target.host, error)
        self._conn = None
        return ConnectionLost(f"SSH connection to {self.target.host} lost: {error}")

    async def _exec(self, command, timeout, token, on_output) -> ExecOutput:
        conn = await self._connection()
        try:
            proc = await conn.create_process(command, encoding="utf-8", errors="replace")
        except (OSError, asyncssh.Error) as e:
            raise self._drop(e) from e

        out: list[str] = []
        err: list[str] = []

        async def pump(stream, name: str, sink: list[str]) -> None:
            while True:
                chunk = await stream.read(_READ_CHUNK)
                if not chunk:
                    return
                sink.append(chunk)
                if on_output:
                    on_output(name, chunk)

        pumps = [
            asyncio.create_task(pump(proc.stdout, "stdout", out)),
            asyncio.create_task(pump(proc.stderr, "stderr", err)),
        ]
        waiter = asyncio.create_task(proc.wait())
        cancel_waiter = asyncio.create_task(token.wait()) if token is not None else None
        timed_out = cancelled = False
        try:
            watched = {waiter} if cancel_waiter is None else {waiter, cancel_waiter}
            done, _ = await asyncio.wait(watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if waiter not in done:
                cancelled = cancel_waiter is not None and cancel_waiter in done
                timed_out = not cancelled
                proc.terminate()
                try:
                    await asyncio.wait_for(asyncio.shield(waiter), timeout=self._grace)
                except asyncio.TimeoutError:
                    proc.close()
            if not waiter.done():
                await asyncio.wait({waiter}, timeout=self._grace)
            _, pending = await asyncio.wait(pumps, timeout=self._grace)
            for task in pending:
                task.cancel()
        except (OSError, asyncssh.Error) as e:
            raise self._drop(e) from e
        finally:
            for task in [waiter, *pumps] + ([cancel_waiter] if cancel_waiter else []):
                if not task.done():
                    task.cancel()

        exit_code = proc.exit_status if proc.exit_status is not None else -1
        return ExecOutput(
            exit_code=exit_code,
            stdout="".join(out),
            stderr="".join(err),
            timed_out=timed_out,
            cancelled=cancelled,
        )

    async def run_raw(self, script, stdin=None, token=None) -> ExecOutput:
        conn = await self._connection()
        try:
            result = await conn.run(f"sh -c {shell_quote(script)}", input=stdin, encoding=None, check=False)
        except (OSError, asyncssh.Error) as e:
            raise self._drop(e) from e
        return ExecOutput(
            exit_code=result.exit_status if result.exit_status is not None else -1,
            stdout=(result.stdout or b"").decode("utf-8", errors="replace"),
            stderr=(result.stderr or b"").decode("utf-8", errors="replace"),
        )

    async def read_file(self, path: str) -> bytes:
        conn = await self._connection()
        try:
            async with conn.start_sftp_client() as sftp:
                async with sftp.open(path, "rb") as f:
                    return await f.read()
        except asyncssh.SFTPNoSuchFile as e:
            raise NotFound(f"File not found: {path}") from e
        except asyncssh.SFTPPermissionDenied as e:
            raise PermissionDenied(f"Permission denied: {path}") from e
        except asyncssh.SFTPFailure as e:
            raise NotFound(f"Cannot read {path}: {e}") from e
        except (OSError, asyncssh.Error) as e:
            raise self._drop(e) from e

    async def write_file(self, path: str, data: bytes) -> None:
        self.check_write_path(path)
        conn = await self._connection()
        try:
            async with conn.start_sftp_client() as sftp:
                parent = posixpath.dirname(path)
                if parent:
                    await sftp.makedirs(parent, exist_ok=True)
                async with sftp.open(path, "wb") as f:
                    await f.write(data)
        except asyncssh.SFTPPermissionDenied as e:
            raise PermissionDenied(f"Permission denied: {path}") from e
        except asyncssh.SFTPError as e:
            raise PermissionDenied(f"Cannot write {path}: {e}") from e
        except (OSError, asyncssh.Error) as e:
            raise self._drop(e) from e

    def runner_argv(self) -> list[str]:
        who = f"{self.target.user}@{self.target.host}" if self.target.user else self.target.host
        return ["ssh", "-p", str(self.target.port), who]

    def summary(self) -> str:
        base = f"ssh:{self.target.host}"
        if self.binder is not None:
            return f"{base} (tmux:{self.binder.name})"
        return base

    async def close(self) -> None:
        await super().close()
        if self._conn is not None:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None


# ---------------------------------------------------------------------------
# Container
# ---------------------------------------------------------------------------


def detect_container_engine(preferred: str = "") -> str:
    if preferred:
        return preferred
    for engine in ("docker", "podman"):
        if shutil.which(engine):
            return engine
    raise CommandNotFound("Neither docker nor podman was found on PATH")


class ContainerBackend(ExecutionBackend):
    """``docker exec`` / ``podman exec`` into a running container."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.engine = detect_container_engine(settings.container_engine)
        self.target = ContainerTarget(container=settings.container, engine=self.engine)
        self._checked_running = False

    async def _ensure_running(self) -> None:
        if self._checked_running:
            return
        out = await run_subprocess(
            [self.engine, "inspect", "-f", "{{.State.Running}}", self.target.container]
        )
        if out.exit_code != 0 or out.stdout.strip() != "true":
            raise ContainerNotRunning(
                f"Container '{self.target.container}' is not running"
                + (f": {out.stderr.strip()}" if out.stderr.strip() else "")
            )
        self._checked_running = True

    async def _exec(self, command, timeout, token, on_output) -> ExecOutput:
        await self._ensure_running()
        return await run_subprocess(
            [self.engine, "exec", self.target.container, "sh", "-c", command],
            timeout=timeout,
            token=token,
            on_output=on_output,
            grace=self._grace,
        )

    async def run_raw(self, script, stdin=None, token=None) -> ExecOutput:
        await self._ensure_running()
        argv = [self.engine, "exec"]
        if stdin is not None:
            argv.append("-i")
        argv += [self.target.container, "sh", "-c", script]
        return await run_subprocess(argv, stdin=stdin, token=token, grace=self._grace)

    def runner_argv(self) -> list[str]:
        return [self.engine, "exec", self.target.container]

    def summary(self) -> str:
        base = f"container:{self.target.container}"
        if self.binder is not None:
            return f"{base} (tmux:{self.binder.name})"
        return base


def create_backend(settings: Settings) -> ExecutionBackend:
    if settings.target == "ssh":
        backend: ExecutionBackend = SshBackend(settings)
    elif settings.target == "container":
        backend = ContainerBackend(settings)
    else:
        backend = LocalBackend(settings)
    logger.info("Execution backend: %s", backend.summary())
    return backend
