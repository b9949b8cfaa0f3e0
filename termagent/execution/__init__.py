"""Execution backends -- local, SSH and container targets, bound to tmux.

Public API: create_backend() plus the target and wait-mode types.
"""

from termagent.execution.backend import (
    ContainerBackend,
    ExecutionBackend,
    LocalBackend,
    SshBackend,
    create_backend,
)
from termagent.execution.types import (
    Blocking,
    BlockingWithTimeout,
    CancellationToken,
    ContainerTarget,
    ExecOutput,
    ExecutionTarget,
    LocalTarget,
    NonBlocking,
    SshTarget,
    WaitMode,
)

__all__ = [
    "Blocking",
    "BlockingWithTimeout",
    "CancellationToken",
    "ContainerBackend",
    "ContainerTarget",
    "ExecOutput",
    "ExecutionBackend",
    "ExecutionTarget",
    "LocalBackend",
    "LocalTarget",
    "NonBlocking",
    "SshBackend",
    "SshTarget",
    "WaitMode",
    "create_backend",
]
