"""Exception taxonomy for termagent.

ToolErrors are converted into tool-result turns so the model can react.
Transport errors abort the current turn but leave the conversation
resumable. Task errors are raised only to callers of the task manager's
public operations, never from inside a running task.
"""

from __future__ import annotations


class TermAgentError(Exception):
    """Base class for all termagent errors."""


class ConfigurationError(TermAgentError):
    """Settings are invalid. Fatal to startup."""


# ---------------------------------------------------------------------------
# Model transport
# ---------------------------------------------------------------------------


class TransportError(TermAgentError):
    """The model transport failed to produce a response."""


class AuthError(TransportError):
    """The provider rejected our credentials."""


class RateLimited(TransportError):
    """The provider asked us to slow down."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class ToolError(TermAgentError):
    """A tool invocation failed. Reported back to the model."""

    kind = "tool_error"


class InvalidArguments(ToolError):
    kind = "invalid_arguments"


class PermissionDenied(ToolError):
    kind = "permission_denied"


class PathBlocked(ToolError):
    kind = "path_blocked"


class CommandBlocked(ToolError):
    kind = "command_blocked"


class PolicyDenied(ToolError):
    kind = "policy_denied"


class NotFound(ToolError):
    kind = "not_found"


class ToolTimeout(ToolError):
    kind = "timeout"


class ConnectionLost(ToolError):
    kind = "connection_lost"


class ContainerNotRunning(ToolError):
    kind = "container_not_running"


class CommandNotFound(ToolError):
    kind = "command_not_found"


class ExecutionFailed(ToolError):
    kind = "execution_failed"


# ---------------------------------------------------------------------------
# Background tasks
# ---------------------------------------------------------------------------


class TaskError(TermAgentError):
    """Base for task manager operation errors."""


class TaskNotFound(TaskError):
    pass


class TaskAlreadyTerminal(TaskError):
    pass


class AmbiguousTaskTarget(TaskError):
    pass


# ---------------------------------------------------------------------------
# Runtime / sessions
# ---------------------------------------------------------------------------


class BudgetExceeded(TermAgentError):
    """A request would exceed the hard context ceiling. The send is refused."""

    def __init__(self, projected: int, ceiling: int) -> None:
        self.projected = projected
        self.ceiling = ceiling
        self.remedies = ["compact", "new_session"]
        super().__init__(
            f"Request refused: estimated {projected} tokens exceeds the hard "
            f"context ceiling of {ceiling} even after compaction. "
            "Run /compact to summarize older turns or start a new session."
        )


class SessionNotFound(TermAgentError):
    pass


class SessionInUse(TermAgentError):
    """Another active runtime in this process already holds the tmux session."""


class TurnInProgress(TermAgentError):
    """A turn is already being processed for this conversation."""
