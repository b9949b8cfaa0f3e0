"""Settings via pydantic-settings with TERMAGENT_ env prefix.

Credential fields use validation_alias to read the provider's usual
unprefixed env vars (ANTHROPIC_API_KEY, BRAVE_SEARCH_API_KEY) so one .env
file serves every tool that talks to those providers.
"""

from typing import Literal

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from termagent.errors import ConfigurationError


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TERMAGENT_", env_file=".env")

    agent_name: str = "termagent"
    log_level: str = "info"

    # LLM
    model: str = "claude-sonnet-4-5-20250514"
    max_tokens: int = 4096
    api_base_url: str = "https://api.anthropic.com"
    api_timeout_connect: int = 10  # seconds
    api_timeout_read: int = 120  # seconds
    anthropic_api_key: str = Field("", validation_alias="ANTHROPIC_API_KEY")

    # Context budget
    context_window: int = 0  # 0 = derive from model name
    context_soft_ratio: float = 0.8
    keep_recent_turns: int = 6
    summary_max_chars: int = 4000
    model_summaries: bool = False

    # Turn loop
    max_tool_turns: int = 10  # Max tool use iterations per user turn
    interactive_wait_seconds: float = 30.0

    # Background tasks
    cancel_grace_seconds: float = 3.0
    supervision_interval: float = 0.25

    # Approvals
    approval_policy: str = "ask"  # ask | all | none | <duration>
    interactive: bool = True
    auto_approve: bool = False

    # Execution target
    target: Literal["local", "ssh", "container"] = "local"
    ssh_host: str = ""
    ssh_port: int = 22
    ssh_user: str = ""
    ssh_connect_timeout: int = 15
    container: str = ""
    container_engine: str = ""  # docker | podman, empty = auto-detect
    tmux_enabled: bool = True
    workspace_dir: str = "/tmp/termagent-workspace"
    restrict_to_workspace: bool = False
    blocked_paths: list[str] = ["/etc/shadow", "/etc/sudoers", "/boot", "/proc", "/sys"]
    shell_denylist: list[str] = ["rm -rf /", "mkfs", ":(){ :|:& };:"]

    # Web tools
    brave_search_api_key: str = Field("", validation_alias="BRAVE_SEARCH_API_KEY")
    web_search_daily_limit: int = 100
    web_timeout: int = 15

    # Sessions
    session_db_url: str = "sqlite+aiosqlite:///.termagent/sessions.db"

    @model_validator(mode="after")
    def _validate_target(self) -> "Settings":
        if self.target == "ssh" and not self.ssh_host:
            raise ValueError("ssh_host is required when target is 'ssh'")
        if self.target == "container" and not self.container:
            raise ValueError("container is required when target is 'container'")
        if not 0.0 < self.context_soft_ratio <= 1.0:
            raise ValueError("context_soft_ratio must be in (0, 1]")
        if self.context_window and self.context_window <= self.max_tokens:
            raise ValueError(
                f"context_window ({self.context_window}) must be > "
                f"max_tokens ({self.max_tokens})."
            )
        return self


def load_settings(**overrides: object) -> Settings:
    """Build Settings, surfacing validation problems as ConfigurationError."""
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(str(e)) from e
