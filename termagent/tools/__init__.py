"""Agent tools.

Public API: ToolRegistry, the Tool contract, and register_builtin_tools().
"""

import httpx

from termagent.config import Settings
from termagent.tools.base import Tool, ToolContext, ToolStreamEvent, wrap_result
from termagent.tools.clock import TimeTool
from termagent.tools.files import ReadFileTool, WriteFileTool
from termagent.tools.registry import ParsedCall, ToolRegistry
from termagent.tools.shell import RunShellTool
from termagent.tools.tmux_tools import CapturePaneTool, SendKeysTool, TmuxManageTool
from termagent.tools.web import FetchUrlTool, WebSearchTool


def register_builtin_tools(
    registry: ToolRegistry,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> None:
    """Register every built-in tool.

    The tmux tools are only registered when tmux is enabled. Web tools get
    their own httpx client, never the model transport's.
    """
    registry.register(RunShellTool(settings.shell_denylist))
    registry.register(ReadFileTool())
    registry.register(WriteFileTool())
    registry.register(FetchUrlTool(http_client, timeout=settings.web_timeout))
    registry.register(
        WebSearchTool(
            http_client,
            api_key=settings.brave_search_api_key,
            daily_limit=settings.web_search_daily_limit,
            timeout=settings.web_timeout,
        )
    )
    if settings.tmux_enabled:
        registry.register(CapturePaneTool())
        registry.register(SendKeysTool())
        registry.register(TmuxManageTool())
    registry.register(TimeTool())


__all__ = [
    "ParsedCall",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "ToolStreamEvent",
    "register_builtin_tools",
    "wrap_result",
]
