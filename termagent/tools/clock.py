from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

from termagent.tools.base import Tool, ToolContext


class TimeArgs(BaseModel):
    pass


class TimeTool(Tool):
    name = "time"
    description = "Return the current date and time (UTC and local) and the Unix timestamp."
    Args = TimeArgs

    async def run(self, args: TimeArgs, ctx: ToolContext) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        return {
            "utc": now.isoformat(timespec="seconds"),
            "local": now.astimezone().isoformat(timespec="seconds"),
            "unix": int(now.timestamp()),
        }
