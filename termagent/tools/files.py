"""read_file / write_file on the execution target. Never routed through tmux."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from termagent.tools.base import Tool, ToolContext, truncate

MAX_READ_CHARS = 8000


class ReadFileArgs(BaseModel):
    path: str = Field(min_length=1, description="File path (relative to the workspace or absolute)")
    offset: int = Field(default=0, ge=0, description="Line offset to start reading from (0-indexed)")
    limit: int = Field(default=0, ge=0, description="Number of lines to read (0 = all)")


class WriteFileArgs(BaseModel):
    path: str = Field(min_length=1, description="File path (relative to the workspace or absolute)")
    content: str = Field(description="Content to write to the file")


class ReadFileTool(Tool):
    name = "read_file"
    description = "Read a text file from the execution target."
    Args = ReadFileArgs
    max_output_chars = MAX_READ_CHARS

    async def run(self, args: ReadFileArgs, ctx: ToolContext) -> dict[str, Any]:
        data = await ctx.backend.read_file(args.path)
        content = data.decode("utf-8", errors="replace")
        if args.offset or args.limit:
            lines = content.splitlines(keepends=True)[args.offset :]
            if args.limit:
                lines = lines[: args.limit]
            content = "".join(lines)
        content, cut = truncate(content, MAX_READ_CHARS)
        payload: dict[str, Any] = {"path": args.path, "content": content}
        if cut:
            payload["truncated"] = True
        return payload


class WriteFileTool(Tool):
    name = "write_file"
    description = "Write (create or overwrite) a text file on the execution target."
    Args = WriteFileArgs
    mutating = True

    async def run(self, args: WriteFileArgs, ctx: ToolContext) -> dict[str, Any]:
        data = args.content.encode("utf-8")
        await ctx.backend.write_file(args.path, data)
        return {"path": args.path, "bytes_written": len(data)}
