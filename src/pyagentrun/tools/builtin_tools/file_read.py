from __future__ import annotations
import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..base import ToolSpec, ToolResult, ToolContext
from ...util.fs import resolve_path, read_text, FsError


@dataclass
class ReadFileTool:
    spec: ToolSpec = ToolSpec(
        name="Read",
        description="Read a text file. Optionally limit to a line range.",
        permission_key="read",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "minLength": 1, "description": "File path relative to cwd."},
                "start_line": {"type": "integer", "minimum": 1, "description": "1-based start line (inclusive)."},
                "end_line": {"type": "integer", "minimum": 1, "description": "1-based end line (inclusive)."},
                "max_chars": {"type": "integer", "minimum": 1, "default": 40000},
            },
            "required": ["path"],
            "additionalProperties": False,
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        return await asyncio.to_thread(self._run, ctx, args)

    def _run(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        path = args["path"]
        try:
            p = resolve_path(Path(ctx.cwd), path)
        except FsError as e:
            return ToolResult.text(str(e), is_error=True)
        if not p.is_file():
            return ToolResult.text(f"File not found: {path}", is_error=True)

        lines = read_text(p).splitlines()
        s = args.get("start_line")
        e = args.get("end_line")
        if s is not None or e is not None:
            s = max(1, int(s or 1))
            e = min(len(lines), int(e or len(lines)))
            lines = lines[s - 1:e]

        out = "\n".join(lines)
        max_chars = int(args.get("max_chars", 40000))
        if len(out) > max_chars:
            out = out[:max_chars] + "\n... (truncated)"
        return ToolResult.text(out)
