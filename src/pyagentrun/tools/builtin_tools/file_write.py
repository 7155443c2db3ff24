from __future__ import annotations
import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..base import ToolSpec, ToolResult, ToolContext
from ...util.fs import resolve_path, FsError


@dataclass
class WriteFileTool:
    spec: ToolSpec = ToolSpec(
        name="Write",
        description="Create or overwrite a file with given content.",
        permission_key="edit",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "minLength": 1, "description": "File path relative to cwd."},
                "content": {"type": "string", "description": "Full file content."},
                "mkdirs": {"type": "boolean", "default": True, "description": "Create parent directories if needed."},
            },
            "required": ["path", "content"],
            "additionalProperties": False,
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        return await asyncio.to_thread(self._run, ctx, args)

    def _run(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        path = args["path"]
        content = args["content"]
        try:
            p = resolve_path(Path(ctx.cwd), path)
        except FsError as e:
            return ToolResult.text(str(e), is_error=True)
        if args.get("mkdirs", True):
            p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(content, encoding="utf-8")
        return ToolResult.text(f"Wrote {path} ({len(content)} chars).")
