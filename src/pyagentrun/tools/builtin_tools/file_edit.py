from __future__ import annotations
import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..base import ToolSpec, ToolResult, ToolContext
from ...util.fs import resolve_path, read_text, FsError


@dataclass
class EditFileTool:
    spec: ToolSpec = ToolSpec(
        name="Edit",
        description="Replace an exact string in a file. old_string must occur exactly once unless replace_all is set.",
        permission_key="edit",
        parameters={
            "type": "object",
            "properties": {
                "path": {"type": "string", "minLength": 1, "description": "File path relative to cwd."},
                "old_string": {"type": "string", "minLength": 1},
                "new_string": {"type": "string"},
                "replace_all": {"type": "boolean", "default": False},
            },
            "required": ["path", "old_string", "new_string"],
            "additionalProperties": False,
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        return await asyncio.to_thread(self._run, ctx, args)

    def _run(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        path = args["path"]
        old = args["old_string"]
        new = args["new_string"]
        try:
            p = resolve_path(Path(ctx.cwd), path)
        except FsError as e:
            return ToolResult.text(str(e), is_error=True)
        if not p.is_file():
            return ToolResult.text(f"File not found: {path}", is_error=True)

        text = read_text(p)
        count = text.count(old)
        if count == 0:
            return ToolResult.text(f"old_string not found in {path}.", is_error=True)
        if count > 1 and not args.get("replace_all", False):
            return ToolResult.text(f"old_string occurs {count} times in {path}; set replace_all or add context.", is_error=True)
        p.write_text(text.replace(old, new), encoding="utf-8")
        return ToolResult.text(f"Edited {path}: replaced {count if args.get('replace_all') else 1} occurrence(s).")
