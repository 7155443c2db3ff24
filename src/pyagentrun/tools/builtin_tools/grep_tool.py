from __future__ import annotations
import asyncio
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..base import ToolSpec, ToolResult, ToolContext
from ...util.fs import resolve_path, read_text, FsError


@dataclass
class GrepTool:
    spec: ToolSpec = ToolSpec(
        name="Grep",
        description="Search for a pattern in files. Returns matching lines with line numbers.",
        permission_key="read",
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "minLength": 1, "description": "Regex (default) or literal string if regex=false."},
                "path": {"type": "string", "description": "File or directory to search (relative to cwd). Default '.'"},
                "regex": {"type": "boolean", "default": True},
                "include": {"type": "string", "description": "Optional glob filter like '*.py'."},
                "max_matches": {"type": "integer", "minimum": 1, "default": 200},
            },
            "required": ["pattern"],
            "additionalProperties": False,
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        return await asyncio.to_thread(self._run, ctx, args)

    def _run(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        cwd = Path(ctx.cwd).expanduser().resolve()
        pattern = args["pattern"]
        path = args.get("path", ".")
        include = args.get("include")
        max_matches = int(args.get("max_matches", 200))

        try:
            target = resolve_path(cwd, path)
        except FsError as e:
            return ToolResult.text(str(e), is_error=True)
        if not target.exists():
            return ToolResult.text(f"Path not found: {path}", is_error=True)

        if target.is_file():
            file_list = [target]
        else:
            file_list = [p for p in sorted(target.rglob("*")) if p.is_file() and (not include or p.match(include))]

        rx = None
        if args.get("regex", True):
            try:
                rx = re.compile(pattern)
            except re.error as e:
                return ToolResult.text(f"Invalid regex: {e}", is_error=True)

        out_lines = []
        for f in file_list:
            try:
                text = read_text(f)
            except OSError:
                continue
            for i, line in enumerate(text.splitlines(), start=1):
                hit = (rx.search(line) is not None) if rx else (pattern in line)
                if hit:
                    out_lines.append(f"{f.resolve().relative_to(cwd)}:{i}: {line}")
                    if len(out_lines) >= max_matches:
                        return ToolResult.text("\n".join(out_lines))
        return ToolResult.text("\n".join(out_lines) if out_lines else "(no matches)")
