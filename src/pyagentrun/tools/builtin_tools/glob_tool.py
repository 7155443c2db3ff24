from __future__ import annotations
import asyncio
import glob as _glob
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..base import ToolSpec, ToolResult, ToolContext


@dataclass
class GlobTool:
    spec: ToolSpec = ToolSpec(
        name="Glob",
        description="Find files matching a glob pattern (relative to cwd).",
        permission_key="read",
        parameters={
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "minLength": 1, "description": "Glob pattern, e.g. 'src/**/*.py'."},
                "max_results": {"type": "integer", "minimum": 1, "default": 200},
            },
            "required": ["pattern"],
            "additionalProperties": False,
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        return await asyncio.to_thread(self._run, ctx, args)

    def _run(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        cwd = Path(ctx.cwd).resolve()
        pattern = args["pattern"]
        max_results = int(args.get("max_results", 200))
        matches = sorted(_glob.glob(str(cwd / pattern), recursive=True))
        rel = []
        for m in matches:
            try:
                rel.append(str(Path(m).resolve().relative_to(cwd)))
            except ValueError:
                continue
            if len(rel) >= max_results:
                break
        return ToolResult.text("\n".join(rel) if rel else "(no matches)")
