from __future__ import annotations
import asyncio
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Any

from ..base import ToolSpec, ToolResult, ToolContext


def _shell_argv(cmd: str) -> list[str]:
    # a real shell so built-ins like `cd`, pipes, && and env expansion work
    if os.name == "nt":
        return ["cmd.exe", "/c", cmd]
    return ["bash" if shutil.which("bash") else "sh", "-c", cmd]


@dataclass
class BashTool:
    spec: ToolSpec = ToolSpec(
        name="Bash",
        description="Run a shell command in the working directory. Returns stdout/stderr and exit code.",
        permission_key="bash",
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "minLength": 1, "description": "Shell command to run."},
                "timeout": {"type": "integer", "minimum": 1, "default": 120, "description": "Timeout seconds."},
            },
            "required": ["command"],
            "additionalProperties": False,
        },
    )

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        return await asyncio.to_thread(self._run, ctx, args)

    def _run(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        cmd = args["command"].strip()
        timeout = int(args.get("timeout", 120))
        if not cmd:
            return ToolResult.text("Empty command.", is_error=True)

        try:
            proc = subprocess.run(
                _shell_argv(cmd),
                cwd=ctx.cwd,
                text=True,
                errors="replace",
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            return ToolResult.text(f"Command timed out after {timeout}s.", is_error=True)
        except OSError as e:
            return ToolResult.text(f"Failed to start shell: {e}", is_error=True)

        out = ""
        if proc.stdout:
            out += f"STDOUT:\n{proc.stdout}\n"
        if proc.stderr:
            out += f"STDERR:\n{proc.stderr}\n"
        out += f"EXIT_CODE: {proc.returncode}"
        return ToolResult.text(out, is_error=(proc.returncode != 0))
