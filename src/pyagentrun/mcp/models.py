from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any


@dataclass
class MCPServerConfig:
    """One stdio tool server; its tools form the bundle `name`."""

    name: str
    command: list[str]
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    timeout: float = 30.0

    @staticmethod
    def from_obj(name: str, obj: Any) -> "MCPServerConfig | None":
        if not isinstance(obj, dict):
            return None
        cmd = obj.get("command")
        if isinstance(cmd, str):
            cmd = [cmd, *[str(a) for a in obj.get("args") or []]]
        if not isinstance(cmd, list) or not cmd or not all(isinstance(x, str) for x in cmd):
            return None
        env = obj.get("env", {})
        if not isinstance(env, dict):
            env = {}
        cwd = obj.get("cwd")
        if cwd is not None and not isinstance(cwd, str):
            cwd = None
        timeout = obj.get("timeout", 30.0)
        if not isinstance(timeout, (int, float)) or isinstance(timeout, bool) or timeout <= 0:
            timeout = 30.0
        return MCPServerConfig(
            name=name,
            command=[str(x) for x in cmd],
            env={str(k): str(v) for k, v in env.items()},
            cwd=cwd,
            timeout=float(timeout),
        )
