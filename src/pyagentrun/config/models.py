from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from ..mcp.models import MCPServerConfig
from ..tools.permissions import PermissionMode, PermissionRule


@dataclass
class BehaviorConfig:
    """Behavior config loaded from JSON: permission policy, loop limits and
    extra tool bundles."""

    permission_mode: PermissionMode = PermissionMode.AUTO_ACCEPT_EDITS
    permissions: list[PermissionRule] = field(default_factory=list)
    step_limit: int | None = None
    system_prompt_append: str | None = None
    mcp_servers: dict[str, MCPServerConfig] = field(default_factory=dict)

    loaded_from: Path | None = None
