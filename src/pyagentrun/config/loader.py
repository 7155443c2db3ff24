from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from platformdirs import user_config_dir

from ..errors import ConfigError
from ..mcp.models import MCPServerConfig
from ..tools.permissions import PermissionMode, PermissionRule
from .models import BehaviorConfig

APP_NAME = "pyagentrun"


def _candidate_paths(cwd: Path) -> list[Path]:
    # project-level (higher priority)
    return [
        cwd / ".pyagentrun.json",
        cwd / "pyagentrun.json",
    ]


def _global_candidate_paths() -> list[Path]:
    cfg_dir = Path(user_config_dir(APP_NAME))
    return [cfg_dir / "pyagentrun.json"]


def _load_json(p: Path) -> dict[str, Any] | None:
    try:
        obj = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return obj if isinstance(obj, dict) else None


def _merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge_dicts(out[k], v)  # type: ignore
        else:
            out[k] = v
    return out


def load_behavior_config(
    *,
    cwd: Path,
    explicit_path: Path | None = None,
    include_global: bool = True,
) -> BehaviorConfig:
    """Load behavior config.

    Merge order: global < project < explicit_path.
    """
    merged: dict[str, Any] = {}
    loaded_from: Path | None = None

    if include_global:
        for p in _global_candidate_paths():
            if p.is_file():
                obj = _load_json(p)
                if obj is not None:
                    merged = _merge_dicts(merged, obj)
                    loaded_from = p

    for p in _candidate_paths(cwd):
        if p.is_file():
            obj = _load_json(p)
            if obj is not None:
                merged = _merge_dicts(merged, obj)
                loaded_from = p
                break  # first match wins for project-level

    if explicit_path is not None:
        p = explicit_path.expanduser().resolve()
        if not p.is_file():
            raise ConfigError(f"Behavior config not found: {p}")
        obj = _load_json(p)
        if obj is None:
            raise ConfigError(f"Behavior config is not a JSON object: {p}")
        merged = _merge_dicts(merged, obj)
        loaded_from = p

    cfg = BehaviorConfig()
    cfg.loaded_from = loaded_from

    mode = merged.get("permission_mode")
    if mode is not None:
        try:
            cfg.permission_mode = PermissionMode(mode)
        except ValueError as e:
            known = ", ".join(m.value for m in PermissionMode)
            raise ConfigError(f"Unknown permission_mode '{mode}'. Expected one of: {known}") from e

    perms = merged.get("permissions", [])
    if isinstance(perms, list):
        for it in perms:
            r = PermissionRule.from_obj(it)
            if r is not None:
                cfg.permissions.append(r)

    sl = merged.get("step_limit")
    if isinstance(sl, int) and not isinstance(sl, bool) and sl > 0:
        cfg.step_limit = sl

    spa = merged.get("system_prompt_append")
    if isinstance(spa, str) and spa.strip():
        cfg.system_prompt_append = spa.strip()

    mcp = merged.get("mcp_servers", {}) or merged.get("mcpServers", {})
    if isinstance(mcp, dict):
        for name, obj in mcp.items():
            if not isinstance(name, str):
                continue
            sc = MCPServerConfig.from_obj(name, obj)
            if sc is not None:
                cfg.mcp_servers[name] = sc

    return cfg
