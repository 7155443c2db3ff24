from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

import yaml

from ..errors import ConfigError

_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    base_url: str
    model: str
    api_key: str


class ProviderRegistry:
    def __init__(self) -> None:
        self._items: Dict[str, ProviderConfig] = {}

    def add(self, cfg: ProviderConfig) -> None:
        key = cfg.name.strip().lower()
        if not key:
            raise ConfigError("Provider name cannot be empty.")
        self._items[key] = cfg

    def get(self, name: str) -> ProviderConfig:
        key = (name or "").strip().lower()
        if not key:
            raise ConfigError("Missing provider name.")
        if key not in self._items:
            known = ", ".join(sorted(self._items.keys())) or "(none)"
            raise ConfigError(f"Unknown provider '{name}'. Known providers: {known}")
        return self._items[key]


def _expand_env_placeholders(s: str, env: dict[str, str]) -> str:
    def repl(m: re.Match) -> str:
        var = m.group(1)
        val = env.get(var)
        if not val:
            raise ConfigError(f"API key placeholder '${{{var}}}' not found in environment or is empty.")
        return val

    return _ENV_PATTERN.sub(repl, s)


def load_provider_registry(yaml_path: str | Path, env: dict[str, str] | None = None) -> ProviderRegistry:
    """Load `providers:` from YAML.

    Each provider needs PYAGENTRUN_BASE_URL, PYAGENTRUN_MODEL and
    PYAGENTRUN_API_KEY; the key may be a `${ENV_VAR}` placeholder.
    """
    env = dict(os.environ) if env is None else env
    p = Path(yaml_path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(f"Config YAML not found: {p}")

    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Config YAML is not valid: {e}") from e
    providers = data.get("providers") if isinstance(data, dict) else None
    if not isinstance(providers, dict) or not providers:
        raise ConfigError("YAML must contain a non-empty 'providers:' mapping.")

    reg = ProviderRegistry()

    for name, cfg in providers.items():
        if not isinstance(cfg, dict):
            raise ConfigError(f"providers.{name} must be a mapping/dict.")

        base_url = str(cfg.get("PYAGENTRUN_BASE_URL") or "").strip()
        model = str(cfg.get("PYAGENTRUN_MODEL") or "").strip()
        api_key = str(cfg.get("PYAGENTRUN_API_KEY") or "").strip()

        missing = [k for k, v in {
            "PYAGENTRUN_BASE_URL": base_url,
            "PYAGENTRUN_MODEL": model,
            "PYAGENTRUN_API_KEY": api_key,
        }.items() if not v]
        if missing:
            raise ConfigError(f"providers.{name} missing required field(s): {', '.join(missing)}")

        api_key = _expand_env_placeholders(api_key, env)

        reg.add(ProviderConfig(name=str(name), base_url=base_url, model=model, api_key=api_key))

    return reg
