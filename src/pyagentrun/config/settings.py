from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import ConfigError
from ..llm.factory import load_provider_registry

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_SEARCH_URL = "https://api.tavily.com/search"


@dataclass(frozen=True)
class Settings:
    """Credentials and defaults the runtime needs before accepting any task."""

    api_key: str
    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL
    provider_name: str = "openai"
    search_api_key: str | None = None
    search_url: str = DEFAULT_SEARCH_URL
    data_dir: Path | None = None

    def validate(self) -> "Settings":
        missing = []
        if not (self.api_key or "").strip():
            missing.append("PYAGENTRUN_API_KEY")
        if not (self.base_url or "").strip():
            missing.append("PYAGENTRUN_BASE_URL")
        if not (self.model or "").strip():
            missing.append("PYAGENTRUN_MODEL")
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")
        if not self.base_url.startswith(("http://", "https://")):
            raise ConfigError(f"PYAGENTRUN_BASE_URL must be an http(s) URL, got: {self.base_url}")
        return self

    @property
    def web_search_enabled(self) -> bool:
        return bool(self.search_api_key)

    @staticmethod
    def load(
        *,
        provider: Optional[str] = None,
        config_path: Optional[Path] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        data_dir: Optional[Path] = None,
        env: Optional[dict[str, str]] = None,
    ) -> "Settings":
        """Resolve settings and fail fast when a required value is missing.

        Priority: explicit arguments > environment > YAML provider entry > defaults.
        """
        env = dict(os.environ) if env is None else env

        yaml_base = yaml_model = yaml_key = None
        provider_name = "openai"
        if provider:
            reg = load_provider_registry(config_path or Path("pyagentrun.yaml"), env=env)
            cfg = reg.get(provider)
            provider_name = cfg.name
            yaml_base, yaml_model, yaml_key = cfg.base_url, cfg.model, cfg.api_key

        settings = Settings(
            api_key=api_key or env.get("PYAGENTRUN_API_KEY") or yaml_key or "",
            base_url=base_url or env.get("PYAGENTRUN_BASE_URL") or yaml_base or DEFAULT_BASE_URL,
            model=model or env.get("PYAGENTRUN_MODEL") or yaml_model or DEFAULT_MODEL,
            provider_name=provider_name,
            search_api_key=env.get("PYAGENTRUN_SEARCH_API_KEY") or None,
            search_url=env.get("PYAGENTRUN_SEARCH_URL") or DEFAULT_SEARCH_URL,
            data_dir=data_dir or (Path(env["PYAGENTRUN_DATA_DIR"]) if env.get("PYAGENTRUN_DATA_DIR") else None),
        )
        return settings.validate()
