from __future__ import annotations

import json

import pytest

from pyagentrun.config.loader import load_behavior_config
from pyagentrun.config.settings import DEFAULT_MODEL, Settings
from pyagentrun.errors import ConfigError
from pyagentrun.llm.factory import load_provider_registry
from pyagentrun.runtime.options import (
    DEFAULT_SYSTEM_PROMPT,
    SystemPromptPreset,
    TaskOptions,
    render_system_prompt,
)
from pyagentrun.tools.permissions import PermissionMode, PermissionRule


def test_missing_api_key_fails_fast():
    with pytest.raises(ConfigError) as exc:
        Settings.load(env={})
    assert "PYAGENTRUN_API_KEY" in str(exc.value)


def test_env_and_explicit_values():
    env = {"PYAGENTRUN_API_KEY": "k", "PYAGENTRUN_MODEL": "env-model", "PYAGENTRUN_SEARCH_API_KEY": "s"}
    s = Settings.load(env=env)
    assert s.api_key == "k" and s.model == "env-model"
    assert s.web_search_enabled
    assert Settings.load(env=env, model="cli-model").model == "cli-model"
    assert Settings.load(env={"PYAGENTRUN_API_KEY": "k"}).model == DEFAULT_MODEL


def test_base_url_must_be_http():
    with pytest.raises(ConfigError):
        Settings.load(env={"PYAGENTRUN_API_KEY": "k", "PYAGENTRUN_BASE_URL": "ftp://x"})


def test_yaml_provider_with_placeholder(tmp_path):
    cfg = tmp_path / "providers.yaml"
    cfg.write_text(
        "providers:\n"
        "  local:\n"
        "    PYAGENTRUN_BASE_URL: http://localhost:8000/v1\n"
        "    PYAGENTRUN_MODEL: qwen\n"
        "    PYAGENTRUN_API_KEY: ${LOCAL_KEY}\n",
        encoding="utf-8",
    )
    s = Settings.load(provider="local", config_path=cfg, env={"LOCAL_KEY": "secret"})
    assert (s.base_url, s.model, s.api_key, s.provider_name) == ("http://localhost:8000/v1", "qwen", "secret", "local")

    with pytest.raises(ConfigError):
        load_provider_registry(cfg, env={})
    with pytest.raises(ConfigError):
        load_provider_registry(cfg, env={"LOCAL_KEY": "x"}).get("other")


def test_yaml_provider_missing_field(tmp_path):
    cfg = tmp_path / "providers.yaml"
    cfg.write_text("providers:\n  bad:\n    PYAGENTRUN_MODEL: m\n", encoding="utf-8")
    with pytest.raises(ConfigError) as exc:
        load_provider_registry(cfg, env={})
    assert "PYAGENTRUN_BASE_URL" in str(exc.value)


def test_behavior_config(tmp_path):
    (tmp_path / ".pyagentrun.json").write_text(json.dumps({
        "permission_mode": "interactive",
        "step_limit": 7,
        "system_prompt_append": "  Answer in French.  ",
        "permissions": [{"match": "bash", "decision": "deny"}, {"bogus": 1}],
        "mcp_servers": {"example": {"command": "python", "args": ["-m", "srv"], "timeout": 5}},
    }), encoding="utf-8")
    cfg = load_behavior_config(cwd=tmp_path, include_global=False)
    assert cfg.permission_mode is PermissionMode.INTERACTIVE
    assert cfg.step_limit == 7
    assert cfg.system_prompt_append == "Answer in French."
    assert cfg.permissions == [PermissionRule("bash", "deny")]
    assert cfg.mcp_servers["example"].command == ["python", "-m", "srv"]
    assert cfg.loaded_from == tmp_path / ".pyagentrun.json"


def test_behavior_config_errors(tmp_path):
    (tmp_path / ".pyagentrun.json").write_text('{"permission_mode": "yolo"}', encoding="utf-8")
    with pytest.raises(ConfigError):
        load_behavior_config(cwd=tmp_path, include_global=False)
    with pytest.raises(ConfigError):
        load_behavior_config(cwd=tmp_path, explicit_path=tmp_path / "missing.json", include_global=False)


def test_no_behavior_config_gives_defaults(tmp_path):
    cfg = load_behavior_config(cwd=tmp_path, include_global=False)
    assert cfg.permission_mode is PermissionMode.AUTO_ACCEPT_EDITS
    assert cfg.loaded_from is None


def test_system_prompt_rendering():
    assert render_system_prompt(None) == DEFAULT_SYSTEM_PROMPT
    assert render_system_prompt("custom") == "custom"
    assert render_system_prompt(SystemPromptPreset(append="Be brief.")).endswith("\n\nBe brief.")
    with pytest.raises(ConfigError):
        render_system_prompt(SystemPromptPreset(preset="nope"))
    assert SystemPromptPreset.from_obj({"preset": "minimal"}) == SystemPromptPreset("minimal")


def test_task_options_validation():
    assert TaskOptions(permission_mode="bypass").permission_mode is PermissionMode.BYPASS
    with pytest.raises(ConfigError):
        TaskOptions(step_limit=0)
    with pytest.raises(ConfigError):
        TaskOptions(fork_session=True)
    with pytest.raises(ValueError):
        TaskOptions(permission_mode="sometimes")
