from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from ..errors import ConfigError
from ..tools.permissions import ApprovalCallback, PermissionMode

DEFAULT_SYSTEM_PROMPT = """You are pyagentrun, an autonomous task agent.
Rules:
- Use the provided tools to inspect files and run commands when needed.
- Prefer reading and searching before editing files.
- Do not fabricate file contents or command outputs: use tools.
- If a tool call is denied, do not retry it blindly: adapt your plan or explain what you need.
- Keep tool arguments minimal and correct.
"""

PRESETS: dict[str, str] = {
    "default": DEFAULT_SYSTEM_PROMPT,
    "minimal": "You are a helpful assistant. Use tools when they help answer the task.",
}


@dataclass(frozen=True)
class SystemPromptPreset:
    preset: str = "default"
    append: str | None = None

    @staticmethod
    def from_obj(obj: Any) -> "SystemPromptPreset | None":
        if not isinstance(obj, dict):
            return None
        preset = obj.get("preset", "default")
        append = obj.get("append")
        if not isinstance(preset, str) or (append is not None and not isinstance(append, str)):
            return None
        return SystemPromptPreset(preset=preset, append=append)


SystemPrompt = Union[str, SystemPromptPreset, None]


def render_system_prompt(prompt: SystemPrompt) -> str:
    if prompt is None:
        return DEFAULT_SYSTEM_PROMPT
    if isinstance(prompt, str):
        return prompt
    base = PRESETS.get(prompt.preset)
    if base is None:
        known = ", ".join(sorted(PRESETS))
        raise ConfigError(f"Unknown system prompt preset '{prompt.preset}'. Known presets: {known}")
    if prompt.append:
        return base.rstrip() + "\n\n" + prompt.append
    return base


@dataclass(frozen=True)
class RetryPolicy:
    """Retries for transient backend failures with exponential backoff."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay(self, attempt: int) -> float:
        # attempt is 0-based
        return min(self.max_delay, self.base_delay * (2 ** attempt))


@dataclass
class TaskOptions:
    allowed_tools: set[str] | None = None
    permission_mode: PermissionMode = PermissionMode.AUTO_ACCEPT_EDITS
    can_use_tool: ApprovalCallback | None = None
    resume: str | None = None
    fork_session: bool = False
    model: str | None = None
    system_prompt: SystemPrompt = None
    step_limit: int = 25
    cwd: str = "."
    backend_timeout: float | None = 180.0
    tool_timeout: float | None = 120.0
    approval_timeout: float | None = 300.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    include_partial_messages: bool = False
    max_tool_result_chars: int = 12000
    queue_size: int = 64

    def __post_init__(self) -> None:
        self.permission_mode = PermissionMode(self.permission_mode)
        if self.step_limit < 1:
            raise ConfigError("step_limit must be at least 1")
        if self.fork_session and not self.resume:
            raise ConfigError("fork_session requires resume=<session id>")
        if self.queue_size < 1:
            raise ConfigError("queue_size must be at least 1")
        render_system_prompt(self.system_prompt)
