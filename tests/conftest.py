from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Callable, Union

import pytest

from pyagentrun.app_context import AgentRuntime
from pyagentrun.config.models import BehaviorConfig
from pyagentrun.config.settings import Settings
from pyagentrun.llm.base import BackendRequest
from pyagentrun.runtime.options import RetryPolicy
from pyagentrun.session.models import AssistantTurn, ToolCall
from pyagentrun.session.store import InMemorySessionStore
from pyagentrun.tools.base import tool
from pyagentrun.tools.builtin import register_builtin_tools
from pyagentrun.tools.registry import ToolRegistry

Step = Union[AssistantTurn, BaseException, Callable[[BackendRequest], Any]]


class ScriptedBackend:
    """Backend that replays a fixed list of responses."""

    def __init__(self, script: list[Step]):
        self.script = list(script)
        self.requests: list[BackendRequest] = []

    async def complete(self, request: BackendRequest, on_text=None) -> AssistantTurn:
        self.requests.append(request)
        if not self.script:
            raise AssertionError("backend called more times than scripted")
        item = self.script.pop(0)
        if callable(item) and not isinstance(item, BaseException):
            item = item(request)
            if asyncio.iscoroutine(item):
                item = await item
        if isinstance(item, BaseException):
            raise item
        if on_text is not None and item.text:
            for word in item.text.split(" "):
                await on_text(word)
        return item


def calls(*specs: tuple[str, dict[str, Any]]) -> AssistantTurn:
    return AssistantTurn(tool_calls=[
        ToolCall(id=f"call_{i}_{name}", name=name, arguments=args) for i, (name, args) in enumerate(specs)
    ])


def answer(text: str) -> AssistantTurn:
    return AssistantTurn(text=text)


def types(messages) -> list[str]:
    return [m.type for m in messages]


@pytest.fixture
def settings() -> Settings:
    return Settings(api_key="test-key", model="test-model")


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    register_builtin_tools(reg)
    return reg


@pytest.fixture
def make_runtime(settings: Settings, registry: ToolRegistry, tmp_path: Path):
    def make(script: list[Step], *, behavior: BehaviorConfig | None = None, store=None) -> AgentRuntime:
        return AgentRuntime(
            settings=settings,
            backend=ScriptedBackend(script),
            tools=registry,
            store=store or InMemorySessionStore(),
            behavior=behavior or BehaviorConfig(),
            cwd=tmp_path,
            events_dir=tmp_path / ".events",
            trace=True,
        )
    return make


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.001, max_delay=0.01)


@pytest.fixture
def sleepy_bundle(registry: ToolRegistry) -> dict[str, list[str]]:
    """Bundle `timing` with tools that finish in reverse order of request."""
    finished: list[str] = []

    def make(name: str, delay: float):
        @tool(name, f"Sleeps {delay}s", {"type": "object", "properties": {}}, permission_key="read")
        async def handler(args: dict[str, Any]):
            await asyncio.sleep(delay)
            finished.append(name)
            return {"content": [{"type": "text", "text": f"{name} done"}]}
        return handler

    registry.register("timing", [make("slow", 0.05), make("medium", 0.02), make("fast", 0.0)])
    return {"finished": finished}
