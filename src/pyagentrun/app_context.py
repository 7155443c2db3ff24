from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .config.loader import load_behavior_config
from .config.models import BehaviorConfig
from .config.settings import Settings
from .events.store import EventStore
from .llm.base import Backend
from .llm.openai_compat import OpenAICompatProvider
from .mcp.bridge import register_mcp_servers
from .mcp.client import MCPClient
from .runtime.loop import ExecutionLoop
from .runtime.options import SystemPromptPreset, TaskOptions
from .runtime.stream import TaskStream
from .session.models import Session
from .session.store import JsonlSessionStore, SessionStore
from .tools.builtin import register_builtin_tools
from .tools.permissions import PermissionConfig, PermissionGate
from .tools.registry import ToolRegistry


@dataclass
class AgentRuntime:
    """Shared state for all tasks: backend, tool registry, session store.

    Each `run_task` call gets its own execution loop and permission gate.
    """

    settings: Settings
    backend: Backend
    tools: ToolRegistry
    store: SessionStore
    behavior: BehaviorConfig = field(default_factory=BehaviorConfig)
    cwd: Path = field(default_factory=Path.cwd)
    events_dir: Path | None = None
    trace: bool = True
    mcp_clients: list[MCPClient] = field(default_factory=list)

    def close(self) -> None:
        """Stop background resources (tool server processes)."""
        for c in self.mcp_clients:
            c.close()
        self.mcp_clients = []

    def __enter__(self) -> "AgentRuntime":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @staticmethod
    def from_settings(
        settings: Settings,
        *,
        cwd: Path | None = None,
        behavior_config: Path | None = None,
        behavior: BehaviorConfig | None = None,
        backend: Backend | None = None,
        store: SessionStore | None = None,
        trace: bool = True,
    ) -> "AgentRuntime":
        settings = settings.validate()
        cwd = (cwd or Path.cwd()).expanduser().resolve()

        if behavior is None:
            behavior = load_behavior_config(cwd=cwd, explicit_path=behavior_config)

        if backend is None:
            backend = OpenAICompatProvider(
                model=settings.model,
                base_url=settings.base_url,
                api_key=settings.api_key,
                provider_name=settings.provider_name,
            )

        tools = ToolRegistry()
        register_builtin_tools(tools, search_api_key=settings.search_api_key, search_url=settings.search_url)
        mcp_clients: list[MCPClient] = []
        if behavior.mcp_servers:
            mcp_clients = register_mcp_servers(tools, list(behavior.mcp_servers.values()))

        data_dir = settings.data_dir
        if store is None:
            store = JsonlSessionStore(data_dir / "sessions" if data_dir else None)

        return AgentRuntime(
            settings=settings,
            backend=backend,
            tools=tools,
            store=store,
            behavior=behavior,
            cwd=cwd,
            events_dir=data_dir / "events" if data_dir else None,
            trace=trace,
            mcp_clients=mcp_clients,
        )

    def default_options(self, **overrides: Any) -> TaskOptions:
        base: dict[str, Any] = {
            "permission_mode": self.behavior.permission_mode,
            "model": self.settings.model,
            "cwd": str(self.cwd),
        }
        if self.behavior.step_limit:
            base["step_limit"] = self.behavior.step_limit
        if self.behavior.system_prompt_append:
            base["system_prompt"] = SystemPromptPreset(append=self.behavior.system_prompt_append)
        base.update(overrides)
        return TaskOptions(**base)

    def run_task(self, prompt: str | None, options: TaskOptions | None = None, **overrides: Any) -> TaskStream:
        """Start a task; iterate the returned stream to drive it.

        `prompt=None` continues a resumed session without a new user turn.
        """
        if options is None:
            options = self.default_options(**overrides)
        elif overrides:
            options = replace(options, **overrides)

        gate = PermissionGate(
            PermissionConfig(rules=list(self.behavior.permissions)),
            can_use_tool=options.can_use_tool,
            allowed_tools=options.allowed_tools,
            approval_timeout=options.approval_timeout,
        )

        async def resolve_session() -> Session:
            if options.resume is None:
                return await self.store.create()
            if options.fork_session:
                return await self.store.fork(options.resume)
            return await self.store.load(options.resume)

        def make_loop(session_id: str, emit, cancel_event) -> ExecutionLoop:
            return ExecutionLoop(
                session_id=session_id,
                backend=self.backend,
                tools=self.tools,
                store=self.store,
                gate=gate,
                options=options,
                emit=emit,
                cancel_event=cancel_event,
                events=EventStore.open(session_id, self.events_dir) if self.trace else None,
                default_model=self.settings.model,
            )

        return TaskStream(
            prompt,
            resolve_session=resolve_session,
            make_loop=make_loop,
            claim=self.store.claim,
            release=self.store.release,
            queue_size=options.queue_size,
            requested_session_id=options.resume,
        )
