"""pyagentrun: an agent session runtime.

    runtime = AgentRuntime.from_settings(Settings.load())
    async with runtime.run_task("list files", allowed_tools={"Glob"}) as stream:
        async for msg in stream:
            ...
"""
from .app_context import AgentRuntime
from .config.settings import Settings
from .runtime.options import RetryPolicy, SystemPromptPreset, TaskOptions
from .runtime.stream import StreamMessage, TaskStream
from .tools.base import ToolDescriptor, ToolResult, ToolSpec, tool
from .tools.permissions import PermissionMode

__version__ = "0.1.0"

__all__ = [
    "AgentRuntime",
    "PermissionMode",
    "RetryPolicy",
    "Settings",
    "StreamMessage",
    "SystemPromptPreset",
    "TaskOptions",
    "TaskStream",
    "ToolDescriptor",
    "ToolResult",
    "ToolSpec",
    "tool",
]
