from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol, Union

Handler = Callable[[dict[str, Any]], Union[Awaitable[Any], Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: dict[str, Any]   # JSONSchema
    permission_key: str          # "read" | "edit" | "bash" | "mcp"


class Tool(Protocol):
    spec: ToolSpec
    async def execute(self, ctx: "ToolContext", args: dict[str, Any]) -> "ToolResult": ...


@dataclass
class ToolResult:
    """Normalized tool output.

    `content` follows the bundle wire shape: a list of blocks, each
    `{"type": "text", "text": ...}` or `{"type": <kind>, "data": ...}`.
    """

    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    @staticmethod
    def text(text: str, is_error: bool = False) -> "ToolResult":
        return ToolResult(content=[{"type": "text", "text": text}], is_error=is_error)

    @staticmethod
    def coerce(value: Any) -> "ToolResult":
        """Accept what handlers commonly return: a ToolResult, a
        `{"content": [...]}` mapping, a plain string or any json-able value."""
        if isinstance(value, ToolResult):
            return value
        if isinstance(value, dict) and "content" in value:
            blocks = value.get("content")
            is_error = bool(value.get("is_error") or value.get("isError"))
            if isinstance(blocks, str):
                return ToolResult.text(blocks, is_error=is_error)
            if isinstance(blocks, list):
                out: list[dict[str, Any]] = []
                for b in blocks:
                    if isinstance(b, dict) and "type" in b:
                        out.append(dict(b))
                    else:
                        out.append({"type": "text", "text": str(b)})
                return ToolResult(content=out, is_error=is_error)
        if value is None:
            return ToolResult.text("")
        if isinstance(value, str):
            return ToolResult.text(value)
        return ToolResult(content=[{"type": "json", "data": value}])

    def as_text(self) -> str:
        parts: list[str] = []
        for b in self.content:
            if b.get("type") == "text":
                parts.append(str(b.get("text", "")))
            else:
                parts.append(json.dumps(b.get("data", b), ensure_ascii=False, default=str))
        return "\n".join(parts)

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "is_error": self.is_error}


@dataclass
class ToolContext:
    cwd: str
    session_id: str | None = None


@dataclass(frozen=True)
class ToolDescriptor:
    """A registrable tool: a spec plus a handler.

    The handler is either `handler(args)` (sync or async) or, for builtin
    tools, an object implementing the Tool protocol.
    """

    spec: ToolSpec
    handler: Handler | None = None
    tool: Tool | None = None

    @property
    def name(self) -> str:
        return self.spec.name

    async def call(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        if self.tool is not None:
            return ToolResult.coerce(await self.tool.execute(ctx, args))
        if self.handler is None:
            raise RuntimeError(f"Tool {self.spec.name} has no handler")
        out = self.handler(args)
        if inspect.isawaitable(out):
            out = await out
        return ToolResult.coerce(out)


def tool(
    name: str,
    description: str,
    parameters: dict[str, Any],
    *,
    permission_key: str = "mcp",
) -> Callable[[Handler], ToolDescriptor]:
    """Decorator turning an `(args) -> {content: [...]}` function into a descriptor."""

    def wrap(fn: Handler) -> ToolDescriptor:
        spec = ToolSpec(name=name, description=description, parameters=parameters, permission_key=permission_key)
        return ToolDescriptor(spec=spec, handler=fn)

    return wrap


def from_tool(t: Tool) -> ToolDescriptor:
    return ToolDescriptor(spec=t.spec, tool=t)
