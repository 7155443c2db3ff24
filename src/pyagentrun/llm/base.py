from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from ..session.models import AssistantTurn, Turn
from ..tools.base import ToolSpec

TextCallback = Callable[[str], Awaitable[None]]


@dataclass
class BackendRequest:
    model: str
    system_prompt: str
    turns: list[Turn]
    # (qualified name, spec) pairs advertised to the backend
    tools: list[tuple[str, ToolSpec]] = field(default_factory=list)
    step: int = 0


class Backend(Protocol):
    """A reasoning backend.

    Implementations raise BackendUnavailable for transient failures (the loop
    retries those) and BackendProtocolError for malformed responses.
    """

    async def complete(self, request: BackendRequest, on_text: TextCallback | None = None) -> AssistantTurn: ...


def tool_specs_to_openai(tools: list[tuple[str, ToolSpec]]) -> list[dict[str, Any]]:
    out = []
    for qname, spec in tools:
        out.append({
            "type": "function",
            "function": {
                "name": qname,
                "description": spec.description,
                "parameters": spec.parameters or {"type": "object", "properties": {}},
            },
        })
    return out
