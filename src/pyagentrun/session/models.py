from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

TurnKind = Literal["user", "assistant", "tool_call", "tool_result"]


class SessionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ERRORED = "errored"


@dataclass(frozen=True)
class Turn:
    """One immutable unit of conversation state.

    - user:        `text` is the task
    - assistant:   `text` is the backend's answer (may be empty when it only calls tools)
    - tool_call:   `call_id`, `tool_name`, `arguments`, `seq`
    - tool_result: `call_id`, `tool_name`, `content` blocks, `is_error`, `seq`
    """

    kind: TurnKind
    text: str = ""
    call_id: str | None = None
    tool_name: str | None = None
    arguments: dict[str, Any] | None = None
    content: tuple[dict[str, Any], ...] = ()
    is_error: bool = False
    seq: int | None = None
    created_at: float = field(default_factory=time.time)

    @staticmethod
    def user(text: str) -> "Turn":
        return Turn(kind="user", text=text)

    @staticmethod
    def assistant(text: str) -> "Turn":
        return Turn(kind="assistant", text=text)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"kind": self.kind, "text": self.text, "created_at": self.created_at}
        if self.call_id is not None:
            d["call_id"] = self.call_id
        if self.tool_name is not None:
            d["tool_name"] = self.tool_name
        if self.arguments is not None:
            d["arguments"] = self.arguments
        if self.content:
            d["content"] = list(self.content)
        if self.is_error:
            d["is_error"] = True
        if self.seq is not None:
            d["seq"] = self.seq
        return d

    @staticmethod
    def from_dict(obj: dict[str, Any]) -> "Turn":
        kind = obj.get("kind")
        if kind not in {"user", "assistant", "tool_call", "tool_result"}:
            raise ValueError(f"Unknown turn kind: {kind!r}")
        return Turn(
            kind=kind,
            text=str(obj.get("text") or ""),
            call_id=obj.get("call_id"),
            tool_name=obj.get("tool_name"),
            arguments=obj.get("arguments"),
            content=tuple(obj.get("content") or ()),
            is_error=bool(obj.get("is_error", False)),
            seq=obj.get("seq"),
            created_at=float(obj.get("created_at") or 0.0),
        )


@dataclass(frozen=True)
class Session:
    """Point-in-time view of a stored session."""

    id: str
    turns: tuple[Turn, ...]
    parent_id: str | None = None
    fork_point: int | None = None
    created_at: float = 0.0
    status: SessionStatus = SessionStatus.ACTIVE

    def last_seq(self) -> int:
        seqs = [t.seq for t in self.turns if t.seq is not None]
        return max(seqs) if seqs else 0


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]  # parsed json


@dataclass
class AssistantTurn:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    reasoning_content: str | None = None


@dataclass(frozen=True)
class ToolInvocation:
    name: str
    arguments: dict[str, Any]
    session_id: str
    seq: int
    call_id: str = ""
