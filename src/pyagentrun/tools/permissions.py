from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Awaitable, Callable, Literal, Union

from ..session.models import ToolInvocation

Decision = Literal["allow", "ask", "deny"]

# canUseTool(name, args) -> bool, sync or async
ApprovalCallback = Callable[[str, dict[str, Any]], Union[bool, Awaitable[bool]]]


class PermissionMode(str, Enum):
    AUTO_ACCEPT_EDITS = "auto_accept_edits"
    BYPASS = "bypass"
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class PermissionDecision:
    behavior: Decision
    reason: str | None = None

    @property
    def allowed(self) -> bool:
        return self.behavior == "allow"

    @staticmethod
    def allow() -> "PermissionDecision":
        return PermissionDecision("allow")

    @staticmethod
    def deny(reason: str) -> "PermissionDecision":
        return PermissionDecision("deny", reason)

    @staticmethod
    def ask(reason: str | None = None) -> "PermissionDecision":
        return PermissionDecision("ask", reason)


@dataclass
class PermissionRule:
    """A single permission rule.

    match supports:
    - "tool:<name_or_pattern>"  -> matches tool name only
    - otherwise: fnmatch against both permission_key and tool_name
    """

    match: str
    decision: Decision

    @staticmethod
    def from_obj(obj: Any) -> "PermissionRule | None":
        if not isinstance(obj, dict):
            return None
        m = obj.get("match")
        d = obj.get("decision")
        if not isinstance(m, str) or d not in {"allow", "ask", "deny"}:
            return None
        return PermissionRule(match=m, decision=d)


# What auto_accept_edits does per permission class when no rule matches.
AUTO_ACCEPT_DEFAULTS: dict[str, Decision] = {"read": "allow", "edit": "allow", "bash": "ask", "mcp": "ask"}


@dataclass
class PermissionConfig:
    defaults: dict[str, Decision] = field(default_factory=lambda: dict(AUTO_ACCEPT_DEFAULTS))
    rules: list[PermissionRule] = field(default_factory=list)

    def match_rules(self, permission_key: str, tool_name: str) -> Decision | None:
        decision: Decision | None = None
        for rule in self.rules:
            m = rule.match
            if m.startswith("tool:"):
                pat = m[len("tool:") :]
                if fnmatch(tool_name, pat):
                    decision = rule.decision
            else:
                if fnmatch(permission_key, m) or fnmatch(tool_name, m):
                    decision = rule.decision
        return decision

    def default_for(self, permission_key: str, tool_name: str) -> Decision:
        return self.defaults.get(permission_key, self.defaults.get(tool_name, "ask"))


class PermissionGate:
    """Decides whether one tool invocation may run.

    `classify` is pure and deterministic. `evaluate` resolves `ask` through
    the caller's approval callback; no callback, a failing callback or a
    timed-out callback all deny.
    """

    def __init__(
        self,
        config: PermissionConfig | None = None,
        *,
        can_use_tool: ApprovalCallback | None = None,
        allowed_tools: set[str] | None = None,
        approval_timeout: float | None = 300.0,
    ):
        self.config = config or PermissionConfig()
        self.can_use_tool = can_use_tool
        self.allowed_tools = set(allowed_tools) if allowed_tools is not None else None
        self.approval_timeout = approval_timeout

    def classify(self, invocation: ToolInvocation, mode: PermissionMode, permission_key: str) -> PermissionDecision:
        name = invocation.name
        if self.allowed_tools is not None and name not in self.allowed_tools:
            return PermissionDecision.deny(f"Tool {name} is not in the allowed tools for this task.")

        mode = PermissionMode(mode)
        if mode is PermissionMode.BYPASS:
            return PermissionDecision.allow()

        ruled = self.config.match_rules(permission_key, name)
        if ruled == "deny":
            return PermissionDecision.deny(f"Tool {name} is denied by permission rules.")
        if ruled == "allow":
            return PermissionDecision.allow()

        if mode is PermissionMode.INTERACTIVE:
            return PermissionDecision.ask(f"Tool {name} requires approval.")

        decision = ruled or self.config.default_for(permission_key, name)
        if decision == "allow":
            return PermissionDecision.allow()
        if decision == "deny":
            return PermissionDecision.deny(f"Tool {name} ({permission_key}) is denied in {mode.value} mode.")
        return PermissionDecision.ask(f"Tool {name} ({permission_key}) requires approval.")

    async def evaluate(self, invocation: ToolInvocation, mode: PermissionMode, permission_key: str) -> PermissionDecision:
        decision = self.classify(invocation, mode, permission_key)
        if decision.behavior != "ask":
            return decision
        return await self._ask(invocation)

    async def _ask(self, invocation: ToolInvocation) -> PermissionDecision:
        name = invocation.name
        if self.can_use_tool is None:
            return PermissionDecision.deny(f"Tool {name} requires approval and no approver is available.")
        try:
            out = self.can_use_tool(name, dict(invocation.arguments))
            if inspect.isawaitable(out):
                out = await asyncio.wait_for(out, timeout=self.approval_timeout)
        except asyncio.TimeoutError:
            return PermissionDecision.deny(f"Approval for tool {name} timed out.")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return PermissionDecision.deny(f"Approval for tool {name} failed: {e}")
        if out is True:
            return PermissionDecision.allow()
        return PermissionDecision.deny(f"Tool {name} was denied by the user.")
