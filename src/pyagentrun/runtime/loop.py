from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from ..errors import (
    AgentRunError,
    BackendProtocolError,
    BackendUnavailable,
    InvalidArguments,
    PermissionDenied,
    StepLimitExceeded,
    UnknownTool,
)
from ..events.store import EventStore
from ..llm.base import Backend, BackendRequest
from ..session.models import AssistantTurn, SessionStatus, ToolInvocation, Turn
from ..session.store import SessionStore
from ..tools.base import ToolContext, ToolResult
from ..tools.permissions import PermissionDecision, PermissionGate
from ..tools.registry import ToolRegistry
from .options import TaskOptions, render_system_prompt

T = TypeVar("T")

Emit = Callable[[str, dict[str, Any]], Awaitable[None]]


class LoopState(str, Enum):
    IDLE = "idle"
    PLANNING = "planning"
    AWAITING_PERMISSION = "awaiting_permission"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in {LoopState.COMPLETED, LoopState.ERRORED, LoopState.CANCELLED}


@dataclass
class LoopOutcome:
    state: LoopState
    result: str = ""
    steps: int = 0
    error: AgentRunError | None = None


class _Cancelled(Exception):
    pass


def _truncate(res: ToolResult, limit: int) -> ToolResult:
    out = []
    changed = False
    for b in res.content:
        text = b.get("text")
        if b.get("type") == "text" and isinstance(text, str) and len(text) > limit:
            head = text[: limit // 2]
            tail = text[-limit // 2:]
            out.append({"type": "text", "text": head + "\n\n... (truncated) ...\n\n" + tail})
            changed = True
        else:
            out.append(b)
    return ToolResult(content=out, is_error=res.is_error) if changed else res


class ExecutionLoop:
    """Drives one task on one session.

    Idle -> Planning -> AwaitingPermission -> Executing -> Planning ... until
    the backend answers without tool calls (Completed), the backend fails or
    the step limit is hit (Errored), or `cancel_event` is set (Cancelled).

    Every wait (backend, approval, backoff) races against `cancel_event`, so
    cancellation needs no polling. Tool handlers already dispatched are left
    to finish and their results are dropped.
    """

    def __init__(
        self,
        *,
        session_id: str,
        backend: Backend,
        tools: ToolRegistry,
        store: SessionStore,
        gate: PermissionGate,
        options: TaskOptions,
        emit: Emit,
        cancel_event: asyncio.Event | None = None,
        events: EventStore | None = None,
        default_model: str = "",
    ):
        self.session_id = session_id
        self.backend = backend
        self.tools = tools
        self.store = store
        self.gate = gate
        self.options = options
        self.emit = emit
        self.cancel_event = cancel_event or asyncio.Event()
        self.events = events
        self.model = options.model or default_model
        self.system_prompt = render_system_prompt(options.system_prompt)
        self.state = LoopState.IDLE
        self._seq = 0

    # ---- helpers ---------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    async def _trace(self, event_type: str, data: dict[str, Any]) -> None:
        if self.events:
            await self.events.append(event_type, data)

    async def _until_cancelled(self, aw: Awaitable[T]) -> T:
        """Await `aw` unless cancellation arrives first."""
        task = asyncio.ensure_future(aw)
        if self.cancelled:
            task.cancel()
            raise _Cancelled()
        waiter = asyncio.ensure_future(self.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task not in done:
            task.cancel()
            raise _Cancelled()
        return task.result()

    async def _append(self, turn: Turn) -> None:
        await self.store.append(self.session_id, turn)

    # ---- planning --------------------------------------------------------

    async def _on_partial_text(self, chunk: str) -> None:
        await self.emit("assistant_text", {"text": chunk, "partial": True})

    async def _plan(self, step: int) -> AssistantTurn:
        session = await self.store.load(self.session_id)
        request = BackendRequest(
            model=self.model,
            system_prompt=self.system_prompt,
            turns=list(session.turns),
            tools=self.tools.list_specs(self.options.allowed_tools),
            step=step,
        )
        await self._trace("llm.request", {
            "step": step,
            "model": self.model,
            "turns_count": len(request.turns),
            "tools_count": len(request.tools),
        })
        on_text = self._on_partial_text if self.options.include_partial_messages else None
        retry = self.options.retry
        last_err: Exception | None = None
        for attempt in range(max(1, retry.max_attempts)):
            try:
                t0 = time.perf_counter()
                call = self.backend.complete(request, on_text)
                if self.options.backend_timeout is not None:
                    call = asyncio.wait_for(call, timeout=self.options.backend_timeout)
                turn = await self._until_cancelled(call)
            except BackendProtocolError as e:
                await self._trace("llm.error", {"step": step, "attempt": attempt + 1, "error": str(e)[:2000], "retry": False})
                raise
            except asyncio.TimeoutError:
                last_err = BackendUnavailable(f"Backend call timed out after {self.options.backend_timeout}s")
            except (_Cancelled, asyncio.CancelledError):
                raise
            except BackendUnavailable as e:
                last_err = e
            except Exception as e:
                last_err = BackendUnavailable(f"Backend call failed: {e}")
            else:
                await self._trace("llm.response", {
                    "step": step,
                    "elapsed_ms": int((time.perf_counter() - t0) * 1000),
                    "text": (turn.text or "")[:4000],
                    "tool_calls": [
                        {"id": tc.id, "name": tc.name, "arguments": tc.arguments}
                        for tc in turn.tool_calls
                    ],
                })
                return turn
            await self._trace("llm.error", {"step": step, "attempt": attempt + 1, "error": str(last_err)[:2000], "retry": True})
            if attempt + 1 < retry.max_attempts:
                await self._until_cancelled(asyncio.sleep(retry.delay(attempt)))
        raise BackendUnavailable(f"Backend call failed after {retry.max_attempts} attempts: {last_err}")

    # ---- tools -----------------------------------------------------------

    def _invocation(self, name: str, args: dict[str, Any], call_id: str) -> ToolInvocation:
        self._seq += 1
        if not call_id:
            call_id = f"tc_{self.session_id}_{self._seq}"
        return ToolInvocation(name=name, arguments=args, session_id=self.session_id, seq=self._seq, call_id=call_id)

    async def _decide(self, inv: ToolInvocation) -> PermissionDecision:
        tool = self.tools.get_optional(inv.name)
        if tool is None:
            # Unknown tools never reach the gate; _execute reports them.
            return PermissionDecision.allow()
        decision = await self._until_cancelled(
            self.gate.evaluate(inv, self.options.permission_mode, tool.spec.permission_key)
        )
        if not decision.allowed:
            await self._trace("tool.denied", {"seq": inv.seq, "tool": inv.name, "tool_call_id": inv.call_id, "code": PermissionDenied.code, "reason": decision.reason})
        return decision

    async def _execute(self, inv: ToolInvocation, decision: PermissionDecision) -> tuple[ToolResult, bool]:
        """Returns (result, denied)."""
        if not decision.allowed:
            denial = PermissionDenied(decision.reason or f"Tool {inv.name} was denied.")
            return ToolResult.text(f"Permission denied: {denial}"), True

        await self._trace("tool.call", {"seq": inv.seq, "tool": inv.name, "tool_call_id": inv.call_id, "args": inv.arguments})
        ctx = ToolContext(cwd=self.options.cwd, session_id=self.session_id)
        t0 = time.perf_counter()
        try:
            res = await self.tools.invoke(inv.name, inv.arguments, ctx, timeout=self.options.tool_timeout)
        except UnknownTool:
            res = ToolResult.text(f"Tool {inv.name} not found.", is_error=True)
        except InvalidArguments as e:
            res = ToolResult.text(str(e), is_error=True)
        res = _truncate(res, self.options.max_tool_result_chars)
        await self._trace("tool.result", {
            "seq": inv.seq,
            "tool": inv.name,
            "tool_call_id": inv.call_id,
            "is_error": res.is_error,
            "elapsed_ms": int((time.perf_counter() - t0) * 1000),
            "content_preview": res.as_text()[:4000],
        })
        return res, False

    async def _answer_interrupted_calls(self, turns: tuple[Turn, ...]) -> None:
        """Give every tool_call left without a result (by a cancelled or crashed
        run) an error result, so the history stays a valid call/result log."""
        answered = {t.call_id for t in turns if t.kind == "tool_result"}
        pending = [t for t in turns if t.kind == "tool_call" and t.call_id not in answered]
        if not pending:
            return
        await self._trace("resume.interrupted_tool_calls", {"count": len(pending), "tool_call_ids": [t.call_id for t in pending]})
        for t in pending:
            await self._append(Turn(
                kind="tool_result",
                call_id=t.call_id,
                tool_name=t.tool_name,
                content=({"type": "text", "text": f"Tool {t.tool_name} was interrupted before it returned a result."},),
                is_error=True,
                seq=t.seq,
            ))

    # ---- main loop -------------------------------------------------------

    async def run(self, prompt: str | None) -> LoopOutcome:
        final_text = ""
        step = 0
        try:
            session = await self.store.load(self.session_id)
            self._seq = session.last_seq()
            await self._answer_interrupted_calls(session.turns)
            if prompt is not None:
                await self._append(Turn.user(prompt))
            while True:
                if self.cancelled:
                    raise _Cancelled()
                if step >= self.options.step_limit:
                    raise StepLimitExceeded(f"Task did not finish within {self.options.step_limit} steps")
                step += 1

                self.state = LoopState.PLANNING
                turn = await self._plan(step)

                if turn.text:
                    final_text = turn.text
                    await self._append(Turn.assistant(turn.text))
                    await self.emit("assistant_text", {"text": turn.text})

                if not turn.tool_calls:
                    if turn.text:
                        return await self._finish(LoopState.COMPLETED, final_text, step)
                    await self._trace("llm.empty_response", {"step": step, "reason": "no text and no tool_calls"})
                    continue

                invocations = [self._invocation(tc.name, tc.arguments or {}, tc.id) for tc in turn.tool_calls]
                for inv in invocations:
                    await self._append(Turn(
                        kind="tool_call",
                        call_id=inv.call_id,
                        tool_name=inv.name,
                        arguments=inv.arguments,
                        seq=inv.seq,
                    ))
                    await self.emit("tool_call", {
                        "call_id": inv.call_id,
                        "seq": inv.seq,
                        "tool": inv.name,
                        "arguments": inv.arguments,
                    })

                self.state = LoopState.AWAITING_PERMISSION
                decisions = []
                for inv in invocations:
                    decisions.append(await self._decide(inv))
                if self.cancelled:
                    raise _Cancelled()

                self.state = LoopState.EXECUTING
                # Calls from one step run concurrently; gather keeps request order.
                results = await asyncio.gather(*(self._execute(inv, d) for inv, d in zip(invocations, decisions)))
                if self.cancelled:
                    raise _Cancelled()

                for inv, (res, denied) in zip(invocations, results):
                    await self._append(Turn(
                        kind="tool_result",
                        call_id=inv.call_id,
                        tool_name=inv.name,
                        content=tuple(res.content),
                        is_error=res.is_error,
                        seq=inv.seq,
                    ))
                    await self.emit("tool_result", {
                        "call_id": inv.call_id,
                        "seq": inv.seq,
                        "tool": inv.name,
                        "content": res.content,
                        "is_error": res.is_error,
                        "denied": denied,
                    })
        except _Cancelled:
            return await self._finish(LoopState.CANCELLED, final_text, step)
        except AgentRunError as e:
            return await self._finish(LoopState.ERRORED, final_text, step, e)
        except Exception as e:
            return await self._finish(LoopState.ERRORED, final_text, step, AgentRunError(f"Unexpected failure: {e}"))

    async def _finish(self, state: LoopState, text: str, steps: int, error: AgentRunError | None = None) -> LoopOutcome:
        self.state = state
        status = SessionStatus.ERRORED if state is LoopState.ERRORED else SessionStatus.COMPLETED
        await self.store.set_status(self.session_id, status)
        data: dict[str, Any] = {"state": state.value, "steps": steps}
        if error is not None:
            data["error"] = {"code": error.code, "detail": str(error)[:2000]}
        await self._trace("loop.terminal", data)
        return LoopOutcome(state=state, result=text, steps=steps, error=error)
