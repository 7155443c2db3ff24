from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Literal

from ..errors import AgentRunError
from ..session.models import Session
from .loop import ExecutionLoop, LoopOutcome, LoopState

MessageType = Literal["init", "assistant_text", "tool_call", "tool_result", "error", "done"]

TERMINAL_TYPES = frozenset({"done", "error"})


@dataclass(frozen=True)
class StreamMessage:
    type: MessageType
    session_id: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "session_id": self.session_id, **self.data}


def error_message(session_id: str, err: AgentRunError) -> StreamMessage:
    # callers get a stable code and a safe message, never the raw detail
    return StreamMessage("error", session_id, {"code": err.code, "message": err.user_message})


# Resolves the session for a task (create / load / fork).
SessionResolver = Callable[[], Awaitable[Session]]
# Builds the execution loop once the session id is known.
LoopFactory = Callable[[str, Callable[[str, dict[str, Any]], Awaitable[None]], asyncio.Event], ExecutionLoop]


class TaskStream:
    """Ordered, consumable stream of StreamMessages for one task.

    The loop runs in its own task and hands messages over a bounded queue, so
    a slow consumer slows the loop down instead of growing a buffer. The first
    message is `init`, the last is exactly one `done` or `error`. Closing the
    stream (`aclose`, or leaving `async with`) sets the cancel event the loop
    waits on.
    """

    def __init__(
        self,
        prompt: str | None,
        *,
        resolve_session: SessionResolver,
        make_loop: LoopFactory,
        claim: Callable[[str], None] | None = None,
        release: Callable[[str], None] | None = None,
        queue_size: int = 64,
        requested_session_id: str | None = None,
    ):
        self._prompt = prompt
        self._resolve_session = resolve_session
        self._make_loop = make_loop
        self._claim = claim
        self._release = release
        self._queue: asyncio.Queue[StreamMessage] = asyncio.Queue(maxsize=queue_size)
        self._cancel = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._finished = False
        self.session_id: str | None = requested_session_id
        self.outcome: LoopOutcome | None = None

    # ---- producer --------------------------------------------------------

    async def _put(self, msg: StreamMessage) -> None:
        await self._queue.put(msg)

    async def _produce(self) -> None:
        try:
            session = await self._resolve_session()
        except AgentRunError as e:
            await self._put(error_message(self.session_id or "", e))
            return
        except Exception as e:
            await self._put(error_message(self.session_id or "", AgentRunError(f"Session setup failed: {e}")))
            return
        sid = session.id
        self.session_id = sid

        try:
            if self._claim:
                self._claim(sid)
        except AgentRunError as e:
            await self._put(error_message(sid, e))
            return

        try:
            await self._put(StreamMessage("init", sid, {"resumed": bool(session.turns), "parent_id": session.parent_id}))

            async def emit(kind: str, data: dict[str, Any]) -> None:
                await self._put(StreamMessage(kind, sid, data))  # type: ignore[arg-type]

            try:
                loop = self._make_loop(sid, emit, self._cancel)
                outcome = await loop.run(self._prompt)
            except AgentRunError as e:
                outcome = LoopOutcome(state=LoopState.ERRORED, error=e)
            except Exception as e:
                err = AgentRunError(f"Unexpected failure: {e}")
                outcome = LoopOutcome(state=LoopState.ERRORED, error=err)
            self.outcome = outcome

            if outcome.state is LoopState.ERRORED:
                await self._put(error_message(sid, outcome.error or AgentRunError("errored")))
            else:
                await self._put(StreamMessage("done", sid, {
                    "status": outcome.state.value,
                    "result": outcome.result,
                    "steps": outcome.steps,
                }))
        finally:
            if self._release:
                self._release(sid)

    def _start(self) -> None:
        if self._task is None:
            self._task = asyncio.ensure_future(self._produce())

    # ---- consumer --------------------------------------------------------

    def __aiter__(self) -> "TaskStream":
        return self

    async def __anext__(self) -> StreamMessage:
        if self._finished:
            raise StopAsyncIteration
        self._start()
        msg = await self._queue.get()
        if msg.terminal:
            self._finished = True
        return msg

    def cancel(self) -> None:
        """Ask the loop to stop; the stream still ends with its terminal message."""
        self._cancel.set()

    async def aclose(self) -> None:
        self._finished = True
        self._cancel.set()
        task = self._task
        if task is None:
            return
        # Drain so a producer blocked on a full queue can reach its end.
        while not task.done():
            getter = asyncio.ensure_future(self._queue.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
        await task

    async def __aenter__(self) -> "TaskStream":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def collect(self) -> list[StreamMessage]:
        return [m async for m in self]
