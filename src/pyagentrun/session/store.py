from __future__ import annotations

import asyncio
import json
import os
import re
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from platformdirs import user_data_dir

from ..errors import SessionBusy, SessionNotFound
from .models import Session, SessionStatus, Turn

APP_NAME = "pyagentrun"


def _sessions_dir() -> Path:
    root = Path(user_data_dir(APP_NAME))
    d = root / "sessions"
    d.mkdir(parents=True, exist_ok=True)
    return d


SESSION_ID_RE = re.compile(r"[0-9a-f]{12}")


def new_session_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(eq=False)
class _Node:
    id: str
    parent: Optional["_Node"]
    fork_point: int             # number of ancestor turns visible to this session
    created_at: float
    status: SessionStatus = SessionStatus.ACTIVE
    own: list[int] = field(default_factory=list)   # indices into the store's turn log
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    claimed: bool = False

    def length(self) -> int:
        return self.fork_point + len(self.own)


class SessionStore:
    """Sessions as indices into one append-only turn log.

    A session's turns are its parent's first `fork_point` turns followed by its
    own. Forking records the parent and its current length; nothing is copied.
    Appends to one session are serialized by a per-session lock; different
    sessions never wait on each other.
    """

    def __init__(self) -> None:
        self._log: list[Turn] = []
        self._nodes: dict[str, _Node] = {}

    # ---- internals -------------------------------------------------------

    async def _find(self, session_id: str) -> _Node | None:
        return self._nodes.get(session_id)

    async def _resolve(self, session_id: str) -> _Node:
        node = await self._find(session_id)
        if node is None:
            raise SessionNotFound(f"Session not found: {session_id}")
        return node

    def _node(self, session_id: str) -> _Node:
        # loaded sessions only; claim/release run after the session was resolved
        node = self._nodes.get(session_id)
        if node is None:
            raise SessionNotFound(f"Session not found: {session_id}")
        return node

    def _turns(self, node: _Node, upto: int | None = None) -> list[Turn]:
        n = node.length() if upto is None else upto
        if node.parent is None:
            out: list[Turn] = []
        else:
            out = self._turns(node.parent, min(node.fork_point, n))
        remaining = n - node.fork_point
        if remaining > 0:
            out.extend(self._log[i] for i in node.own[:remaining])
        return out

    def _view(self, node: _Node) -> Session:
        return Session(
            id=node.id,
            turns=tuple(self._turns(node)),
            parent_id=node.parent.id if node.parent else None,
            fork_point=node.fork_point if node.parent else None,
            created_at=node.created_at,
            status=node.status,
        )

    def _new_node(self, parent: _Node | None, fork_point: int) -> _Node:
        sid = new_session_id()
        while sid in self._nodes:
            sid = new_session_id()
        node = _Node(id=sid, parent=parent, fork_point=fork_point, created_at=time.time())
        self._nodes[sid] = node
        return node

    # persistence hooks, no-ops in memory; called with the session's lock held
    async def _on_created(self, node: _Node) -> None:
        pass

    async def _on_appended(self, node: _Node, turn: Turn) -> None:
        pass

    async def _on_status(self, node: _Node) -> None:
        pass

    # ---- public API ------------------------------------------------------

    async def create(self) -> Session:
        node = self._new_node(None, 0)
        async with node.lock:
            await self._on_created(node)
        return self._view(node)

    async def load(self, session_id: str) -> Session:
        return self._view(await self._resolve(session_id))

    async def exists(self, session_id: str) -> bool:
        return await self._find(session_id) is not None

    async def append(self, session_id: str, turn: Turn) -> int:
        """Append one turn; returns its index within the session."""
        node = await self._resolve(session_id)
        async with node.lock:
            await self._on_appended(node, turn)
            self._log.append(turn)
            node.own.append(len(self._log) - 1)
            return node.length() - 1

    async def fork(self, session_id: str) -> Session:
        parent = await self._resolve(session_id)
        async with parent.lock:
            point = parent.length()
        node = self._new_node(parent, point)
        async with node.lock:
            await self._on_created(node)
        return self._view(node)

    async def set_status(self, session_id: str, status: SessionStatus) -> None:
        node = await self._resolve(session_id)
        async with node.lock:
            node.status = status
            await self._on_status(node)

    async def close(self, session_id: str) -> None:
        await self.set_status(session_id, SessionStatus.COMPLETED)

    def claim(self, session_id: str) -> None:
        """Mark a session as driven by one execution loop."""
        node = self._node(session_id)
        if node.claimed:
            raise SessionBusy(f"Session {session_id} is already running a task")
        node.claimed = True
        node.status = SessionStatus.ACTIVE

    def release(self, session_id: str) -> None:
        node = self._nodes.get(session_id)
        if node is not None:
            node.claimed = False

    async def list(self) -> list[Session]:
        return [self._view(n) for n in sorted(self._nodes.values(), key=lambda n: n.created_at)]


class InMemorySessionStore(SessionStore):
    pass


class JsonlSessionStore(SessionStore):
    """Session store persisted as one jsonl file per session.

    Line types: `session` (header: parent id + fork point), `turn`, `status`.
    A fork's file holds only its header and its own turns. File reads and
    writes run in worker threads.
    """

    def __init__(self, directory: Path | None = None) -> None:
        super().__init__()
        self.directory = Path(directory) if directory else _sessions_dir()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        if not SESSION_ID_RE.fullmatch(session_id):
            raise SessionNotFound(f"Session not found: {session_id}")
        return self.directory / f"{session_id}.jsonl"

    def _write(self, session_id: str, obj: dict[str, Any]) -> None:
        # append + flush + fsync so a crashed run leaves complete lines behind
        line = json.dumps(obj, ensure_ascii=False, default=str) + "\n"
        with self._path(session_id).open("a", encoding="utf-8") as f:
            f.write(line)
            f.flush()
            try:
                os.fsync(f.fileno())
            except OSError:
                pass

    async def _on_created(self, node: _Node) -> None:
        await asyncio.to_thread(self._write, node.id, {
            "type": "session",
            "id": node.id,
            "parent_id": node.parent.id if node.parent else None,
            "fork_point": node.fork_point,
            "created_at": node.created_at,
        })

    async def _on_appended(self, node: _Node, turn: Turn) -> None:
        await asyncio.to_thread(self._write, node.id, {"type": "turn", "turn": turn.to_dict()})

    async def _on_status(self, node: _Node) -> None:
        await asyncio.to_thread(self._write, node.id, {"type": "status", "status": node.status.value})

    async def _find(self, session_id: str) -> _Node | None:
        node = self._nodes.get(session_id)
        if node is not None or not SESSION_ID_RE.fullmatch(session_id):
            return node
        return await self._load_from_disk(session_id, set())

    def _read(self, session_id: str) -> tuple[dict[str, Any], list[Turn], SessionStatus] | None:
        path = self._path(session_id)
        if not path.exists():
            return None
        header: dict[str, Any] | None = None
        turns: list[Turn] = []
        status = SessionStatus.ACTIVE
        for line in path.read_text(encoding="utf-8", errors="replace").splitlines():
            if not line.strip():
                continue
            try:
                obj = json.loads(line)
                kind = obj.get("type")
                if kind == "session" and header is None:
                    header = obj
                elif kind == "turn":
                    turns.append(Turn.from_dict(obj["turn"]))
                elif kind == "status":
                    status = SessionStatus(obj["status"])
            except (ValueError, KeyError, TypeError, AttributeError):
                # Ignore corrupted/partial lines left by an interrupted write.
                continue
        if header is None:
            return None
        return header, turns, status

    async def _load_from_disk(self, session_id: str, visiting: set[str]) -> _Node | None:
        if session_id in visiting:
            return None
        visiting.add(session_id)
        record = await asyncio.to_thread(self._read, session_id)
        if record is None:
            return None
        header, turns, status = record

        parent: _Node | None = None
        fork_point = 0
        parent_id = header.get("parent_id")
        if parent_id:
            if not isinstance(parent_id, str) or not SESSION_ID_RE.fullmatch(parent_id):
                return None
            parent = self._nodes.get(parent_id) or await self._load_from_disk(parent_id, visiting)
            if parent is None:
                return None
            fork_point = min(int(header.get("fork_point") or 0), parent.length())

        # a concurrent lookup may have finished first
        if session_id in self._nodes:
            return self._nodes[session_id]
        node = _Node(
            id=session_id,
            parent=parent,
            fork_point=fork_point,
            created_at=float(header.get("created_at") or 0.0),
            status=status,
        )
        for t in turns:
            self._log.append(t)
            node.own.append(len(self._log) - 1)
        self._nodes[session_id] = node
        return node

    def _new_node(self, parent: _Node | None, fork_point: int) -> _Node:
        sid = new_session_id()
        while sid in self._nodes or self._path(sid).exists():
            sid = new_session_id()
        node = _Node(id=sid, parent=parent, fork_point=fork_point, created_at=time.time())
        self._nodes[sid] = node
        return node

    async def list(self) -> list[Session]:
        paths = await asyncio.to_thread(lambda: sorted(self.directory.glob("*.jsonl")))
        for p in paths:
            await self._find(p.stem)
        return await super().list()
