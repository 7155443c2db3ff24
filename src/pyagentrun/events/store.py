from __future__ import annotations

import asyncio
import json
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterator

from platformdirs import user_data_dir

APP_NAME = "pyagentrun"


def default_trace_dir() -> Path:
    return Path(user_data_dir(APP_NAME)) / "events"


@dataclass
class TraceEvent:
    n: int            # position in this session's trace, counted across runs
    ts: float
    session_id: str
    type: str         # llm.request, tool.call, loop.terminal, ...
    data: dict[str, Any]


class EventStore:
    """Append-only jsonl trace of what one session's loop did.

    One file per session; a resumed session keeps appending to the same file.
    Lines that fail to parse (an interrupted write) are skipped on read.
    Writes run in a worker thread, one at a time per store.
    """

    def __init__(self, session_id: str, path: Path):
        self.session_id = session_id
        self.path = path
        self._n: int | None = None   # counted from the file on the first write
        self._lock = asyncio.Lock()

    @staticmethod
    def open(session_id: str, directory: Path | None = None) -> "EventStore":
        d = Path(directory) if directory else default_trace_dir()
        return EventStore(session_id, d / f"{session_id}.jsonl")

    async def append(self, event_type: str, data: dict[str, Any]) -> TraceEvent:
        async with self._lock:
            return await asyncio.to_thread(self._write, event_type, data)

    def _write(self, event_type: str, data: dict[str, Any]) -> TraceEvent:
        if self._n is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._n = sum(1 for _ in self._records())
        self._n += 1
        ev = TraceEvent(n=self._n, ts=time.time(), session_id=self.session_id, type=event_type, data=data)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(asdict(ev), ensure_ascii=False, default=str) + "\n")
        return ev

    def _records(self) -> Iterator[dict[str, Any]]:
        if not self.path.exists():
            return
        for line in self.path.read_text(encoding="utf-8", errors="replace").splitlines():
            if not line.strip():
                continue
            try:
                obj = json.loads(line)
            except ValueError:
                continue
            if isinstance(obj, dict):
                yield obj

    def iter_events(self, *types: str) -> Iterator[TraceEvent]:
        """Events in write order, optionally only those of the given types."""
        for obj in self._records():
            try:
                ev = TraceEvent(
                    n=int(obj.get("n", 0)),
                    ts=float(obj.get("ts", 0.0)),
                    session_id=str(obj.get("session_id") or self.session_id),
                    type=str(obj["type"]),
                    data=obj.get("data") or {},
                )
            except (KeyError, ValueError, TypeError):
                continue
            if not types or ev.type in types:
                yield ev
