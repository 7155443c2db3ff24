from __future__ import annotations

import json
from typing import AsyncIterable, AsyncIterator, Iterable, Iterator

from .stream import StreamMessage

# Sent after the terminal message; never a valid message payload.
DONE_SENTINEL = b"data: [DONE]\n\n"


def encode_event(msg: StreamMessage) -> bytes:
    payload = json.dumps(msg.to_dict(), ensure_ascii=False, default=str)
    return f"event: {msg.type}\ndata: {payload}\n\n".encode("utf-8")


async def sse_events(stream: AsyncIterable[StreamMessage]) -> AsyncIterator[bytes]:
    """Frame a message stream for a persistent HTTP response."""
    async for msg in stream:
        yield encode_event(msg)
    yield DONE_SENTINEL


def decode_events(lines: Iterable[str]) -> Iterator[StreamMessage]:
    """Parse SSE lines back into messages; stops at the sentinel."""
    for raw in lines:
        line = raw.strip()
        if not line.startswith("data:"):
            continue
        data_str = line[len("data:"):].strip()
        if data_str == "[DONE]":
            return
        obj = json.loads(data_str)
        kind = obj.pop("type")
        sid = obj.pop("session_id", "")
        yield StreamMessage(kind, sid, obj)
