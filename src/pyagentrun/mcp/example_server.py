"""Tiny stdio tool server used for local testing of tool bundles.

Run with: python -m pyagentrun.mcp.example_server
"""
from __future__ import annotations

import json
import sys

SERVER_INFO = {"name": "example", "version": "0.2.0"}

TOOLS = [
    {
        "name": "echo",
        "description": "Echo back the provided text.",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
    {
        "name": "word_count",
        "description": "Count the words in a text.",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string"}},
            "required": ["text"],
        },
    },
]


def _reply(rid: int, result=None, error=None):
    msg = {"jsonrpc": "2.0", "id": rid}
    if error is not None:
        msg["error"] = {"message": str(error)}
    else:
        msg["result"] = result
    sys.stdout.write(json.dumps(msg, ensure_ascii=False) + "\n")
    sys.stdout.flush()


def _call(name: str, args: dict) -> dict:
    text = str(args.get("text", ""))
    if name == "echo":
        return {"content": [{"type": "text", "text": text}]}
    if name == "word_count":
        return {"content": [{"type": "text", "text": str(len(text.split()))}]}
    raise ValueError(f"Unknown tool: {name}")


def main():
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        try:
            req = json.loads(line)
            rid = int(req["id"])
        except (ValueError, KeyError, TypeError):
            continue
        method = req.get("method")
        params = req.get("params") or {}
        try:
            if method == "initialize":
                _reply(rid, {"serverInfo": SERVER_INFO})
            elif method == "tools/list":
                _reply(rid, {"tools": TOOLS})
            elif method == "tools/call":
                _reply(rid, _call(params.get("name"), params.get("arguments") or {}))
            else:
                _reply(rid, error=f"Unknown method: {method}")
        except Exception as e:
            _reply(rid, error=e)


if __name__ == "__main__":
    main()
