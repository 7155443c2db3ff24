from __future__ import annotations

import itertools
import json
import os
import subprocess
import threading
from dataclasses import dataclass
from typing import Any

from ..errors import ToolHandlerFailure
from ..tools.base import ToolResult


@dataclass
class MCPToolInfo:
    name: str
    description: str
    input_schema: dict[str, Any]


class MCPClient:
    """A minimal JSON-RPC client for MCP-like servers over stdio.

    Expected methods:
      - initialize -> { serverInfo: {name, version} } (optional)
      - tools/list -> { tools: [{name, description, inputSchema}] }
      - tools/call -> { content: [{type, text|data}], isError? }

    Calls block; the bridge runs them in worker threads.
    """

    def __init__(self, command: list[str], *, cwd: str | None = None, env: dict[str, str] | None = None, timeout: float = 30.0):
        try:
            self._proc = subprocess.Popen(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                text=True,
                bufsize=1,
                cwd=cwd,
                env={**os.environ, **env} if env else None,
            )
        except OSError as e:
            raise ToolHandlerFailure(f"Failed to start tool server {command!r}: {e}") from e
        if self._proc.stdin is None or self._proc.stdout is None:
            raise ToolHandlerFailure("Failed to start tool server process with pipes.")
        self.timeout = timeout
        self._stdin = self._proc.stdin
        self._stdout = self._proc.stdout
        self._id_iter = itertools.count(1)
        self._lock = threading.Lock()
        self._pending: dict[int, tuple[threading.Event, dict[str, Any]]] = {}
        self._reader = threading.Thread(target=self._read_loop, daemon=True)
        self._reader.start()

    def close(self) -> None:
        if self._proc.poll() is None:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._proc.kill()

    def _read_loop(self) -> None:
        for line in self._stdout:
            line = line.strip()
            if not line:
                continue
            try:
                msg = json.loads(line)
                mid = int(msg["id"])
            except (ValueError, KeyError, TypeError):
                continue
            with self._lock:
                if mid in self._pending:
                    ev, holder = self._pending[mid]
                    holder["msg"] = msg
                    ev.set()

    def request(self, method: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> Any:
        rid = next(self._id_iter)
        req = {"jsonrpc": "2.0", "id": rid, "method": method, "params": params or {}}
        ev = threading.Event()
        holder: dict[str, Any] = {}
        with self._lock:
            self._pending[rid] = (ev, holder)
            try:
                self._stdin.write(json.dumps(req, ensure_ascii=False) + "\n")
                self._stdin.flush()
            except OSError as e:
                self._pending.pop(rid, None)
                raise ToolHandlerFailure(f"Tool server pipe closed: {e}") from e
        ok = ev.wait(timeout or self.timeout)
        with self._lock:
            self._pending.pop(rid, None)
        if not ok:
            raise ToolHandlerFailure(f"Tool server request timeout: {method}")
        msg = holder.get("msg", {})
        if "error" in msg:
            err = msg["error"]
            raise ToolHandlerFailure(str(err.get("message") if isinstance(err, dict) else err))
        return msg.get("result")

    def server_version(self) -> str | None:
        try:
            res = self.request("initialize", {"clientInfo": {"name": "pyagentrun"}})
        except ToolHandlerFailure:
            return None
        info = res.get("serverInfo") if isinstance(res, dict) else None
        if isinstance(info, dict) and info.get("version"):
            return str(info["version"])
        return None

    def list_tools(self) -> list[MCPToolInfo]:
        res = self.request("tools/list", {})
        arr = res.get("tools", []) if isinstance(res, dict) else res
        tools = []
        if isinstance(arr, list):
            for t in arr:
                if not isinstance(t, dict):
                    continue
                name = t.get("name")
                desc = t.get("description", "")
                schema = t.get("inputSchema") or t.get("input_schema") or t.get("parameters") or {}
                if isinstance(name, str):
                    tools.append(MCPToolInfo(name=name, description=str(desc), input_schema=schema if isinstance(schema, dict) else {}))
        return tools

    def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        res = self.request("tools/call", {"name": name, "arguments": arguments or {}})
        if isinstance(res, dict) and "isError" in res:
            res = {**res, "is_error": bool(res.get("isError"))}
        return ToolResult.coerce(res)
