from __future__ import annotations

import asyncio
from typing import Any

from ..tools.base import ToolDescriptor, ToolResult, ToolSpec
from ..tools.registry import ToolRegistry
from .client import MCPClient
from .models import MCPServerConfig


def _handler(client: MCPClient, remote_name: str):
    async def call(args: dict[str, Any]) -> ToolResult:
        return await asyncio.to_thread(client.call_tool, remote_name, args)
    return call


def register_mcp_servers(registry: ToolRegistry, servers: list[MCPServerConfig]) -> list[MCPClient]:
    """Start each server and register its tools as bundle `<server name>`.

    Returns the started clients; the caller closes them.
    """
    clients: list[MCPClient] = []
    try:
        for s in servers:
            client = MCPClient(s.command, cwd=s.cwd, env=s.env, timeout=s.timeout)
            clients.append(client)
            version = client.server_version() or "0.0.0"
            descriptors = []
            for t in client.list_tools():
                spec = ToolSpec(
                    name=t.name,
                    description=f"[{s.name}] {t.description}".strip(),
                    parameters=t.input_schema or {"type": "object"},
                    permission_key="mcp",
                )
                descriptors.append(ToolDescriptor(spec=spec, handler=_handler(client, t.name)))
            registry.register(s.name, descriptors, version=version)
    except Exception:
        for c in clients:
            c.close()
        raise
    return clients
