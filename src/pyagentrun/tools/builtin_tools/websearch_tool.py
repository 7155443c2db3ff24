from __future__ import annotations

import asyncio
import json
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from ..base import ToolContext, ToolResult, ToolSpec


@dataclass
class WebSearchTool:
    """Query a Tavily-compatible search endpoint.

    Registered only when a search credential is configured.
    """

    api_key: str
    url: str = "https://api.tavily.com/search"
    timeout: float = 20.0
    spec: ToolSpec = field(default=ToolSpec(
        name="WebSearch",
        description="Search the web and return the top results (title, url, snippet).",
        permission_key="read",
        parameters={
            "type": "object",
            "properties": {
                "query": {"type": "string", "minLength": 1, "description": "Search query."},
                "max_results": {"type": "integer", "minimum": 1, "maximum": 20, "default": 5},
            },
            "required": ["query"],
            "additionalProperties": False,
        },
    ))

    async def execute(self, ctx: ToolContext, args: dict[str, Any]) -> ToolResult:
        return await asyncio.to_thread(self._run, args)

    def _run(self, args: dict[str, Any]) -> ToolResult:
        payload = {
            "api_key": self.api_key,
            "query": args["query"],
            "max_results": int(args.get("max_results", 5)),
        }
        req = urllib.request.Request(
            self.url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json", "User-Agent": "pyagentrun/0.1"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                obj = json.loads(resp.read().decode("utf-8", errors="replace"))
        except (urllib.error.URLError, TimeoutError, ValueError) as e:
            return ToolResult.text(f"websearch failed: {e}", is_error=True)

        results = obj.get("results") if isinstance(obj, dict) else None
        if not isinstance(results, list) or not results:
            return ToolResult.text("(no results)")
        lines = []
        for i, r in enumerate(results, start=1):
            if not isinstance(r, dict):
                continue
            lines.append(f"{i}. {r.get('title', '')}\n   {r.get('url', '')}\n   {str(r.get('content', ''))[:500]}")
        return ToolResult.text("\n".join(lines))
