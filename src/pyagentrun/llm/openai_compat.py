from __future__ import annotations

import asyncio
import concurrent.futures
import json
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable

from ..errors import BackendProtocolError, BackendUnavailable
from ..session.models import AssistantTurn, ToolCall, Turn
from .base import BackendRequest, TextCallback, tool_specs_to_openai

# HTTP statuses worth retrying
TRANSIENT_STATUSES = {408, 409, 425, 429, 500, 502, 503, 504}

# seconds between checks of the stop flag while a chunk waits to be queued
STOP_POLL_INTERVAL = 0.1


def turns_to_openai_messages(system_prompt: str, turns: list[Turn]) -> list[dict[str, Any]]:
    """Rebuild chat-completions messages from the turn log.

    tool_call turns are folded into the assistant message that precedes them;
    tool_result turns become `tool` messages in log order.
    """
    messages: list[dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for t in turns:
        if t.kind == "user":
            messages.append({"role": "user", "content": t.text})
        elif t.kind == "assistant":
            messages.append({"role": "assistant", "content": t.text or None})
        elif t.kind == "tool_call":
            if not messages or messages[-1]["role"] != "assistant":
                messages.append({"role": "assistant", "content": None})
            messages[-1].setdefault("tool_calls", []).append({
                "id": t.call_id,
                "type": "function",
                "function": {
                    "name": t.tool_name,
                    "arguments": json.dumps(t.arguments or {}, ensure_ascii=False),
                },
            })
        elif t.kind == "tool_result":
            texts = []
            for b in t.content:
                if b.get("type") == "text":
                    texts.append(str(b.get("text", "")))
                else:
                    texts.append(json.dumps(b, ensure_ascii=False, default=str))
            messages.append({"role": "tool", "tool_call_id": t.call_id, "content": "\n".join(texts)})
    return messages


def _parse_arguments(arg_str: Any) -> dict[str, Any]:
    if isinstance(arg_str, dict):
        return arg_str
    try:
        args = json.loads(arg_str or "{}")
    except json.JSONDecodeError as e:
        raise BackendProtocolError(f"Tool call arguments are not valid JSON: {e}") from e
    if not isinstance(args, dict):
        raise BackendProtocolError("Tool call arguments must be a JSON object")
    return args


@dataclass
class OpenAICompatProvider:
    """
    Minimal OpenAI-compatible Chat Completions client.
    Works with OpenAI and many compatible gateways (OpenRouter, vLLM, LM Studio, etc.)
    The blocking HTTP call runs in a worker thread so other sessions keep going.
    """
    model: str
    base_url: str
    api_key: str
    provider_name: str = "openai"
    temperature: float = 0.2
    timeout: float = 120.0
    stream: bool = True

    async def complete(self, request: BackendRequest, on_text: TextCallback | None = None) -> AssistantTurn:
        messages = turns_to_openai_messages(request.system_prompt, request.turns)
        tools = tool_specs_to_openai(request.tools)
        model = request.model or self.model
        # Set once this call is cancelled or returns; the worker thread stops
        # forwarding chunks and stops reading the response.
        stop = threading.Event()

        on_token: Callable[[str], None] | None = None
        if on_text is not None:
            loop = asyncio.get_running_loop()

            def on_token(tok: str) -> None:
                if stop.is_set():
                    return
                # Wait until the chunk is queued, giving up once the caller is gone.
                fut = asyncio.run_coroutine_threadsafe(on_text(tok), loop)
                while True:
                    try:
                        fut.result(timeout=STOP_POLL_INTERVAL)
                        return
                    except concurrent.futures.TimeoutError:
                        if stop.is_set():
                            fut.cancel()
                            return

        try:
            return await asyncio.to_thread(
                self.chat,
                messages,
                tools,
                model=model,
                stream=self.stream and on_token is not None,
                on_token=on_token,
                stop=stop,
            )
        finally:
            stop.set()

    def _request(self, payload: dict[str, Any]) -> urllib.request.Request:
        if not self.api_key:
            raise BackendUnavailable("Missing API key. Set PYAGENTRUN_API_KEY or configure a provider.")
        url = self.base_url.rstrip("/") + "/chat/completions"
        data = json.dumps(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        return urllib.request.Request(url, data=data, headers=headers, method="POST")

    def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        model: str | None = None,
        stream: bool = False,
        on_token: Callable[[str], None] | None = None,
        stop: threading.Event | None = None,
    ) -> AssistantTurn:
        payload: dict[str, Any] = {
            "model": model or self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if stream:
            payload["stream"] = True
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        req = self._request(payload)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                if not stream:
                    raw = resp.read().decode("utf-8", errors="replace")
                    return self._parse_response(raw)
                return self._parse_stream(resp, on_token, stop)
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace") if hasattr(e, "read") else ""
            msg = f"Provider HTTPError {e.code}: {e.reason}\n{body}"
            if e.code in TRANSIENT_STATUSES:
                raise BackendUnavailable(msg) from e
            raise BackendProtocolError(msg) from e
        except urllib.error.URLError as e:
            raise BackendUnavailable(f"Provider URLError: {e}") from e
        except (TimeoutError, ConnectionError) as e:
            raise BackendUnavailable(f"Provider connection failed: {e}") from e

    @staticmethod
    def _parse_response(raw: str) -> AssistantTurn:
        try:
            obj = json.loads(raw)
            msg = obj["choices"][0]["message"]
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            raise BackendProtocolError(f"Unexpected provider response: {raw[:500]}") from e

        turn = AssistantTurn(
            text=msg.get("content") or "",
            reasoning_content=msg.get("reasoning_content"),
        )
        for tc in msg.get("tool_calls") or []:
            fn = tc.get("function") or {}
            name = fn.get("name")
            if not name:
                raise BackendProtocolError("Tool call without a function name")
            turn.tool_calls.append(ToolCall(id=str(tc.get("id") or ""), name=str(name), arguments=_parse_arguments(fn.get("arguments"))))
        return turn

    @staticmethod
    def _parse_stream(
        resp,
        on_token: Callable[[str], None] | None,
        stop: threading.Event | None = None,
    ) -> AssistantTurn:
        # OpenAI-compatible servers stream SSE lines of the form:
        #   data: {"choices":[{"delta":{...}}]}
        # ending with:
        #   data: [DONE]
        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        # tool_calls are streamed as deltas by index; accumulate into strings.
        tc_by_index: dict[int, dict[str, Any]] = {}

        for raw_line in resp:
            if stop is not None and stop.is_set():
                # abandoned by the caller; what was read so far is discarded
                return AssistantTurn(text="".join(text_parts))
            line = raw_line.decode("utf-8", errors="replace").strip()
            if not line.startswith("data:"):
                continue
            data_str = line[len("data:"):].strip()
            if data_str == "[DONE]":
                break
            try:
                ev = json.loads(data_str)
            except json.JSONDecodeError as e:
                raise BackendProtocolError(f"Malformed stream chunk: {data_str[:200]}") from e
            choices = ev.get("choices") or []
            if not choices:
                continue
            delta = choices[0].get("delta") or {}
            if delta.get("content"):
                chunk = str(delta["content"])
                text_parts.append(chunk)
                if on_token:
                    on_token(chunk)
            # Some providers stream reasoning separately.
            if delta.get("reasoning_content"):
                reasoning_parts.append(str(delta["reasoning_content"]))
            for tc in delta.get("tool_calls") or []:
                idx = int(tc.get("index", 0))
                cur = tc_by_index.setdefault(idx, {"id": "", "name": "", "arguments": ""})
                if tc.get("id"):
                    cur["id"] = tc.get("id")
                fn = tc.get("function") or {}
                if fn.get("name"):
                    cur["name"] = fn.get("name")
                if fn.get("arguments"):
                    cur["arguments"] += str(fn.get("arguments"))

        turn = AssistantTurn(
            text="".join(text_parts),
            reasoning_content="".join(reasoning_parts) if reasoning_parts else None,
        )
        for idx in sorted(tc_by_index.keys()):
            tc = tc_by_index[idx]
            if not tc["name"]:
                raise BackendProtocolError("Streamed tool call without a function name")
            turn.tool_calls.append(ToolCall(id=str(tc["id"]), name=str(tc["name"]), arguments=_parse_arguments(tc["arguments"])))
        return turn
