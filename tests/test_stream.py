from __future__ import annotations

import asyncio
from typing import Any

import pytest

from conftest import answer, calls, types
from pyagentrun.errors import AgentRunError, BackendProtocolError, BackendUnavailable, ConfigError
from pyagentrun.events.store import EventStore
from pyagentrun.runtime.loop import LoopState
from pyagentrun.runtime.options import SystemPromptPreset
from pyagentrun.runtime.stream import TaskStream
from pyagentrun.session.models import SessionStatus
from pyagentrun.session.store import InMemorySessionStore, JsonlSessionStore
from pyagentrun.tools.base import tool


@pytest.mark.asyncio
async def test_list_files_task(make_runtime, tmp_path, fast_retry):
    (tmp_path / "a.txt").write_text("a")
    (tmp_path / "b.txt").write_text("b")
    rt = make_runtime([calls(("Glob", {"pattern": "*"})), answer("There are two files: a.txt and b.txt.")])

    stream = rt.run_task("List the files here", allowed_tools={"Glob"}, permission_mode="bypass", retry=fast_retry)
    msgs = await stream.collect()

    assert types(msgs) == ["init", "tool_call", "tool_result", "assistant_text", "done"]
    assert all(m.session_id == stream.session_id for m in msgs)
    call, result = msgs[1].data, msgs[2].data
    assert call["tool"] == "Glob" and call["seq"] == 1
    assert result["call_id"] == call["call_id"]
    assert not result["is_error"] and not result["denied"]
    assert result["content"][0]["text"].splitlines() == ["a.txt", "b.txt"]
    assert msgs[-1].data == {"status": "completed", "result": "There are two files: a.txt and b.txt.", "steps": 2}

    # only the allowed tool is advertised
    assert [q for q, _ in rt.backend.requests[0].tools] == ["Glob"]
    # the second planning step sees the tool result
    kinds = [t.kind for t in rt.backend.requests[1].turns]
    assert kinds == ["user", "tool_call", "tool_result"]

    session = await rt.store.load(stream.session_id)
    assert [t.kind for t in session.turns] == ["user", "tool_call", "tool_result", "assistant"]
    assert session.status is SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_interactive_denial_is_reported_to_backend(make_runtime, fast_retry):
    rt = make_runtime([calls(("Write", {"path": "x.txt", "content": "x"})), answer("I could not write the file.")])
    msgs = await rt.run_task("Write x.txt", permission_mode="interactive", retry=fast_retry).collect()

    assert types(msgs) == ["init", "tool_call", "tool_result", "assistant_text", "done"]
    res = msgs[2].data
    assert res["denied"] is True
    assert res["is_error"] is False
    assert res["content"][0]["text"].startswith("Permission denied:")
    tool_result_turn = rt.backend.requests[1].turns[-1]
    assert tool_result_turn.kind == "tool_result"
    assert "Permission denied" in tool_result_turn.content[0]["text"]


@pytest.mark.asyncio
async def test_approval_callback_allows_edit_in_interactive_mode(make_runtime, tmp_path, fast_retry):
    asked: list[str] = []

    async def approve(name: str, args: dict[str, Any]) -> bool:
        asked.append(name)
        return True

    rt = make_runtime([calls(("Write", {"path": "x.txt", "content": "hi"})), answer("written")])
    msgs = await rt.run_task("Write x.txt", permission_mode="interactive", can_use_tool=approve, retry=fast_retry).collect()
    assert msgs[-1].type == "done"
    assert asked == ["Write"]
    assert (tmp_path / "x.txt").read_text() == "hi"


@pytest.mark.asyncio
async def test_step_limit(make_runtime, fast_retry):
    rt = make_runtime([calls(("Glob", {"pattern": "*"})), calls(("Glob", {"pattern": "*.py"}))])
    stream = rt.run_task("loop forever", permission_mode="bypass", step_limit=2, retry=fast_retry)
    msgs = await stream.collect()
    assert msgs[-1].type == "error"
    assert msgs[-1].data["code"] == "step_limit_exceeded"
    assert len(rt.backend.requests) == 2
    assert (await rt.store.load(stream.session_id)).status is SessionStatus.ERRORED


@pytest.mark.asyncio
async def test_backend_unavailable_is_retried_then_reported(make_runtime, fast_retry):
    rt = make_runtime([BackendUnavailable("connection refused on 10.0.0.1")] * 3)
    msgs = await rt.run_task("hello", retry=fast_retry).collect()
    assert types(msgs) == ["init", "error"]
    assert msgs[-1].data["code"] == "backend_unavailable"
    # detail stays out of the stream
    assert "10.0.0.1" not in msgs[-1].data["message"]
    assert len(rt.backend.requests) == 3


@pytest.mark.asyncio
async def test_transient_failure_recovers(make_runtime, fast_retry):
    rt = make_runtime([BackendUnavailable("blip"), ConnectionError("reset"), answer("hi")])
    msgs = await rt.run_task("hello", retry=fast_retry).collect()
    assert types(msgs) == ["init", "assistant_text", "done"]
    assert len(rt.backend.requests) == 3


@pytest.mark.asyncio
async def test_protocol_error_is_not_retried(make_runtime, fast_retry):
    rt = make_runtime([BackendProtocolError("tool arguments are not JSON")])
    msgs = await rt.run_task("hello", retry=fast_retry).collect()
    assert msgs[-1].data["code"] == "backend_protocol_error"
    assert len(rt.backend.requests) == 1


@pytest.mark.asyncio
async def test_results_keep_request_order_under_concurrency(make_runtime, sleepy_bundle, fast_retry):
    rt = make_runtime([
        calls(("mcp__timing__slow", {}), ("mcp__timing__medium", {}), ("mcp__timing__fast", {})),
        answer("all done"),
    ])
    msgs = await rt.run_task("time things", permission_mode="bypass", retry=fast_retry).collect()

    results = [m.data for m in msgs if m.type == "tool_result"]
    assert [r["tool"] for r in results] == ["mcp__timing__slow", "mcp__timing__medium", "mcp__timing__fast"]
    assert [r["seq"] for r in results] == [1, 2, 3]
    assert sleepy_bundle["finished"] == ["fast", "medium", "slow"]

    tool_calls = [m for m in msgs if m.type == "tool_call"]
    assert msgs.index(tool_calls[-1]) < msgs.index(next(m for m in msgs if m.type == "tool_result"))


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments_are_fed_back(make_runtime, fast_retry):
    rt = make_runtime([
        calls(("NoSuchTool", {}), ("Glob", {"wrong": 1})),
        answer("recovered"),
    ])
    msgs = await rt.run_task("do it", permission_mode="bypass", retry=fast_retry).collect()
    results = [m.data for m in msgs if m.type == "tool_result"]
    assert results[0]["is_error"] and "not found" in results[0]["content"][0]["text"]
    assert results[1]["is_error"] and "pattern" in results[1]["content"][0]["text"]
    assert msgs[-1].data["status"] == "completed"


@pytest.mark.asyncio
async def test_resume_appends_after_existing_turns(make_runtime, fast_retry):
    rt = make_runtime([
        calls(("Glob", {"pattern": "*"})), answer("first"),
        calls(("Glob", {"pattern": "*.md"})), answer("second"),
    ])
    first = rt.run_task("one", permission_mode="bypass", retry=fast_retry)
    await first.collect()
    before = (await rt.store.load(first.session_id)).turns

    second = rt.run_task("two", permission_mode="bypass", resume=first.session_id, retry=fast_retry)
    msgs = await second.collect()
    assert msgs[0].data["resumed"] is True
    assert second.session_id == first.session_id

    after = (await rt.store.load(first.session_id)).turns
    assert after[: len(before)] == before
    assert [t.text for t in after if t.kind == "user"] == ["one", "two"]
    assert next(m for m in msgs if m.type == "tool_call").data["seq"] == 2


@pytest.mark.asyncio
async def test_fork_leaves_parent_untouched(make_runtime, fast_retry):
    rt = make_runtime([answer("first"), answer("branch")])
    first = rt.run_task("one", retry=fast_retry)
    await first.collect()
    parent_turns = (await rt.store.load(first.session_id)).turns

    fork = rt.run_task("two", resume=first.session_id, fork_session=True, retry=fast_retry)
    msgs = await fork.collect()
    assert fork.session_id != first.session_id
    assert msgs[0].data == {"resumed": True, "parent_id": first.session_id}

    assert (await rt.store.load(first.session_id)).turns == parent_turns
    child = await rt.store.load(fork.session_id)
    assert [t.text for t in child.turns] == ["one", "first", "two", "branch"]


@pytest.mark.asyncio
async def test_missing_session_yields_single_error(make_runtime):
    rt = make_runtime([])
    msgs = await rt.run_task("hi", resume="missing").collect()
    assert types(msgs) == ["error"]
    assert msgs[0].data["code"] == "session_not_found"
    assert msgs[0].session_id == "missing"


def _blocking_bundle(registry, started: asyncio.Event, finished: list[str]):
    @tool("wait", "Blocks briefly", {"type": "object"}, permission_key="read")
    async def wait(args):
        started.set()
        await asyncio.sleep(0.05)
        finished.append("wait")
        return "waited"

    registry.register("block", [wait])


@pytest.mark.asyncio
async def test_cancel_during_tool_drops_result(make_runtime, registry, fast_retry):
    started = asyncio.Event()
    finished: list[str] = []
    _blocking_bundle(registry, started, finished)
    rt = make_runtime([calls(("mcp__block__wait", {})), answer("never reached")])

    stream = rt.run_task("block", permission_mode="bypass", retry=fast_retry)
    seen = []
    async for msg in stream:
        seen.append(msg)
        if msg.type == "tool_call":
            await started.wait()
            stream.cancel()
    assert types(seen) == ["init", "tool_call", "done"]
    assert seen[-1].data["status"] == "cancelled"
    # the dispatched handler was allowed to finish
    assert finished == ["wait"]

    session = await rt.store.load(stream.session_id)
    assert [t.kind for t in session.turns] == ["user", "tool_call"]
    assert len(rt.backend.requests) == 1


@pytest.mark.asyncio
async def test_aclose_stops_the_loop(make_runtime, registry, fast_retry):
    started = asyncio.Event()
    finished: list[str] = []
    _blocking_bundle(registry, started, finished)
    rt = make_runtime([calls(("mcp__block__wait", {})), answer("never reached")])

    async with rt.run_task("block", permission_mode="bypass", retry=fast_retry) as stream:
        assert (await stream.__anext__()).type == "init"
        await started.wait()
    assert stream.outcome.state is LoopState.CANCELLED
    session = await rt.store.load(stream.session_id)
    assert all(t.kind != "tool_result" for t in session.turns)

    # a later resume answers the interrupted call before planning
    rt.backend.script = [answer("resumed")]
    await rt.run_task(None, resume=stream.session_id, retry=fast_retry).collect()
    turns = (await rt.store.load(stream.session_id)).turns
    assert [t.kind for t in turns] == ["user", "tool_call", "tool_result", "assistant"]
    assert turns[2].is_error


@pytest.mark.asyncio
async def test_concurrent_use_of_one_session_is_rejected(make_runtime, registry, fast_retry):
    started = asyncio.Event()
    _blocking_bundle(registry, started, [])
    rt = make_runtime([calls(("mcp__block__wait", {})), answer("done")])
    session = await rt.store.create()

    first = rt.run_task("one", resume=session.id, permission_mode="bypass", retry=fast_retry)
    assert (await first.__anext__()).type == "init"
    await started.wait()

    second = await rt.run_task("two", resume=session.id, retry=fast_retry).collect()
    assert types(second) == ["error"]
    assert second[0].data["code"] == "session_busy"

    rest = await first.collect()
    assert rest[-1].type == "done"


@pytest.mark.asyncio
async def test_partial_messages(make_runtime, fast_retry):
    rt = make_runtime([answer("hello big world")])
    msgs = await rt.run_task("greet", include_partial_messages=True, retry=fast_retry).collect()
    texts = [m.data for m in msgs if m.type == "assistant_text"]
    assert [t["text"] for t in texts if t.get("partial")] == ["hello", "big", "world"]
    assert texts[-1] == {"text": "hello big world"}
    assert types(msgs)[0] == "init" and types(msgs)[-1] == "done"


@pytest.mark.asyncio
async def test_tiny_queue_still_delivers_everything(make_runtime, fast_retry, tmp_path):
    (tmp_path / "f.txt").write_text("x")
    rt = make_runtime([calls(("Glob", {"pattern": "*"}), ("Read", {"path": "f.txt"})), answer("ok")])
    msgs = await rt.run_task("go", permission_mode="bypass", queue_size=1, retry=fast_retry).collect()
    assert types(msgs).count("init") == 1
    assert sum(m.terminal for m in msgs) == 1
    assert types(msgs)[-1] == "done"


@pytest.mark.asyncio
async def test_loop_writes_a_trace(make_runtime, tmp_path, fast_retry):
    rt = make_runtime([calls(("Glob", {"pattern": "*"}), ("Bash", {"command": "ls"})), answer("ok")])
    stream = rt.run_task("trace me", retry=fast_retry)
    await stream.collect()

    events = list(EventStore.open(stream.session_id, tmp_path / ".events").iter_events())
    assert [e.n for e in events] == list(range(1, len(events) + 1))
    kinds = [e.type for e in events]
    assert kinds[0] == "llm.request" and kinds[-1] == "loop.terminal"
    assert {"llm.response", "tool.call", "tool.result", "tool.denied"} <= set(kinds)

    denied = list(EventStore.open(stream.session_id, tmp_path / ".events").iter_events("tool.denied"))
    assert [e.data["tool"] for e in denied] == ["Bash"]
    assert denied[0].data["code"] == "permission_denied"


@pytest.mark.asyncio
async def test_denied_call_next_to_allowed_call_still_completes(make_runtime, tmp_path, fast_retry):
    (tmp_path / "a.txt").write_text("a")
    rt = make_runtime([
        calls(("Glob", {"pattern": "*"}), ("Bash", {"command": "ls"})),
        answer("Found a.txt; shell access was not granted."),
    ])
    msgs = await rt.run_task("list files two ways", permission_mode="auto_accept_edits", retry=fast_retry).collect()

    assert types(msgs) == ["init", "tool_call", "tool_call", "tool_result", "tool_result", "assistant_text", "done"]
    results = [m.data for m in msgs if m.type == "tool_result"]
    assert [r["tool"] for r in results] == ["Glob", "Bash"]
    assert [r["denied"] for r in results] == [False, True]
    assert results[0]["content"][0]["text"] == "a.txt"
    assert results[1]["content"][0]["text"].startswith("Permission denied:")
    assert msgs[-1].data["status"] == "completed"
    assert (await rt.store.load(msgs[0].session_id)).status is SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_unknown_system_prompt_preset_is_rejected_before_starting(make_runtime):
    rt = make_runtime([answer("never reached")])
    with pytest.raises(ConfigError):
        rt.run_task("hello", system_prompt=SystemPromptPreset(preset="nope"))
    assert rt.backend.requests == []
    assert await rt.store.list() == []


@pytest.mark.asyncio
async def test_failure_while_building_the_loop_ends_the_stream():
    store = InMemorySessionStore()

    def broken_loop(session_id, emit, cancel_event):
        raise OSError("trace directory is not writable")

    stream = TaskStream("hi", resolve_session=store.create, make_loop=broken_loop, claim=store.claim, release=store.release)
    msgs = await asyncio.wait_for(stream.collect(), timeout=2)

    assert types(msgs) == ["init", "error"]
    assert msgs[-1].data == {"code": "internal_error", "message": AgentRunError.user_message}
    assert stream.outcome.state is LoopState.ERRORED
    # the claim was released
    store.claim(stream.session_id)


@pytest.mark.asyncio
async def test_unexpected_failure_marks_session_errored(make_runtime, tmp_path, fast_retry):
    class BrokenDisk(InMemorySessionStore):
        async def _on_appended(self, node, turn):
            if turn.kind == "tool_result":
                raise RuntimeError("disk full")

    rt = make_runtime([calls(("Glob", {"pattern": "*"})), answer("never reached")], store=BrokenDisk())
    stream = rt.run_task("go", permission_mode="bypass", retry=fast_retry)
    msgs = await asyncio.wait_for(stream.collect(), timeout=2)

    assert types(msgs) == ["init", "tool_call", "error"]
    assert msgs[-1].data["code"] == "internal_error"
    assert "disk full" not in msgs[-1].data["message"]
    assert stream.outcome.state is LoopState.ERRORED
    assert (await rt.store.load(stream.session_id)).status is SessionStatus.ERRORED

    terminal = list(EventStore.open(stream.session_id, tmp_path / ".events").iter_events("loop.terminal"))
    assert [e.data["state"] for e in terminal] == ["errored"]
    assert "disk full" in terminal[0].data["error"]["detail"]


@pytest.mark.asyncio
async def test_unwritable_trace_directory_errors_the_task(make_runtime, tmp_path, fast_retry):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    rt = make_runtime([answer("hi")])
    rt.events_dir = blocker

    stream = rt.run_task("go", retry=fast_retry)
    msgs = await asyncio.wait_for(stream.collect(), timeout=2)
    assert types(msgs) == ["init", "error"]
    assert (await rt.store.load(stream.session_id)).status is SessionStatus.ERRORED


@pytest.mark.asyncio
async def test_tool_content_json_cannot_express_is_persisted(make_runtime, registry, tmp_path, fast_retry):
    @tool("tags", "Returns a set", {"type": "object"}, permission_key="read")
    async def tags(args):
        return {"content": [{"type": "json", "data": {"tags": {"a", "b"}}}]}

    registry.register("odd", [tags])
    rt = make_runtime([calls(("mcp__odd__tags", {})), answer("tagged")], store=JsonlSessionStore(tmp_path / "sessions"))
    stream = rt.run_task("tag it", permission_mode="bypass", retry=fast_retry)
    msgs = await stream.collect()

    assert types(msgs)[-1] == "done"
    assert msgs[-1].data["status"] == "completed"
    reopened = await JsonlSessionStore(tmp_path / "sessions").load(stream.session_id)
    assert [t.kind for t in reopened.turns] == ["user", "tool_call", "tool_result", "assistant"]
    assert reopened.status is SessionStatus.COMPLETED
