from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

import typer
from rich.align import Align
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .app_context import AgentRuntime
from .config.loader import load_behavior_config
from .config.settings import Settings
from .errors import AgentRunError
from .events.store import EventStore
from .runtime.sse import DONE_SENTINEL, encode_event
from .runtime.stream import StreamMessage
from .session.store import JsonlSessionStore
from .tools.builtin import register_builtin_tools
from .tools.permissions import PermissionMode
from .tools.registry import ToolRegistry

app = typer.Typer(add_completion=False, help="pyagentrun: autonomous tool-using task runner.")
console = Console()


def _resolve_cwd(cwd: Path | None) -> Path:
    cwd = Path(str(cwd or Path.cwd())).expanduser().resolve()
    if not cwd.is_dir():
        raise typer.BadParameter(f"--cwd must be an existing directory, got: {cwd}")
    return cwd


def _store(data_dir: Path | None) -> JsonlSessionStore:
    return JsonlSessionStore(data_dir / "sessions" if data_dir else None)


async def _approve(name: str, args: dict[str, Any]) -> bool:
    preview = json.dumps(args, ensure_ascii=False, indent=2)
    if len(preview) > 2000:
        preview = preview[:2000] + "\n... (truncated)"
    console.print(f"\n[yellow]Tool requires approval[/yellow]: [bold]{name}[/bold]\n{preview}")
    resp = await asyncio.to_thread(console.input, "Approve? [y/N] ")
    return resp.strip().lower() in {"y", "yes"}


def _render(msg: StreamMessage) -> None:
    d = msg.data
    if msg.type == "init":
        console.print(f"[dim]session {msg.session_id}[/dim]")
    elif msg.type == "assistant_text":
        if d.get("partial"):
            console.print(d.get("text", ""), end="")
        else:
            console.print(Panel(d.get("text", ""), title="assistant", border_style="magenta"))
    elif msg.type == "tool_call":
        args = json.dumps(d.get("arguments", {}), ensure_ascii=False)
        console.print(f"[cyan]→ {d.get('tool')}[/cyan] #{d.get('seq')} {args[:400]}")
    elif msg.type == "tool_result":
        text = "\n".join(str(b.get("text", b.get("data", ""))) for b in d.get("content", []))
        style = "yellow" if d.get("denied") else ("red" if d.get("is_error") else "green")
        console.print(Panel(text[:1200] + ("..." if len(text) > 1200 else ""), title=f"{d.get('tool')} #{d.get('seq')}", border_style=style))
    elif msg.type == "error":
        console.print(f"[bold red]error[/bold red] ({d.get('code')}): {d.get('message')}")
    elif msg.type == "done":
        console.print(f"[bold green]done[/bold green] status={d.get('status')} steps={d.get('steps')}")


async def _drive(runtime: AgentRuntime, prompt: str | None, sse: bool, **options: Any) -> int:
    exit_code = 0
    async with runtime.run_task(prompt, **options) as stream:
        async for msg in stream:
            if sse:
                sys.stdout.write(encode_event(msg).decode("utf-8"))
                sys.stdout.flush()
            else:
                _render(msg)
            if msg.type == "error":
                exit_code = 1
    if sse:
        sys.stdout.write(DONE_SENTINEL.decode("utf-8"))
    return exit_code


@app.command()
def run(
    prompt: str = typer.Option(None, "--prompt", "-p", help="Task to run. Omit with --resume to continue a session."),
    provider: str = typer.Option(None, "--provider", help="Provider name registered in YAML."),
    config: Path = typer.Option(Path("pyagentrun.yaml"), "--config", help="Provider YAML path."),
    cwd: Path = typer.Option(None, "--cwd", help="Working directory for tools. Defaults to current directory."),
    resume: str = typer.Option(None, "--resume", help="Session id to continue."),
    fork: bool = typer.Option(False, "--fork", help="Fork the resumed session instead of appending to it."),
    mode: PermissionMode = typer.Option(None, "--mode", help="Permission mode (default from behavior config)."),
    allow: list[str] = typer.Option(None, "--allow", help="Restrict tools to this set (repeatable)."),
    step_limit: int = typer.Option(None, "--step-limit", help="Max planning steps."),
    model: str = typer.Option(None, "--model", help="Override the backend model."),
    behavior_config: Path = typer.Option(None, "--behavior-config", help="Optional behavior JSON path."),
    data_dir: Path = typer.Option(None, "--data-dir", envvar="PYAGENTRUN_DATA_DIR", help="Where sessions and traces are stored."),
    sse: bool = typer.Option(False, "--sse", help="Print the raw event stream instead of rendering it."),
    partial: bool = typer.Option(False, "--partial", help="Stream partial assistant text."),
):
    """Run one task and print its stream."""
    if prompt is None and resume is None:
        raise typer.BadParameter("--prompt is required unless --resume is given")
    cwd = _resolve_cwd(cwd)
    try:
        settings = Settings.load(provider=provider, config_path=config, model=model, data_dir=data_dir)
        runtime = AgentRuntime.from_settings(settings, cwd=cwd, behavior_config=behavior_config)
    except AgentRunError as e:
        console.print(f"[bold red]{e.code}[/bold red]: {e}")
        raise typer.Exit(code=2)

    options: dict[str, Any] = {
        "resume": resume,
        "fork_session": fork,
        "include_partial_messages": partial,
    }
    if mode is not None:
        options["permission_mode"] = mode
    if allow:
        options["allowed_tools"] = set(allow)
    if step_limit is not None:
        options["step_limit"] = step_limit
    if (mode or runtime.behavior.permission_mode) is not PermissionMode.BYPASS:
        options["can_use_tool"] = _approve

    if not sse:
        table = Table.grid(padding=(0, 2))
        table.add_row("[bold green]cwd[/bold green]", f"[bright_cyan]{runtime.cwd}[/bright_cyan]")
        table.add_row("[bold green]model[/bold green]", f"[bright_cyan]{settings.model}[/bright_cyan]")
        table.add_row("[bold green]base_url[/bold green]", f"[bright_cyan]{settings.base_url}[/bright_cyan]")
        table.add_row("[bold green]mode[/bold green]", f"[bright_cyan]{(mode or runtime.behavior.permission_mode).value}[/bright_cyan]")
        table.add_row("[bold green]behavior_config[/bold green]", f"[bright_cyan]{runtime.behavior.loaded_from or '(none)'}[/bright_cyan]")
        table.add_row("[bold green]tools[/bold green]", f"[bright_cyan]{', '.join(runtime.tools.names())}[/bright_cyan]")
        console.print(Align.center(Panel(table, title="[bold magenta]pyagentrun[/bold magenta]", border_style="bright_blue")))

    try:
        code = asyncio.run(_drive(runtime, prompt, sse, **options))
    finally:
        runtime.close()
    raise typer.Exit(code=code)


@app.command()
def tools(
    cwd: Path = typer.Option(None, "--cwd", help="Project directory (for behavior config)."),
    behavior_config: Path = typer.Option(None, "--behavior-config", help="Optional behavior JSON path."),
):
    """List builtin tools and the bundles configured in behavior config."""
    cwd = _resolve_cwd(cwd)
    behavior = load_behavior_config(cwd=cwd, explicit_path=behavior_config)
    registry = ToolRegistry()
    register_builtin_tools(registry)
    table = Table(title="tools")
    table.add_column("name")
    table.add_column("bundle")
    table.add_column("permission")
    table.add_column("description")
    for qname, spec in registry.list_specs():
        table.add_row(qname, registry.bundle_of(qname), spec.permission_key, spec.description)
    console.print(table)
    for name in sorted(behavior.mcp_servers):
        console.print(f"- bundle [bold]{name}[/bold]: {' '.join(behavior.mcp_servers[name].command)}")


@app.command()
def sessions(
    data_dir: Path = typer.Option(None, "--data-dir", envvar="PYAGENTRUN_DATA_DIR", help="Where sessions are stored."),
):
    """List stored sessions."""
    found = asyncio.run(_store(data_dir).list())
    if not found:
        console.print("No sessions found.")
        raise typer.Exit(code=0)
    table = Table(title="sessions")
    table.add_column("id")
    table.add_column("status")
    table.add_column("turns", justify="right")
    table.add_column("parent")
    table.add_column("created")
    for s in found:
        created = datetime.fromtimestamp(s.created_at).strftime("%Y-%m-%d %H:%M:%S")
        table.add_row(s.id, s.status.value, str(len(s.turns)), s.parent_id or "", created)
    console.print(table)


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Session id."),
    data_dir: Path = typer.Option(None, "--data-dir", envvar="PYAGENTRUN_DATA_DIR", help="Where sessions are stored."),
):
    """Print a session's turns."""
    try:
        session = asyncio.run(_store(data_dir).load(session_id))
    except AgentRunError as e:
        console.print(f"[bold red]{e.code}[/bold red]: {e}")
        raise typer.Exit(code=1)
    for i, t in enumerate(session.turns):
        if t.kind in {"user", "assistant"}:
            body = t.text
        elif t.kind == "tool_call":
            body = f"{t.tool_name} {json.dumps(t.arguments or {}, ensure_ascii=False)}"
        else:
            body = "\n".join(str(b.get("text", b.get("data", ""))) for b in t.content)
        console.print(f"[bold]{i:>3} {t.kind}[/bold]" + (f" #{t.seq}" if t.seq is not None else ""))
        console.print(body[:2000])


@app.command()
def trace(
    session_id: str = typer.Argument(..., help="Session id."),
    data_dir: Path = typer.Option(None, "--data-dir", envvar="PYAGENTRUN_DATA_DIR", help="Where traces are stored."),
    event_type: list[str] = typer.Option(None, "--type", "-t", help="Only show these event types (repeatable)."),
):
    """Print the loop trace recorded for a session."""
    events = EventStore.open(session_id, data_dir / "events" if data_dir else None)
    table = Table(title=f"trace {session_id}")
    table.add_column("#", justify="right")
    table.add_column("time")
    table.add_column("event")
    table.add_column("data")
    for ev in events.iter_events(*(event_type or [])):
        when = datetime.fromtimestamp(ev.ts).strftime("%H:%M:%S")
        table.add_row(str(ev.n), when, ev.type, json.dumps(ev.data, ensure_ascii=False, default=str)[:300])
    if not table.row_count:
        console.print("No trace events found.")
        raise typer.Exit(code=0)
    console.print(table)


if __name__ == "__main__":
    app()
