"""Main CLI entry point for toolrun."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from toolrun import __version__
from toolrun.config.loader import find_config_file, load_config
from toolrun.config.models import OutputMode, PermissionMode, ToolrunConfig
from toolrun.core.context import ExecutionContext, ToolCallRequest, build_execution_context
from toolrun.core.queue import ChunkKind, ToolUseQueue
from toolrun.errors import CommandParseError, SchedulerError
from toolrun.output.events import EventSink
from toolrun.permissions.bridge import ConsolePermissionBridge, StaticPermissionBridge
from toolrun.permissions.engine import PermissionEngine
from toolrun.sandbox.builder import SANDBOX_UNAVAILABLE_MESSAGE, build_sandbox_command
from toolrun.sandbox.policy import build_sandbox_policy
from toolrun.shell.parser import split_command
from toolrun.tools.registry import default_registry

app = typer.Typer(
    name="toolrun",
    help="Permission-checked, sandboxed execution of agent tool calls",
    add_completion=False,
)

console = Console(stderr=True)


def configure_logging(level: str = "WARNING", log_file: Optional[str] = None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def version_callback(value: bool):
    if value:
        console.print(f"toolrun v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
):
    """toolrun - run agent tool calls behind permission checks and a sandbox."""
    pass


def _load(
    config_file: Optional[Path],
    workdir: Optional[Path],
    mode: Optional[PermissionMode] = None,
    json_mode: bool = False,
    verbose: bool = False,
) -> ToolrunConfig:
    overrides: dict[str, Any] = {}
    if workdir:
        overrides["paths.cwd"] = str(workdir)
    if mode:
        overrides["permissions.mode"] = mode
    if json_mode:
        overrides["output.mode"] = OutputMode.JSON
    if verbose:
        overrides["output.log_level"] = "DEBUG"

    try:
        config = load_config(config_file or find_config_file(workdir), overrides)
    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        raise typer.Exit(1)

    configure_logging(config.output.log_level, config.output.log_file)
    if not config.working_directory.is_dir():
        console.print(f"[red]Working directory does not exist: {config.working_directory}[/red]")
        raise typer.Exit(1)
    return config


@app.command("split")
def split(
    command: str = typer.Argument(..., help="Shell command to split"),
    json_mode: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show how a command is split into subcommands."""
    try:
        spans = split_command(command)
    except CommandParseError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)

    if json_mode:
        data = [
            {
                "text": s.text,
                "start": s.start,
                "end": s.end,
                "separator": s.separator,
                "command": s.command,
                "redirections": [r.operator + r.target for r in s.redirections],
            }
            for s in spans
        ]
        typer.echo(json.dumps(data, indent=2))
        return

    table = Table("#", "Subcommand", "Separator", "Redirections")
    for i, span in enumerate(spans):
        redirections = " ".join(r.operator + r.target for r in span.redirections)
        table.add_row(str(i), span.command or span.text.strip(), span.separator, redirections)
    Console().print(table)


@app.command("check")
def check(
    command: Optional[str] = typer.Argument(None, help="Shell command to check"),
    tool: str = typer.Option("shell_command", "--tool", "-t", help="Tool name"),
    tool_input: Optional[str] = typer.Option(None, "--input", "-i", help="Tool input as JSON"),
    mode: Optional[PermissionMode] = typer.Option(None, "--mode", "-m", help="Permission mode"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
    workdir: Optional[Path] = typer.Option(None, "--workdir", "-w", help="Working directory"),
):
    """Print the permission decision for one call without running it."""
    config = _load(config_file, workdir, mode)
    registry = default_registry()
    found = registry.get(tool)
    if found is None:
        console.print(f"[red]No such tool available: {tool}[/red]")
        raise typer.Exit(2)

    raw = _parse_input(tool_input, command)
    context = build_execution_context(config)
    try:
        params = found.parse_input(raw)
    except Exception as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)

    decision = PermissionEngine().evaluate(found, params, context, tool_input=raw)
    typer.echo(json.dumps(decision.to_dict(), indent=2))
    raise typer.Exit(0 if decision.is_allowed else 1)


@app.command("sandbox")
def sandbox(
    command: str = typer.Argument(..., help="Shell command to wrap"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
    workdir: Optional[Path] = typer.Option(None, "--workdir", "-w", help="Working directory"),
):
    """Print the bubblewrap argv that would run a command."""
    config = _load(config_file, workdir)
    context = build_execution_context(config)
    policy = build_sandbox_policy(context, {"command": command})
    if not policy.enabled:
        console.print(f"[red]{SANDBOX_UNAVAILABLE_MESSAGE}[/red]")
        raise typer.Exit(1)
    argv = build_sandbox_command(
        command, policy, context.cwd, context.shell_path, context.session.temp_dir, context.home_dir
    )
    typer.echo(json.dumps(argv, indent=2))


@app.command("run")
def run(
    commands: Optional[list[str]] = typer.Argument(None, help="Shell commands to run as one batch"),
    calls_file: Optional[Path] = typer.Option(
        None, "--calls", help="JSON file with a list of {\"tool\": ..., \"input\": {...}} calls"
    ),
    mode: Optional[PermissionMode] = typer.Option(None, "--mode", "-m", help="Permission mode"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
    workdir: Optional[Path] = typer.Option(None, "--workdir", "-w", help="Working directory"),
    json_mode: bool = typer.Option(False, "--json", help="Output events in JSONL format"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Approve every prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    dangerously_skip_permissions: bool = typer.Option(
        False,
        "--dangerously-skip-permissions",
        help="Run every call without checks (bypassPermissions mode)",
    ),
):
    """Run a batch of tool calls."""
    if dangerously_skip_permissions:
        mode = PermissionMode.BYPASS
    config = _load(config_file, workdir, mode, json_mode, verbose)

    try:
        requests = _build_requests(commands or [], calls_file)
    except (OSError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)
    if not requests:
        console.print("[yellow]Nothing to run[/yellow]")
        raise typer.Exit(2)

    json_output = config.output.mode == OutputMode.JSON
    bridge = StaticPermissionBridge(default=True) if yes else ConsolePermissionBridge(console)
    events = EventSink.stdout() if json_output else None
    context = build_execution_context(config)

    try:
        failed = asyncio.run(_run_batch(requests, config, context, bridge, events, json_output))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(130)
    except SchedulerError as e:
        if events is not None:
            events.emit_raw({"type": "error", "message": str(e)})
        if verbose:
            console.print_exception()
        else:
            console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    raise typer.Exit(1 if failed else 0)


async def _run_batch(
    requests: list[ToolCallRequest],
    config: ToolrunConfig,
    context: ExecutionContext,
    bridge,
    events: Optional[EventSink],
    json_output: bool,
) -> int:
    queue = ToolUseQueue(
        default_registry(),
        PermissionEngine(bridge),
        context,
        max_concurrency=config.scheduler.max_concurrency,
        channel_size=config.scheduler.channel_size,
        events=events,
    )
    out = Console()
    failed = 0
    async for chunk in queue.run(requests):
        if chunk.is_terminal and chunk.is_error:
            failed += 1
        if json_output:
            continue
        label = f"[dim]{chunk.request.tool_name}[/dim]"
        if chunk.kind == ChunkKind.PROGRESS:
            out.print(f"{label} ", end="")
            out.print(chunk.content, markup=False, highlight=False)
        elif chunk.kind == ChunkKind.RESULT:
            style = "red" if chunk.is_error else "green"
            out.print(f"[bold {style}]{chunk.request.tool_name}[/bold {style}]")
            out.print(chunk.content, markup=False, highlight=False)
        else:
            out.print(f"[bold red]{chunk.request.tool_name} {chunk.kind.value}:[/bold red] ", end="")
            out.print(chunk.content, markup=False, highlight=False)
    return failed


def _parse_input(tool_input: Optional[str], command: Optional[str]) -> dict[str, Any]:
    if tool_input:
        try:
            data = json.loads(tool_input)
        except json.JSONDecodeError as e:
            console.print(f"[red]Invalid JSON input: {e}[/red]")
            raise typer.Exit(2)
        if not isinstance(data, dict):
            console.print("[red]Tool input must be a JSON object[/red]")
            raise typer.Exit(2)
        return data
    if command is None:
        console.print("[red]Pass a command or --input[/red]")
        raise typer.Exit(2)
    return {"command": command}


def _build_requests(commands: list[str], calls_file: Optional[Path]) -> list[ToolCallRequest]:
    calls: list[tuple[str, dict[str, Any]]] = [("shell_command", {"command": c}) for c in commands]
    if calls_file is not None:
        data = json.loads(calls_file.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"{calls_file}: expected a JSON list of calls")
        for item in data:
            if not isinstance(item, dict) or "tool" not in item:
                raise ValueError(f"{calls_file}: every call needs a 'tool' key")
            calls.append((item["tool"], item.get("input") or {}))
    return [ToolCallRequest.create(name, tool_input, index=i) for i, (name, tool_input) in enumerate(calls)]


@app.command("config")
def show_config(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config file"),
):
    """Show current configuration."""
    path = config_file or find_config_file()
    if path:
        console.print(f"Loading config from: {path}")
        config = load_config(path)
    else:
        console.print("No config file found, using defaults")
        config = load_config()

    typer.echo(config.model_dump_json(indent=2))


if __name__ == "__main__":
    app()
