"""plughost CLI — Typer entry point with Rich formatting."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from plughost.config import HostOptions, load_options
from plughost.errors import DeactivationError
from plughost.faults import FaultEvent
from plughost.host import HostEmulator
from plughost.journal import read_faults
from plughost.logs import PLUGIN_LOGGER, LogBuffer, LogEntry, configure_logging
from plughost.plugins.base import describe_capabilities
from plughost.redaction import redact_mapping

app = typer.Typer(
    name="plughost",
    help="plughost — run an IDE plugin in a plain Python process.",
    no_args_is_help=True,
)
console = Console()

_DEFAULT_OPTIONS = Path("plughost.yaml")

OptionsOption = Annotated[
    Path,
    typer.Option("--options", "-o", help="Path to plughost.yaml"),
]
PluginArgument = Annotated[
    Path | None,
    typer.Argument(help="Plugin file or package directory (overrides plugin_path)"),
]
WaitOption = Annotated[
    float,
    typer.Option("--wait", help="Seconds to wait for the render surface"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Log host activity to stderr"),
]


def _resolve_options(options_path: Path, plugin: Path | None) -> HostOptions:
    """Load options from *options_path*, or build them from *plugin* alone."""
    override = str(plugin) if plugin is not None else None
    try:
        if options_path.exists() or override is None:
            return load_options(options_path, plugin_path=override)
        return HostOptions(plugin_path=override)
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1) from exc


def _setup_logging(verbose: bool) -> LogBuffer:
    # INFO keeps plugin output in the buffer while the console stays quiet.
    return configure_logging(logging.DEBUG if verbose else logging.INFO, console=verbose)


def _status(enabled: bool) -> str:
    return "[green]yes[/green]" if enabled else "[dim]no[/dim]"


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


async def _wait_until_ready(host: HostEmulator, timeout: float) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not host.is_render_surface_ready() and loop.time() < deadline:
        await asyncio.sleep(0.01)
    return host.is_render_surface_ready()


async def _close(host: HostEmulator) -> None:
    try:
        await host.deactivate()
    except DeactivationError as exc:
        console.print(f"[red]{exc}[/red]")


async def _activation_session(options: HostOptions, wait: float) -> list[FaultEvent]:
    host = HostEmulator(options)
    events: list[FaultEvent] = []
    host.on("fault", events.append)

    api = await host.activate()
    if host.is_activated:
        await _wait_until_ready(host, wait)
        await host.drain()
        _print_summary(host, api.get_state())
    await _close(host)
    return events


async def _send_session(
    options: HostOptions, messages: list[dict[str, Any]], wait: float
) -> tuple[list[dict[str, Any]], list[FaultEvent]]:
    host = HostEmulator(options)
    outbound: list[dict[str, Any]] = []
    events: list[FaultEvent] = []
    host.on("message", outbound.append)
    host.on("fault", events.append)

    await host.activate()
    if host.is_activated:
        if not await _wait_until_ready(host, wait):
            console.print("[yellow]Render surface not ready; messages stay queued.[/yellow]")
        for message in messages:
            await host.send_inbound_message(message)
        await host.drain()
    await _close(host)
    return outbound, events


def _print_summary(host: HostEmulator, state: dict[str, Any] | None) -> None:
    table = Table(title="Plugin Capabilities")
    table.add_column("Capability", style="cyan")
    table.add_column("Provided")

    for name, provided in describe_capabilities(host.plugin_api).items():
        table.add_row(name, _status(provided))
    console.print(table)

    if state is not None:
        lines = [
            f"Mode: {state.get('mode')}",
            f"Cwd: {state.get('cwd')}",
            f"Messages: {len(state.get('chat_messages') or [])}",
            f"Render surface ready: {host.is_render_surface_ready()}",
        ]
        console.print(Panel("\n".join(lines), title="State", border_style="green"))


def _print_plugin_output(buffer: LogBuffer) -> None:
    entries = buffer.get_logs(source=PLUGIN_LOGGER)
    if entries:
        table = Table(title="Plugin Output")
        table.add_column("Level", style="cyan", width=7)
        table.add_column("Message")
        for entry in reversed(entries):
            table.add_row(entry.level, escape(entry.message), style="red" if entry.level == "error" else "")
        console.print(table)

    totals = buffer.counts()
    if totals["error"] or totals["warning"]:
        console.print(
            f"[yellow]Host log: {totals['error']} error(s), {totals['warning']} warning(s)[/yellow]"
        )


def _echo_plugin_line(entry: LogEntry) -> None:
    if entry.source == PLUGIN_LOGGER:
        console.print(f"[dim]plugin>[/dim] {escape(entry.message)}")


def _print_faults(events: list[FaultEvent]) -> None:
    for event in events:
        kind = "recoverable" if event.recoverable else "fatal"
        console.print(f"  [red]Fault[/red] ({kind}) in {event.context}: {escape(str(event.error))}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def activate(
    plugin: PluginArgument = None,
    options: OptionsOption = _DEFAULT_OPTIONS,
    wait: WaitOption = 0.5,
    verbose: VerboseOption = False,
) -> None:
    """Activate a plugin, show what it offers, then deactivate it."""
    buffer = _setup_logging(verbose)
    opts = _resolve_options(options, plugin)
    events = asyncio.run(_activation_session(opts, wait))
    _print_plugin_output(buffer)

    if events:
        _print_faults(events)
        raise typer.Exit(code=1)
    console.print(f"[green]Plugin activated and deactivated cleanly[/green] ({opts.plugin_file().name})")


@app.command()
def send(
    messages: Annotated[list[str], typer.Argument(help="Inbound messages as JSON objects")],
    plugin: Annotated[
        Path | None, typer.Option("--plugin", help="Plugin file or package directory")
    ] = None,
    options: OptionsOption = _DEFAULT_OPTIONS,
    wait: WaitOption = 2.0,
    verbose: VerboseOption = False,
) -> None:
    """Send inbound messages to a plugin and print what it sends back."""
    parsed: list[dict[str, Any]] = []
    for raw in messages:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError as exc:
            console.print(f"[red]Invalid JSON message: {exc}[/red]")
            raise typer.Exit(code=1) from exc
        if not isinstance(message, dict) or "type" not in message:
            console.print(f"[red]Message must be a JSON object with a 'type': {raw}[/red]")
            raise typer.Exit(code=1)
        parsed.append(message)

    buffer = _setup_logging(verbose)
    opts = _resolve_options(options, plugin)
    # The Rich console handler already shows plugin output when verbose.
    unsubscribe = buffer.subscribe(_echo_plugin_line) if not verbose else None
    try:
        outbound, events = asyncio.run(_send_session(opts, parsed, wait))
    finally:
        if unsubscribe is not None:
            unsubscribe()

    table = Table(title="Outbound Messages")
    table.add_column("#", style="cyan", width=3)
    table.add_column("Type", style="magenta")
    table.add_column("Payload", max_width=80)
    for i, message in enumerate(outbound, start=1):
        payload = {k: v for k, v in message.items() if k != "type"}
        text = json.dumps(redact_mapping(payload), default=repr, ensure_ascii=False)
        table.add_row(str(i), str(message.get("type")), escape(text[:80]))
    console.print(table)

    if events:
        _print_faults(events)
        raise typer.Exit(code=1)


@app.command()
def faults(
    options: OptionsOption = _DEFAULT_OPTIONS,
    workspace: Annotated[
        Path | None, typer.Option("--workspace", "-w", help="Workspace directory")
    ] = None,
    count: Annotated[int, typer.Option("--count", "-n", help="Number of entries")] = 20,
) -> None:
    """Show recent fault journal entries."""
    if workspace is None:
        workspace = _resolve_options(options, None).workspace()
    entries = read_faults(workspace, last_n=count)

    if not entries:
        console.print("[dim]No fault journal entries found.[/dim]")
        return

    table = Table(title="Fault Journal (most recent first)")
    table.add_column("Timestamp", style="cyan", no_wrap=True)
    table.add_column("Context", style="magenta")
    table.add_column("Kind")
    table.add_column("Error", max_width=60)

    for entry in entries:
        ts = entry.get("timestamp", "?")[:19]
        context = entry.get("context", "?")
        recoverable = entry.get("recoverable", True)
        kind = "[yellow]recoverable[/yellow]" if recoverable else "[red]fatal[/red]"
        error = entry.get("error", "")
        if entry.get("error_type"):
            error = f"{entry['error_type']}: {error}"
        table.add_row(ts, context, kind, error[:60])

    console.print(table)


@app.command(name="options")
def show_options(
    plugin: PluginArgument = None,
    options: OptionsOption = _DEFAULT_OPTIONS,
) -> None:
    """Display the resolved host options."""
    opts = _resolve_options(options, plugin)
    data = redact_mapping(opts.model_dump())

    table = Table(title="plughost Options")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")

    table.add_row("Plugin", str(opts.plugin_file()))
    table.add_row("Workspace", str(opts.workspace()))
    table.add_row("Extension root", str(opts.extension_root()))
    table.add_row("Host API module", opts.host_api_name)
    table.add_row("Render surface", opts.render_surface_id)
    table.add_row("Hosting mode", opts.hosting_mode)
    table.add_row("Initial mode", opts.mode)
    table.add_row("Custom modes", str(len(opts.custom_modes)))
    table.add_row("Append system prompt", _status(bool(opts.append_system_prompt)))
    table.add_row("Record faults", _status(opts.record_faults))
    table.add_row("Forced flags", ", ".join(sorted(opts.forced_flags())) or "(none)")
    for key, value in data["identity"].items():
        table.add_row(f"identity.{key}", str(value) or "[dim](unset)[/dim]")
    for key, value in data["tuning"].items():
        table.add_row(f"tuning.{key}", str(value))

    console.print(table)
