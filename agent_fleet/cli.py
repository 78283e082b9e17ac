"""Operator CLI for agent-fleet.

Thin typer wrappers around SessionManager and LifecycleManager. Domain
errors are printed in red and exit with status 1.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from agent_fleet import __version__
from agent_fleet.config import OrchestratorConfig, load_config
from agent_fleet.errors import FleetError
from agent_fleet.events import EventBus, EventLog
from agent_fleet.lifecycle_manager import LifecycleManager
from agent_fleet.logger import FleetLogger
from agent_fleet.models import Session
from agent_fleet.plugins import PluginRegistry
from agent_fleet.session_manager import SessionManager

app = typer.Typer(
    name="agent-fleet",
    help="Spawn and supervise a fleet of coding-agent sessions",
    add_completion=False,
)

console = Console()

# Global config path override (set via --config)
_config_path: Optional[str] = None

_STATUS_STYLES = {
    "working": "green",
    "pr_open": "cyan",
    "review_pending": "cyan",
    "approved": "green",
    "mergeable": "bold green",
    "merged": "dim",
    "ci_failed": "yellow",
    "changes_requested": "yellow",
    "stuck": "red",
    "needs_input": "red",
    "errored": "red",
    "killed": "dim",
}


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"agent-fleet version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to agent-fleet.yaml (default: AGENT_FLEET_CONFIG or search upwards)",
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    agent-fleet - orchestrate autonomous coding-agent sessions.
    """
    global _config_path
    _config_path = config
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_components(config_path: Optional[str] = None) -> tuple[OrchestratorConfig, PluginRegistry]:
    """Load configuration and the plugin modules it names."""
    config = load_config(config_path)
    registry = PluginRegistry()
    registry.load_from_config(config)
    return config, registry


def _session_manager() -> SessionManager:
    config, registry = build_components(_config_path)
    return SessionManager(config, registry, logger=FleetLogger.for_config(config, "session"))


def _fail(error: Exception) -> None:
    console.print(f"[red]Error: {error}[/red]")
    raise typer.Exit(1)


def _status_text(session: Session) -> str:
    style = _STATUS_STYLES.get(session.status.value)
    return f"[{style}]{session.status.value}[/{style}]" if style else session.status.value


def _render_sessions(sessions: list[Session]) -> None:
    if not sessions:
        console.print("[dim]No sessions.[/dim]")
        return
    table = Table(title="Sessions")
    table.add_column("Session", style="cyan")
    table.add_column("Project")
    table.add_column("Status")
    table.add_column("Activity", style="dim")
    table.add_column("Branch")
    table.add_column("Issue")
    table.add_column("PR")
    for session in sessions:
        table.add_row(
            session.id,
            session.project_id,
            _status_text(session),
            session.activity.value,
            session.branch,
            session.issue_id or "-",
            session.pr.url if session.pr else "-",
        )
    console.print(table)


@app.command()
def spawn(
    project: str = typer.Argument(..., help="Project id from the configuration"),
    issue: Optional[str] = typer.Option(None, "--issue", "-i", help="Issue id to work on"),
    prompt: Optional[str] = typer.Option(None, "--prompt", help="Extra instructions for the agent"),
) -> None:
    """Spawn a new agent session."""
    try:
        session = asyncio.run(_session_manager().spawn(project, issue, prompt=prompt))
    except FleetError as e:
        _fail(e)
    console.print(f"[green]Spawned[/green] {session.id} on branch {session.branch}")


@app.command()
def status(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Only this project"),
) -> None:
    """List sessions with live status."""
    try:
        sessions = asyncio.run(_session_manager().list(project))
    except FleetError as e:
        _fail(e)
    _render_sessions(sessions)


@app.command()
def send(
    session_id: str = typer.Argument(..., help="Session id"),
    message: str = typer.Argument(..., help="Text to deliver to the agent"),
) -> None:
    """Send a message to a running agent."""
    try:
        asyncio.run(_session_manager().send(session_id, message))
    except FleetError as e:
        _fail(e)
    console.print(f"Message sent to {session_id}")


@app.command()
def kill(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """Kill a session and archive its metadata."""
    try:
        asyncio.run(_session_manager().kill(session_id))
    except FleetError as e:
        _fail(e)
    console.print(f"[yellow]Killed[/yellow] {session_id}")


@app.command()
def cleanup(
    project: Optional[str] = typer.Option(None, "--project", "-p", help="Only this project"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be killed"),
) -> None:
    """Kill sessions whose work is finished (merged PR, dead runtime...)."""
    try:
        result = asyncio.run(_session_manager().cleanup(project, dry_run=dry_run))
    except FleetError as e:
        _fail(e)

    verb = "Would kill" if dry_run else "Killed"
    for session_id in result.killed:
        console.print(f"[yellow]{verb}[/yellow] {session_id}")
    for session_id in result.skipped:
        console.print(f"[dim]Skipped {session_id}[/dim]")
    for error in result.errors:
        console.print(f"[red]Error {error.session_id}: {error.error}[/red]")
    if result.errors:
        raise typer.Exit(1)


@app.command()
def restore(session_id: str = typer.Argument(..., help="Session id")) -> None:
    """Relaunch a killed or terminated session."""
    try:
        session = asyncio.run(_session_manager().restore(session_id))
    except FleetError as e:
        _fail(e)
    console.print(f"[green]Restored[/green] {session.id} ({session.status.value})")


async def _watch(interval: Optional[float]) -> None:
    config, registry = build_components(_config_path)
    session_manager = SessionManager(config, registry, logger=FleetLogger.for_config(config, "session"))
    bus = EventBus()
    bus.subscribe_all(lambda event: console.print(str(event)))
    lifecycle = LifecycleManager(
        config,
        registry,
        session_manager,
        event_logger=FleetLogger.for_config(config, "lifecycle"),
        event_bus=bus,
        event_log=EventLog(config.events_path),
    )
    lifecycle.start(interval)
    try:
        await lifecycle.wait()
    finally:
        lifecycle.stop()


@app.command()
def watch(
    interval: Optional[float] = typer.Option(
        None, "--interval", help="Seconds between polls (default: poll_interval_seconds)"
    ),
) -> None:
    """Run the lifecycle loop until interrupted."""
    try:
        asyncio.run(_watch(interval))
    except FleetError as e:
        _fail(e)
    except KeyboardInterrupt:
        console.print("Stopped.")


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
