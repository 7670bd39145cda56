"""CLI for Activity Notes.

Commands for:
- Daemon management
- Triggering a cycle manually
- Watermark and last-result status
"""

from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click
from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from activity_notes.models import CycleOutcome

console = Console()


# ============================================================================
# Rich Formatting Helpers
# ============================================================================


def format_status_badge(status: str) -> Text:
    """Format cycle status as colored badge."""
    colors = {
        "written": "green",
        "no_new": "blue",
        "skipped": "yellow",
        "cancelled": "yellow",
        "failed": "red bold",
    }
    color = colors.get(status.lower(), "white")
    return Text(f"[{status.upper()}]", style=color)


def _display_outcome(outcome: CycleOutcome) -> None:
    """Display a cycle outcome."""
    line = Text()
    line.append_text(format_status_badge(outcome.status.value))
    line.append(f" {outcome.summary}")
    console.print(line)

    if outcome.activity_ids:
        console.print(f"  Activities: {', '.join(outcome.activity_ids)}")
    if outcome.note_path:
        console.print(f"  Note: {outcome.note_path}")
    if outcome.partial:
        console.print("  [yellow]Partial analysis was written.[/yellow]")
    console.print(f"  [dim]Took {outcome.duration_seconds:.1f}s[/dim]")


def _get_pid_file() -> Path:
    """Get the path to the daemon PID file."""
    return Path.home() / ".activity-notes" / "daemon.pid"


def _running_daemon_pid() -> int | None:
    """Return the PID of a live daemon, cleaning up stale PID files."""
    pid_file = _get_pid_file()
    if not pid_file.exists():
        return None

    try:
        pid = int(pid_file.read_text().strip())
        os.kill(pid, 0)
    except (ProcessLookupError, ValueError):
        pid_file.unlink(missing_ok=True)
        return None
    except PermissionError:
        # Process exists but belongs to someone else.
        return None
    return pid


def _get_log_file() -> Path:
    """Get the path to the background daemon's log file."""
    return Path.home() / ".activity-notes" / "daemon.log"


def _detach_from_terminal(log_file: Path) -> None:
    """Detach a forked daemon from its terminal.

    stdin is pointed at /dev/null and stdout/stderr at ``log_file``. The
    descriptors are redirected rather than closed: the structlog factory
    holds ``sys.stderr`` and keeps writing to it.
    """
    os.setsid()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    sys.stdout.flush()
    sys.stderr.flush()

    with open(os.devnull, "rb") as devnull:
        os.dup2(devnull.fileno(), sys.stdin.fileno())
    with open(log_file, "ab") as log:
        os.dup2(log.fileno(), sys.stdout.fileno())
        os.dup2(log.fileno(), sys.stderr.fileno())


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(path_type=Path),
    default="config/pipeline.yaml",
    help="Path to pipeline configuration file",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON")
@click.pass_context
def main(ctx: click.Context, config: Path, verbose: bool, json_logs: bool) -> None:
    """Activity Notes - AI analysis of new workouts, written to daily notes."""
    from activity_notes.log import configure_logging

    configure_logging(verbose=verbose, json_logs=json_logs)
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config


# =============================================================================
# Daemon Commands
# =============================================================================


@main.group()
def daemon() -> None:
    """Manage the background daemon process."""


@daemon.command("start")
@click.option("--background", "-b", is_flag=True, help="Run daemon in background")
@click.pass_context
def daemon_start(ctx: click.Context, background: bool) -> None:
    """Start the background scheduler.

    The daemon polls for new activities on the configured interval and
    writes analyses to the daily note.

    Examples:

        activity-notes daemon start          # Run in foreground

        activity-notes daemon start -b       # Run in background
    """
    from activity_notes.config import Settings
    from activity_notes.daemon.pipeline import build_scheduler, run_daemon

    pid = _running_daemon_pid()
    if pid is not None:
        console.print(f"[yellow]Daemon already running (PID: {pid})[/yellow]")
        console.print("Use 'activity-notes daemon stop' to stop it first.")
        return

    try:
        scheduler = build_scheduler(Settings(), ctx.obj["config_path"])
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot start daemon: {e}[/red]")
        raise SystemExit(1)

    pid_file = _get_pid_file()

    if background:
        # Fork to background
        pid = os.fork()
        if pid > 0:
            # Parent process
            pid_file.parent.mkdir(parents=True, exist_ok=True)
            pid_file.write_text(str(pid))
            console.print(f"[green]Daemon started in background (PID: {pid})[/green]")
            console.print("Use 'activity-notes daemon status' to check status.")
            console.print("Use 'activity-notes daemon stop' to stop.")
            return
        else:
            # Child process - detach from terminal, logging to a file
            _detach_from_terminal(_get_log_file())
    else:
        # Write PID for foreground process too
        pid_file.parent.mkdir(parents=True, exist_ok=True)
        pid_file.write_text(str(os.getpid()))
        console.print("[blue]Starting daemon (Ctrl+C to stop)...[/blue]")

    try:
        asyncio.run(run_daemon(scheduler))
    finally:
        if pid_file.exists():
            pid_file.unlink()
        if not background:
            console.print("\n[yellow]Daemon stopped.[/yellow]")


@daemon.command("stop")
def daemon_stop() -> None:
    """Stop the running daemon.

    Sends SIGTERM; the daemon cancels any in-flight cycle (the watermark is
    left where it was) and closes its tool sessions before exiting.
    """
    pid = _running_daemon_pid()
    if pid is None:
        console.print("[yellow]No daemon running[/yellow]")
        return

    try:
        os.kill(pid, signal.SIGTERM)
    except PermissionError:
        console.print(f"[red]Not allowed to signal daemon (PID: {pid})[/red]")
        raise SystemExit(1)
    console.print(f"[green]Stop requested (PID: {pid})[/green]")


@daemon.command("status")
def daemon_status() -> None:
    """Check daemon status."""
    pid = _running_daemon_pid()
    if pid is None:
        console.print("[yellow]Daemon not running[/yellow]")
    else:
        console.print(f"[green]Daemon running (PID: {pid})[/green]")


# =============================================================================
# Pipeline Commands
# =============================================================================


@main.command()
@click.pass_context
def trigger(ctx: click.Context) -> None:
    """Run one poll → analyze → write cycle now.

    If the daemon is running it is asked to start a cycle (a cycle already
    in flight wins); otherwise a single cycle runs in this process.
    """
    from activity_notes.config import Settings
    from activity_notes.daemon.pipeline import build_scheduler
    from activity_notes.models import CycleStatus

    pid = _running_daemon_pid()
    if pid is not None:
        os.kill(pid, signal.SIGUSR1)
        console.print(f"[green]Cycle requested from daemon (PID: {pid})[/green]")
        return

    try:
        scheduler = build_scheduler(Settings(), ctx.obj["config_path"])
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot run cycle: {e}[/red]")
        raise SystemExit(1)

    async def _run() -> CycleOutcome:
        try:
            return await scheduler.run_cycle("manual")
        finally:
            await scheduler.stop()

    outcome = asyncio.run(_run())
    _display_outcome(outcome)

    if outcome.status == CycleStatus.FAILED:
        raise SystemExit(1)


@main.command()
def status() -> None:
    """Show the watermark and the last written result."""
    from activity_notes.config import Settings
    from activity_notes.errors import ConfigCorruptError
    from activity_notes.watermark import WatermarkStore

    settings = Settings()
    store = WatermarkStore(settings.watermark_path)

    console.print("[bold]Activity Notes Status[/bold]\n")

    pid = _running_daemon_pid()
    if pid is not None:
        console.print(f"[green]✓[/green] Daemon running (PID: {pid})")
    else:
        console.print("[yellow]✗[/yellow] Daemon not running")

    try:
        watermark = store.get()
    except ConfigCorruptError as e:
        console.print(f"[red]Watermark unreadable:[/red] {e}")
        return

    if watermark is None:
        console.print("[dim]No cycle has completed yet.[/dim]")
        return

    table = Table(title="Watermark")
    table.add_column("Field")
    table.add_column("Value")

    table.add_row("Last checked", watermark.last_checked_at.isoformat())
    table.add_row(
        "Updated",
        watermark.updated_at.isoformat() if watermark.updated_at else "-",
    )
    table.add_row("Cycles completed", str(watermark.cycles_completed))
    table.add_row("Last note", watermark.last_note_path or "-")
    table.add_row("Last activities", ", ".join(watermark.last_activity_ids) or "-")
    table.add_row("Poll interval", f"{settings.poll_interval_minutes} min")

    console.print()
    console.print(table)


@main.command()
@click.option("--format", "-f", type=click.Choice(["text", "json"]), default="text")
def version(format: str) -> None:
    """Show version and system information."""
    import platform
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as pkg_version

    try:
        app_version = pkg_version("activity-notes")
    except PackageNotFoundError:
        app_version = "development"

    info = {
        "version": app_version,
        "python": sys.version.split()[0],
        "platform": platform.system(),
        "architecture": platform.machine(),
    }

    if format == "json":
        import json
        click.echo(json.dumps(info, indent=2))
    else:
        console.print(f"[bold]Activity Notes[/bold] v{info['version']}")
        console.print(f"  Python: {info['python']}")
        console.print(f"  Platform: {info['platform']} ({info['architecture']})")


if __name__ == "__main__":
    main()
