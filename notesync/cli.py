"""Command-line interface for notesync.

Example:
    notesync setup https://github.com/alice/notes ghp_xxx
    notesync clone
    notesync sync --prefer local
    notesync watch --interactive
"""

import asyncio
import logging
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Annotated, Literal, Optional

import cyclopts
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table
from rich.text import Text

from notesync.config import NoteSyncConfig
from notesync.conflicts import ConflictDecision, Resolution, StaticDecider
from notesync.exceptions import NoteSyncError, SyncDisabledError
from notesync.oplog import SyncOperationLog
from notesync.orchestrator import SyncOrchestrator, SyncReport

app = cyclopts.App(name="notesync", help="Sync a directory of Markdown notes with GitHub")

Prefer = Literal["local", "remote", "defer"]


def _get_console() -> Console:
    """Get a Rich console for output."""
    return Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _time_ago(when: datetime) -> str:
    seconds = (datetime.now(timezone.utc) - when).total_seconds()
    if seconds < 60:
        return f"{int(seconds)} seconds ago"
    elif seconds < 3600:
        return f"{int(seconds / 60)} minutes ago"
    elif seconds < 86400:
        return f"{int(seconds / 3600)} hours ago"
    return f"{int(seconds / 86400)} days ago"


def _load_configured(console: Console) -> NoteSyncConfig | None:
    try:
        config = NoteSyncConfig.load()
    except NoteSyncError as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        return None

    if not config.is_configured:
        console.print(
            "[red]Error: No repository configured. Run 'notesync setup' first.[/red]"
        )
        return None
    return config


class InteractiveDecider:
    """Ask on the terminal how to resolve each conflict."""

    def __init__(self, console: Console):
        self.console = console

    async def __call__(self, decision: ConflictDecision) -> Resolution:
        self.console.print(
            Panel(
                Text.assemble(
                    ("Both sides changed since the last sync\n\n", "yellow"),
                    ("Local:\n", "cyan bold"),
                    (_preview(decision.local_content), "white"),
                    ("\n\nRemote:\n", "cyan bold"),
                    (_preview(decision.remote_content), "white"),
                ),
                title=f"Conflict: {decision.path}",
                border_style="yellow",
            )
        )
        choice = await asyncio.to_thread(
            Prompt.ask,
            "Keep which version?",
            choices=[r.value for r in Resolution],
            default=Resolution.DEFER.value,
            console=self.console,
        )
        return Resolution(choice)


def _preview(content: str, lines: int = 8) -> str:
    head = content.splitlines()[:lines]
    more = len(content.splitlines()) - len(head)
    return "\n".join(head) + (f"\n... ({more} more lines)" if more > 0 else "")


def _build(
    config: NoteSyncConfig, console: Console, prefer: str, interactive: bool
) -> SyncOrchestrator:
    decider = InteractiveDecider(console) if interactive else StaticDecider(prefer)
    return SyncOrchestrator.create(config, decider=decider)


def _print_report(console: Console, report: SyncReport, title: str) -> None:
    if report.disabled or report.skipped:
        console.print(f"[yellow]{report.summary()}[/yellow]")
        return

    table = Table(title=title, show_header=True)
    table.add_column("Action", style="cyan")
    table.add_column("Path", style="white")

    for path in report.uploaded:
        table.add_row("[green]↑ uploaded[/green]", path)
    for path in report.downloaded:
        table.add_row("[blue]↓ downloaded[/blue]", path)
    for path in report.deleted_remote:
        table.add_row("[red]✗ deleted remotely[/red]", path)
    for path in report.deleted_local:
        table.add_row("[red]✗ deleted locally[/red]", path)
    for old_path, new_path in report.renamed:
        table.add_row("[magenta]→ renamed[/magenta]", f"{old_path} → {new_path}")
    for path in report.deferred + report.conflicts:
        table.add_row("[yellow]! conflict pending[/yellow]", path)
    for path, error in report.failed.items():
        table.add_row("[red]✗ failed[/red]", f"{path}: {error}")
    for path in report.skipped_dirs:
        table.add_row("[yellow]? not listed[/yellow]", f"{path}/")

    if table.row_count:
        console.print(table)

    border = "green" if report.ok and not (report.deferred or report.conflicts) else "yellow"
    console.print(Panel(report.summary(), title="Sync Complete", border_style=border))


async def _run_pass(
    config: NoteSyncConfig,
    console: Console,
    kind: str,
    prefer: str,
    interactive: bool,
    force: bool = False,
) -> SyncReport:
    orchestrator = _build(config, console, prefer, interactive)
    try:
        if kind == "sync":
            report = await orchestrator.sync()
        elif kind == "pull":
            report = await orchestrator.reconcile(trigger="refresh")
        else:
            report = await orchestrator.clone(force=force)
        await orchestrator.on_background()
    finally:
        await orchestrator.close()

    if report.ok:
        config.record_sync()
    return report


@app.command
def setup(
    repo_url: Annotated[str, cyclopts.Parameter(help="GitHub repository URL or owner/name")],
    token: Annotated[str, cyclopts.Parameter(help="GitHub access token")],
    *,
    notes_dir: Annotated[
        Optional[str], cyclopts.Parameter(help="Local notes directory")
    ] = None,
    branch: Annotated[
        Optional[str], cyclopts.Parameter(help="Branch to sync (default: repository default)")
    ] = None,
):
    """Configure the repository to sync with.

    Example:
        notesync setup https://github.com/alice/notes ghp_xxx
    """
    console = _get_console()

    try:
        config = NoteSyncConfig.load(use_env=False)
        binding = config.setup(repo_url, token, notes_dir=notes_dir, branch=branch)
    except NoteSyncError as e:
        console.print(f"[red]Error during setup: {e}[/red]")
        raise SystemExit(1)

    console.print(
        Panel(
            Text.assemble(
                ("✓ ", "green bold"),
                ("Repository configured\n\n", "green"),
                ("Repository: ", "cyan"),
                (binding.full_name, "white"),
                ("\n"),
                ("Notes: ", "cyan"),
                (str(config.resolved_notes_dir), "white"),
            ),
            title="Setup Complete",
            border_style="green",
        )
    )
    console.print("\n[dim]To download the notes: notesync clone[/dim]")


@app.command
def status():
    """Show configuration, tracked notes and pending local changes."""
    console = _get_console()
    config = NoteSyncConfig.load()

    table = Table(title="Note Sync Status", show_header=False, box=None)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")

    table.add_row("Configured", "✓ Yes" if config.is_configured else "✗ No")
    if not config.is_configured:
        table.add_row("", "[yellow]Run 'notesync setup' to configure[/yellow]")
        console.print(table)
        return

    binding = config.binding()
    table.add_row("Repository", binding.full_name)
    table.add_row("Branch", binding.branch or "(default)")
    table.add_row("Notes", str(config.resolved_notes_dir))

    if config.last_sync:
        table.add_row(
            "Last Sync",
            f"{config.last_sync.strftime('%Y-%m-%d %H:%M:%S UTC')} ({_time_ago(config.last_sync)})",
        )
    else:
        table.add_row("Last Sync", "Never")

    is_valid, errors = config.validate()
    if not is_valid:
        table.add_row("Validation", "[red]✗ Failed[/red]")
        for error in errors:
            table.add_row("", f"  • {error}")

    async def local_state():
        orchestrator = SyncOrchestrator.create(config)
        try:
            return await orchestrator.tracker.entries(), await orchestrator.tracker.detect_changes()
        finally:
            await orchestrator.close()

    tracked, changes = asyncio.run(local_state())
    table.add_row("Tracked Notes", str(len(tracked)))
    table.add_row("Local Changes", str(len(changes)) if changes else "None")
    console.print(table)

    if changes:
        console.print()
        for change in changes:
            suffix = f" (from {change.old_path})" if change.old_path else ""
            console.print(f"  [yellow]{change.kind.value:>8}[/yellow] {change.path}{suffix}")
        console.print("\n[dim]To push them: notesync sync[/dim]")


@app.command
def sync(
    *,
    prefer: Annotated[Prefer, cyclopts.Parameter(help="Conflict resolution")] = "defer",
    interactive: Annotated[bool, cyclopts.Parameter(help="Ask for each conflict")] = False,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable debug logging")] = False,
):
    """Push local changes made since the last sync."""
    _configure_logging(verbose)
    _run_command("sync", "Incremental Sync", prefer, interactive)


@app.command
def pull(
    *,
    prefer: Annotated[Prefer, cyclopts.Parameter(help="Conflict resolution")] = "defer",
    interactive: Annotated[bool, cyclopts.Parameter(help="Ask for each conflict")] = False,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable debug logging")] = False,
):
    """Fully reconcile local notes with the repository."""
    _configure_logging(verbose)
    _run_command("pull", "Full Reconciliation", prefer, interactive)


@app.command
def clone(
    *,
    force: Annotated[bool, cyclopts.Parameter(help="Overwrite existing local notes")] = False,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable debug logging")] = False,
):
    """Download every note in the repository."""
    _configure_logging(verbose)
    _run_command("clone", "Clone", "defer", False, force=force)


def _run_command(
    kind: str, title: str, prefer: str, interactive: bool, force: bool = False
) -> None:
    console = _get_console()
    config = _load_configured(console)
    if config is None:
        raise SystemExit(1)

    try:
        with console.status(f"[cyan]{title}...[/cyan]") if not interactive else nullcontext():
            report = asyncio.run(_run_pass(config, console, kind, prefer, interactive, force))
    except SyncDisabledError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise SystemExit(1)
    except NoteSyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)

    _print_report(console, report, title)
    if report.failed:
        raise SystemExit(1)


@app.command
def watch(
    *,
    interval: Annotated[
        Optional[float], cyclopts.Parameter(help="Seconds between syncs")
    ] = None,
    prefer: Annotated[Prefer, cyclopts.Parameter(help="Conflict resolution")] = "defer",
    interactive: Annotated[bool, cyclopts.Parameter(help="Ask for each conflict")] = False,
    verbose: Annotated[bool, cyclopts.Parameter(help="Enable debug logging")] = False,
):
    """Reconcile once, then sync periodically until interrupted."""
    _configure_logging(verbose)
    console = _get_console()
    config = _load_configured(console)
    if config is None:
        raise SystemExit(1)

    async def run():
        orchestrator = _build(config, console, prefer, interactive)
        try:
            report = await orchestrator.on_foreground()
            _print_report(console, report, "Full Reconciliation")
            orchestrator.start(interval)
            console.print(
                f"[cyan]Watching {config.resolved_notes_dir} "
                f"(every {interval or config.sync_interval_seconds:g}s, Ctrl+C to stop)[/cyan]"
            )
            await asyncio.Event().wait()
        finally:
            result = await orchestrator.on_background()
            if result.failed:
                console.print(f"[red]{len(result.failed)} commits failed on exit[/red]")
            await orchestrator.close()
            config.record_sync()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")
    except NoteSyncError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise SystemExit(1)


@app.command
def log(
    *,
    failed: Annotated[bool, cyclopts.Parameter(help="Only show failed operations")] = False,
    limit: Annotated[int, cyclopts.Parameter(help="Maximum entries to show")] = 20,
):
    """Show the sync operation log."""
    console = _get_console()
    config = NoteSyncConfig.load()
    oplog = SyncOperationLog(config.log_file)

    operations = (
        oplog.get_failed_operations()[-limit:][::-1]
        if failed
        else oplog.get_recent_operations(limit)
    )
    if not operations:
        console.print("[dim]No operations logged[/dim]")
        return

    table = Table(title="Sync Operations", show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Operation", style="cyan")
    table.add_column("Path", style="white")
    table.add_column("Status")
    table.add_column("Error", style="red")

    status_styles = {"success": "green", "failed": "red", "conflict": "yellow", "deferred": "yellow"}
    for op in operations:
        style = status_styles.get(op.status, "white")
        table.add_row(
            op.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            op.op_type,
            op.path,
            f"[{style}]{op.status}[/{style}]",
            op.error or "",
        )
    console.print(table)

    stats = oplog.get_statistics()
    console.print(
        f"\n[dim]{stats['total_operations']} operations, "
        f"{stats['recent_failures']} failures in the last 24 hours[/dim]"
    )


@app.command
def remove(
    *,
    yes: Annotated[bool, cyclopts.Parameter(help="Do not ask for confirmation")] = False,
):
    """Stop syncing and delete the local notes and sync state."""
    console = _get_console()
    config = _load_configured(console)
    if config is None:
        raise SystemExit(1)

    notes_dir = config.resolved_notes_dir
    if not yes and not Confirm.ask(
        f"Delete [cyan]{notes_dir}[/cyan] and stop syncing {config.binding().full_name}?",
        default=False,
    ):
        console.print("[yellow]Cancelled[/yellow]")
        return

    async def run():
        orchestrator = SyncOrchestrator.create(config)
        try:
            await orchestrator.remove_repository()
        finally:
            await orchestrator.close()

    asyncio.run(run())
    config.remove()
    console.print(f"[green]✓ Removed repository and deleted {notes_dir}[/green]")


load_dotenv()


def main():
    app()
