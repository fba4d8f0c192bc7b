"""Command module for xynoxa-sync sync operations."""

import asyncio
import signal
from typing import Dict

import typer
from loguru import logger
from rich.console import Console
from rich.tree import Tree

from xynoxa_sync.cli.app import app, get_sync_app
from xynoxa_sync.services.exceptions import SyncError
from xynoxa_sync.sync.sync_service import FolderSyncState
from xynoxa_sync.sync.utils import SyncReport

console = Console()


def display_sync_summary(folder_id: int, report: SyncReport) -> None:
    """Display a one-line summary of sync changes."""
    total_changes = report.total_changes
    if total_changes == 0 and not report.conflicts and not report.errors:
        console.print(f"[green]Folder {folder_id}: everything up to date[/green]")
        return

    # Format as: "Synced X files (A new, B modified, C deleted)"
    changes = []
    if report.new:
        changes.append(f"[green]{len(report.new)} new[/green]")
    if report.modified:
        changes.append(f"[yellow]{len(report.modified)} modified[/yellow]")
    if report.moves:
        changes.append(f"[blue]{len(report.moves)} moved[/blue]")
    if report.deleted:
        changes.append(f"[red]{len(report.deleted)} deleted[/red]")
    if report.conflicts:
        changes.append(f"[magenta]{len(report.conflicts)} conflicts[/magenta]")
    if report.errors:
        changes.append(f"[red]{len(report.errors)} errors[/red]")

    console.print(f"Folder {folder_id}: synced {total_changes} files ({', '.join(changes)})")


def display_detailed_sync_results(folder_id: int, report: SyncReport) -> None:
    """Display detailed sync results with trees."""
    if report.total_changes == 0 and not report.conflicts and not report.errors:
        console.print(f"\n[green]Folder {folder_id}: everything up to date[/green]")
        return

    tree = Tree(f"[bold]Folder {folder_id}[/bold]")
    if report.new:
        created = tree.add("[green]Created[/green]")
        for path in sorted(report.new):
            checksum = report.checksums.get(path, "")
            created.add(f"[green]{path}[/green] ({checksum[:8]})")
    if report.modified:
        modified = tree.add("[yellow]Modified[/yellow]")
        for path in sorted(report.modified):
            checksum = report.checksums.get(path, "")
            modified.add(f"[yellow]{path}[/yellow] ({checksum[:8]})")
    if report.moves:
        moved = tree.add("[blue]Moved[/blue]")
        for old_path, new_path in sorted(report.moves.items()):
            moved.add(f"[blue]{old_path} -> {new_path}[/blue]")
    if report.deleted:
        deleted = tree.add("[red]Deleted[/red]")
        for path in sorted(report.deleted):
            deleted.add(f"[red]{path}[/red]")
    if report.conflicts:
        conflicts = tree.add("[magenta]Conflicts[/magenta]")
        for path, copy in sorted(report.conflicts.items()):
            conflicts.add(f"[magenta]{path}[/magenta] (other version: {copy})")
    if report.errors:
        errors = tree.add("[red]Errors[/red]")
        for path, error in sorted(report.errors.items()):
            errors.add(f"[red]{path or '(folder)'}[/red]: {error}")
    console.print(tree)


def print_report(state: FolderSyncState, report: SyncReport) -> None:
    """Print one line per change as cycles complete, for the watch command."""
    stamp = state.last_sync.isoformat(timespec="minutes") if state.last_sync else ""
    for path in sorted(report.new):
        checksum = report.checksums.get(path, "")
        console.print(f"{stamp} New:\t\t [green]{path}[/green] ({checksum[:8]})")
    for path in sorted(report.modified):
        checksum = report.checksums.get(path, "")
        console.print(f"{stamp} Modified:\t [yellow]{path}[/yellow] ({checksum[:8]})")
    for old_path, new_path in sorted(report.moves.items()):
        console.print(f"{stamp} Moved:\t\t [blue]{old_path} -> {new_path}[/blue]")
    for path in sorted(report.deleted):
        console.print(f"{stamp} Deleted:\t [red]{path}[/red]")
    for path, copy in sorted(report.conflicts.items()):
        console.print(f"{stamp} Conflict:\t [magenta]{path}[/magenta] -> {copy}")
    if state.halted:
        console.print(f"{stamp} [red]{state.name} halted: {state.halt_reason}[/red]")


async def run_sync(verbose: bool = False, full_scan: bool = False) -> Dict[int, SyncReport]:
    """Run one sync cycle for every group folder."""
    sync_app = get_sync_app()
    try:
        reports = await sync_app.sync_once(full_scan=full_scan)
    finally:
        await sync_app.shutdown()

    for folder_id, report in sorted(reports.items()):
        if verbose:
            display_detailed_sync_results(folder_id, report)
        else:
            display_sync_summary(folder_id, report)
    return reports


async def run_watch() -> None:
    """Sync continuously until interrupted."""
    sync_app = get_sync_app(on_report=print_report)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await sync_app.start_sync()
    console.print("\n[cyan]Watching for changes...[/cyan]")
    try:
        await stop.wait()
    finally:
        console.print("[cyan]Stopping...[/cyan]")
        await sync_app.shutdown()


@app.command()
def sync(
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show detailed sync information.",
    ),
    full_scan: bool = typer.Option(
        False, "--full-scan", help="Reconcile the whole tree instead of trusting the watcher."
    ),
) -> None:
    """Run one sync cycle for every group folder."""
    try:
        reports = asyncio.run(run_sync(verbose, full_scan))
    except SyncError as e:
        logger.error(f"Sync failed: {e}")
        typer.echo(f"Error during sync: {e}", err=True)
        raise typer.Exit(1)
    if any(report.errors for report in reports.values()):
        raise typer.Exit(1)


@app.command()
def watch() -> None:
    """Keep every group folder in sync until interrupted."""
    try:
        asyncio.run(run_watch())
    except SyncError as e:
        logger.error(f"Watch failed: {e}")
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
