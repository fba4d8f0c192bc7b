"""Status command for xynoxa-sync CLI."""

from pathlib import Path
from typing import List

import typer
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

from xynoxa_sync.cli.app import app
from xynoxa_sync.config import SyncConfig
from xynoxa_sync.sync.sync_service import FolderSyncState, SyncPhase

# Create rich console
console = Console()

PHASE_STYLES = {
    SyncPhase.IDLE: "green",
    SyncPhase.HALTED: "red",
    SyncPhase.STOPPING: "dim",
}


def load_states(status_dir: Path) -> List[FolderSyncState]:
    """Read every folder status file written by running orchestrators."""
    states = []
    for status_file in sorted(status_dir.glob("folder-*.json")):
        try:
            states.append(FolderSyncState.model_validate_json(status_file.read_text()))
        except (OSError, ValidationError) as e:
            logger.warning(f"Skipping unreadable status file {status_file}: {e}")
    return states


def display_state(state: FolderSyncState, verbose: bool = False) -> None:
    style = PHASE_STYLES.get(state.phase, "yellow")
    tree = Tree(f"[bold]{state.name}[/bold] ({state.local_root})")
    health = f"[{style}]{state.phase.value}[/{style}]"
    if state.degraded:
        health += " [yellow](degraded, retrying)[/yellow]"
    if state.requires_reauth:
        health += " [red](login required)[/red]"
    elif state.halted and state.halt_reason:
        health += f" [red]({state.halt_reason})[/red]"
    tree.add(f"State: {health}")
    tree.add(
        f"Files: [green]{state.synced_files} synced[/green], "
        f"[yellow]{state.pending_files} pending[/yellow], "
        f"[red]{state.conflict_files} conflicts[/red]"
    )
    tree.add(f"Cursor: {state.cursor}  Cycles: {state.cycles}  Errors: {state.error_count}")
    if state.last_sync:
        tree.add(f"Last sync: {state.last_sync.isoformat(timespec='seconds')}")

    if verbose and state.recent_events:
        events = tree.add("Recent activity")
        for event in state.recent_events[:20]:
            line = f"{event.timestamp.isoformat(timespec='minutes')} {event.action}: {event.path}"
            if event.error:
                events.add(f"[red]{line} - {event.error}[/red]")
            else:
                events.add(line)

    console.print(Panel(tree, expand=False))


@app.command()
def status(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show recent activity"),
):
    """Show sync status of every group folder."""
    config = SyncConfig()
    states = load_states(config.status_dir)
    if not states:
        console.print("No sync status yet. Run [bold cyan]xynoxa-sync sync[/bold cyan] first.")
        return
    for state in states:
        display_state(state, verbose)
