"""List the files the index knows about."""

import asyncio
from typing import List, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from xynoxa_sync.cli.app import app, get_sync_app
from xynoxa_sync.models import IndexEntry, SyncState
from xynoxa_sync.services.exceptions import SyncError

console = Console()

STATE_STYLES = {
    SyncState.CLEAN: "green",
    SyncState.PENDING_LOCAL: "yellow",
    SyncState.PENDING_REMOTE: "yellow",
    SyncState.CONFLICT: "red",
}


async def load_entries(folder_id: Optional[int]) -> List[IndexEntry]:
    sync_app = get_sync_app()
    try:
        return await sync_app.get_file_list(folder_id)
    finally:
        await sync_app.shutdown()


def display_entries(entries: List[IndexEntry], conflicts_only: bool = False) -> None:
    if conflicts_only:
        entries = [e for e in entries if e.sync_state == SyncState.CONFLICT]
    table = Table(title=f"Indexed files ({len(entries)})")
    table.add_column("Folder", justify="right")
    table.add_column("Path")
    table.add_column("Size", justify="right")
    table.add_column("State")
    table.add_column("Fingerprint", style="dim")
    for entry in entries:
        style = STATE_STYLES[entry.sync_state]
        table.add_row(
            str(entry.group_folder_id),
            entry.path,
            str(entry.size),
            f"[{style}]{entry.sync_state.value}[/{style}]",
            entry.fingerprint[:8],
        )
    console.print(table)


@app.command()
def files(
    folder_id: Optional[int] = typer.Option(None, "--folder", "-f", help="Group folder id"),
    conflicts: bool = typer.Option(False, "--conflicts", help="Only show conflicted files"),
) -> None:
    """List files tracked by the index."""
    try:
        entries = asyncio.run(load_entries(folder_id))
    except SyncError as e:
        logger.error(f"Error listing files: {e}")
        typer.echo(f"Error listing files: {e}", err=True)
        raise typer.Exit(1)
    display_entries(entries, conflicts_only=conflicts)
