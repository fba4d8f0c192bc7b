"""Group folder commands."""

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from xynoxa_sync.cli.app import folder_app, get_sync_app
from xynoxa_sync.services.exceptions import SyncError

console = Console()


async def run_add(name: str, path: Path) -> None:
    sync_app = get_sync_app()
    try:
        folder = await sync_app.add_group_folder(name, path)
        console.print(f"Added group folder [green]{folder.name}[/green] (id {folder.id})")
    finally:
        await sync_app.shutdown()


async def run_disable(folder_id: int) -> None:
    sync_app = get_sync_app()
    try:
        await sync_app.disable_group_folder(folder_id)
        console.print(f"Disabled group folder {folder_id}")
    finally:
        await sync_app.shutdown()


async def run_list() -> None:
    sync_app = get_sync_app()
    try:
        folders = await sync_app.list_group_folders()
    finally:
        await sync_app.shutdown()

    table = Table(title="Group folders")
    table.add_column("Id", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Local root")
    table.add_column("Enabled")
    for folder in folders:
        table.add_row(
            str(folder.id),
            folder.name,
            folder.local_root,
            "[green]yes[/green]" if folder.enabled else "[dim]no[/dim]",
        )
    console.print(table)


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except SyncError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@folder_app.command("add")
def add(
    name: str = typer.Argument(..., help="Display name"),
    path: Path = typer.Argument(..., help="Local directory to sync"),
) -> None:
    """Add a group folder, or reconnect one that was disabled."""
    _run(run_add(name, path))


@folder_app.command("disable")
def disable(folder_id: int = typer.Argument(..., help="Group folder id")) -> None:
    """Stop syncing a group folder. Its index is kept for a later reconnect."""
    _run(run_disable(folder_id))


@folder_app.command("list")
def list_folders() -> None:
    """List group folders."""
    _run(run_list())
