"""Login and logout commands."""

import asyncio

import typer
from loguru import logger
from rich.console import Console

from xynoxa_sync.cli.app import app, get_sync_app
from xynoxa_sync.services.exceptions import SyncError

console = Console()


async def run_login(token: str) -> None:
    sync_app = get_sync_app()
    await sync_app.login(token)


async def run_logout() -> None:
    sync_app = get_sync_app()
    await sync_app.logout()


@app.command()
def login(
    token: str = typer.Option(
        ..., "--token", "-t", prompt=True, hide_input=True, help="API token (xyn-...)"
    ),
) -> None:
    """Validate an API token against the server and store it in the system keyring."""
    try:
        asyncio.run(run_login(token))
        console.print("[green]Logged in[/green]")
    except SyncError as e:
        logger.error(f"Login failed: {e}")
        typer.echo(f"Login failed: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def logout() -> None:
    """Remove the stored token."""
    asyncio.run(run_logout())
    console.print("Logged out")
