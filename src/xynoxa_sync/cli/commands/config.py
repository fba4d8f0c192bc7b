"""Show or change the server configuration."""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from xynoxa_sync.cli.app import app, get_sync_app
from xynoxa_sync.services.exceptions import ConfigError

console = Console()


@app.command()
def config(
    server_url: Optional[str] = typer.Option(None, "--server-url", "-s", help="Server URL"),
    path: Optional[str] = typer.Option(None, "--path", "-p", help="Local folder to sync"),
    completed: Optional[bool] = typer.Option(
        None, "--completed/--not-completed", help="Mark setup as completed"
    ),
) -> None:
    """Show the configuration, or update it when options are given."""
    sync_app = get_sync_app()
    if server_url is not None or path is not None or completed is not None:
        try:
            sync_app.save_config(server_url, path, completed)
        except ConfigError as e:
            typer.echo(f"Invalid configuration: {e}", err=True)
            raise typer.Exit(1)

    app_config = sync_app.get_config()
    table = Table(title="Xynoxa Sync Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    table.add_row("Server URL", app_config.server_url or "[dim]not set[/dim]")
    table.add_row("Sync path", app_config.sync_path or "[dim]not set[/dim]")
    table.add_row("Setup completed", "yes" if app_config.setup_completed else "no")
    table.add_row("Config file", str(sync_app.config.config_file))
    console.print(table)
