from typing import Optional

import typer

from xynoxa_sync.config import SyncConfig
from xynoxa_sync.service import SyncApp
from xynoxa_sync.sync.sync_service import ReportListener


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:  # pragma: no cover
        import xynoxa_sync

        config = SyncConfig()
        typer.echo(f"Xynoxa Sync version: {xynoxa_sync.__version__}")
        typer.echo(f"Config directory: {config.config_dir}")
        raise typer.Exit()


app = typer.Typer(name="xynoxa-sync")


@app.callback()
def app_callback(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """Xynoxa Sync - keep local folders in sync with a Xynoxa server."""


def get_sync_app(on_report: Optional[ReportListener] = None) -> SyncApp:
    """Build the control surface used by every command."""
    return SyncApp(SyncConfig(), on_report=on_report)


# Register sub-command groups
folder_app = typer.Typer(help="Manage group folders")
app.add_typer(folder_app, name="folder")
