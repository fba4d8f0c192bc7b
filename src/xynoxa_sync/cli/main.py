"""Main CLI entry point for xynoxa-sync."""  # pragma: no cover

from xynoxa_sync.cli.app import app  # pragma: no cover
from xynoxa_sync.config import LOG_FILE_NAME, SyncConfig  # pragma: no cover
from xynoxa_sync.utils import setup_logging  # pragma: no cover

# Register commands
from xynoxa_sync.cli.commands import auth, config, files, folder, status, sync  # pragma: no cover

__all__ = ["auth", "config", "files", "folder", "status", "sync"]  # pragma: no cover


# Set up logging when module is imported
_config = SyncConfig()  # pragma: no cover
setup_logging(
    env=_config.env,
    home_dir=_config.config_dir,
    log_file=LOG_FILE_NAME,
    log_level=_config.log_level,
)  # pragma: no cover

if __name__ == "__main__":  # pragma: no cover
    app()
