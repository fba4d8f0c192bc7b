"""CLI commands for xynoxa-sync."""

from . import auth, config, files, folder, status, sync

__all__ = ["auth", "config", "files", "folder", "status", "sync"]
