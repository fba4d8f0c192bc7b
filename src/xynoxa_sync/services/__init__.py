"""Services package for xynoxa-sync."""

from xynoxa_sync.services.exceptions import (
    AuthError,
    ConfigError,
    IndexCorruptionError,
    LocalIOError,
    SyncError,
    TransientNetworkError,
)

__all__ = [
    "AuthError",
    "ConfigError",
    "IndexCorruptionError",
    "LocalIOError",
    "SyncError",
    "TransientNetworkError",
]
