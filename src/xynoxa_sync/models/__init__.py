"""Models package for xynoxa-sync."""

from xynoxa_sync.models.base import Base, SchemaVersion, SCHEMA_VERSION
from xynoxa_sync.models.index import Cursor, GroupFolder, IndexEntry, RemoteFolder, SyncState

__all__ = [
    "Base",
    "SchemaVersion",
    "SCHEMA_VERSION",
    "Cursor",
    "GroupFolder",
    "IndexEntry",
    "RemoteFolder",
    "SyncState",
]
