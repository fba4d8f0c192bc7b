from .file_change_scanner import FileChangeScanner
from .delta import DeltaComputer
from .conflict import ConflictResolver
from .sync_service import FolderSyncState, SyncOrchestrator, SyncPhase
from .group_folder_manager import GroupFolderManager, WorkerPool

__all__ = [
    "FileChangeScanner",
    "DeltaComputer",
    "ConflictResolver",
    "FolderSyncState",
    "SyncOrchestrator",
    "SyncPhase",
    "GroupFolderManager",
    "WorkerPool",
]
