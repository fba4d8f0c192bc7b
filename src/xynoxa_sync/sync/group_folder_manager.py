"""Owns one orchestrator per group folder and the worker pool they share."""

import asyncio
from pathlib import Path
from typing import Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xynoxa_sync.config import SyncConfig
from xynoxa_sync.models import GroupFolder
from xynoxa_sync.remote.client import RemoteClient
from xynoxa_sync.repository import GroupFolderRepository, IndexRepository
from xynoxa_sync.services.exceptions import AuthError, ConfigError, SyncError
from xynoxa_sync.sync.conflict import ConflictResolver
from xynoxa_sync.sync.sync_service import FolderSyncState, ReportListener, SyncOrchestrator
from xynoxa_sync.sync.utils import SyncReport
from xynoxa_sync.sync.worker_pool import WorkerPool
from xynoxa_sync.utils import file_utils

RemoteFactory = Callable[[GroupFolder], RemoteClient]

__all__ = ["GroupFolderManager", "WorkerPool"]


class GroupFolderManager:
    """
    Adds, enables, disables, starts and stops group folder orchestrators.

    A failure in one folder never touches its siblings; each orchestrator
    has its own index partition, cursor and state.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        config: SyncConfig,
        remote_factory: RemoteFactory,
        resolver: Optional[ConflictResolver] = None,
        on_report: Optional[ReportListener] = None,
    ):
        self.session_maker = session_maker
        self.config = config
        self.remote_factory = remote_factory
        self.resolver = resolver
        self.on_report = on_report
        self.folder_repository = GroupFolderRepository(session_maker)
        self.pool = WorkerPool(config.global_concurrency, config.folder_concurrency)
        self.orchestrators: Dict[int, SyncOrchestrator] = {}
        self.watch = True

    def _build(self, folder: GroupFolder) -> SyncOrchestrator:
        return SyncOrchestrator(
            folder=folder,
            index=IndexRepository(self.session_maker, folder.id),
            remote=self.remote_factory(folder),
            config=self.config,
            pool=self.pool,
            resolver=self.resolver,
            on_report=self.on_report,
        )

    async def load(self) -> List[SyncOrchestrator]:
        """Create orchestrators for every enabled folder not loaded yet."""
        for folder in await self.folder_repository.find_enabled():
            if folder.id not in self.orchestrators:
                self.orchestrators[folder.id] = self._build(folder)
        logger.debug(f"Loaded {len(self.orchestrators)} group folders")
        return list(self.orchestrators.values())

    def get(self, folder_id: int) -> SyncOrchestrator:
        try:
            return self.orchestrators[folder_id]
        except KeyError:
            raise ConfigError(f"Group folder {folder_id} is not enabled") from None

    async def list_folders(self) -> List[GroupFolder]:
        return list(await self.folder_repository.find_all())

    async def add_folder(
        self,
        name: str,
        local_root: Path,
        remote_folder_id: Optional[str] = None,
        concurrency: Optional[int] = None,
    ) -> GroupFolder:
        """
        Register a folder, or re-enable it if it was disconnected before.

        Re-enabling keeps the index partition and cursor so nothing is
        uploaded again.
        """
        root = str(local_root.expanduser().resolve())
        for other in await self.folder_repository.find_enabled():
            other_root = Path(other.local_root)
            if other.local_root != root and (
                Path(root).is_relative_to(other_root) or other_root.is_relative_to(root)
            ):
                raise ConfigError(f"{root} overlaps group folder '{other.name}' at {other_root}")

        await file_utils.ensure_directory(Path(root))
        folder = await self.folder_repository.get_by_local_root(root)
        if folder is None:
            folder = await self.folder_repository.create(
                {
                    "name": name,
                    "local_root": root,
                    "remote_folder_id": remote_folder_id,
                    "enabled": True,
                    "concurrency": concurrency or self.config.folder_concurrency,
                }
            )
            logger.info(f"Added group folder '{name}' at {root}")
        elif not folder.enabled:
            folder = await self.folder_repository.set_enabled(folder.id, True)
            assert folder is not None
            logger.info(f"Re-enabled group folder '{folder.name}' at {root}")

        if folder.id not in self.orchestrators:
            self.orchestrators[folder.id] = self._build(folder)
        return folder

    async def enable(self, folder_id: int) -> SyncOrchestrator:
        folder = await self.folder_repository.set_enabled(folder_id, True)
        if folder is None:
            raise ConfigError(f"Unknown group folder {folder_id}")
        if folder_id not in self.orchestrators:
            self.orchestrators[folder_id] = self._build(folder)
        return self.orchestrators[folder_id]

    async def disable(self, folder_id: int) -> None:
        """Stop syncing a folder but keep its index for a later reconnect."""
        orchestrator = self.orchestrators.pop(folder_id, None)
        if orchestrator is not None:
            await orchestrator.stop()
        self.pool.unregister(folder_id)
        if await self.folder_repository.set_enabled(folder_id, False) is None:
            raise ConfigError(f"Unknown group folder {folder_id}")
        logger.info(f"Disabled group folder {folder_id}")

    async def start_all(self, watch: bool = True) -> None:
        self.watch = watch
        for orchestrator in self.orchestrators.values():
            await orchestrator.start(watch=watch)

    async def stop_all(self) -> None:
        await asyncio.gather(*(o.stop() for o in self.orchestrators.values()))

    async def sync_all(self, full_scan: bool = False) -> Dict[int, SyncReport]:
        """One cycle for every folder, run side by side."""
        folder_ids = list(self.orchestrators)
        results = await asyncio.gather(
            *(self.orchestrators[i].sync_once(full_scan=full_scan) for i in folder_ids),
            return_exceptions=True,
        )
        reports: Dict[int, SyncReport] = {}
        for folder_id, result in zip(folder_ids, results):
            if isinstance(result, AuthError):
                reports[folder_id] = SyncReport(errors={"": str(result)})
            elif isinstance(result, BaseException):
                if not isinstance(result, SyncError):
                    raise result
                logger.error(f"Sync of group folder {folder_id} failed: {result}")
                reports[folder_id] = SyncReport(errors={"": str(result)})
            else:
                reports[folder_id] = result
        return reports

    def request_full_scan(self) -> None:
        """Ask every folder to reconcile against the whole tree, e.g. after a rebuild."""
        for orchestrator in self.orchestrators.values():
            orchestrator.request_sync(full_scan=True)

    def resume_all(self) -> None:
        for orchestrator in self.orchestrators.values():
            if orchestrator.state.halted:
                orchestrator.resume()

    def states(self) -> List[FolderSyncState]:
        return [o.state for o in self.orchestrators.values()]

    @property
    def requires_reauth(self) -> bool:
        return any(o.state.requires_reauth for o in self.orchestrators.values())
