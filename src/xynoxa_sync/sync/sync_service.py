"""Per-folder sync orchestrator: pull, reconcile, apply, push."""

import asyncio
import dataclasses
import os
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple, TypeVar

from loguru import logger
from pydantic import BaseModel, Field

from xynoxa_sync.config import SyncConfig
from xynoxa_sync.ignore_utils import load_ignore_patterns
from xynoxa_sync.models import GroupFolder, IndexEntry, SyncState
from xynoxa_sync.remote.client import RemoteChange, RemoteClient
from xynoxa_sync.repository.index_repository import IndexMutation, IndexRepository
from xynoxa_sync.services.exceptions import (
    AuthError,
    IndexCorruptionError,
    LocalIOError,
    RemoteNotFoundError,
    StopRequested,
    SyncError,
    TransientNetworkError,
)
from xynoxa_sync.sync.conflict import Conflict, ConflictAction, ConflictResolver
from xynoxa_sync.sync.delta import DeltaComputer, coalesce_remote_changes
from xynoxa_sync.sync.file_change_scanner import FileChangeScanner
from xynoxa_sync.sync.utils import (
    ChangeKind,
    ChangeOp,
    LocalFileState,
    Origin,
    SettledBatch,
    SyncReport,
)
from xynoxa_sync.sync.watch_service import WatchService
from xynoxa_sync.sync.worker_pool import WorkerPool
from xynoxa_sync.utils import file_utils
from xynoxa_sync.utils.retry import retry_with_backoff

T = TypeVar("T")

Page = Tuple[List[RemoteChange], int]
ReportListener = Callable[["FolderSyncState", SyncReport], None]

STOP_TIMEOUT = 10.0


class SyncPhase(str, Enum):
    IDLE = "idle"
    PULLING = "pulling"
    RECONCILING = "reconciling"
    APPLYING = "applying"
    PUSHING = "pushing"
    HALTED = "halted"
    STOPPING = "stopping"


class SyncEvent(BaseModel):
    timestamp: datetime
    path: str
    action: str  # new, modified, moved, deleted, conflict, sync
    status: str  # success, error
    checksum: Optional[str] = None
    error: Optional[str] = None


class FolderSyncState(BaseModel):
    # Folder identity
    group_folder_id: int
    name: str
    local_root: str

    # Service status
    phase: SyncPhase = SyncPhase.IDLE
    running: bool = False
    start_time: datetime = Field(default_factory=datetime.now)
    pid: int = Field(default_factory=os.getpid)

    # Health
    degraded: bool = False
    halted: bool = False
    requires_reauth: bool = False
    halt_reason: Optional[str] = None

    # Stats
    cursor: int = 0
    cycles: int = 0
    error_count: int = 0
    last_error: Optional[datetime] = None
    last_scan: Optional[datetime] = None
    last_sync: Optional[datetime] = None

    # File counts
    synced_files: int = 0
    pending_files: int = 0
    conflict_files: int = 0

    # Recent activity
    recent_events: List[SyncEvent] = Field(default_factory=list)

    def add_event(
        self,
        path: str,
        action: str,
        status: str,
        checksum: Optional[str] = None,
        error: Optional[str] = None,
    ) -> SyncEvent:
        event = SyncEvent(
            timestamp=datetime.now(),
            path=path,
            action=action,
            status=status,
            checksum=checksum,
            error=error,
        )
        self.recent_events.insert(0, event)
        self.recent_events = self.recent_events[:100]  # Keep last 100
        return event

    def record_error(self, error: str, path: str = "") -> None:
        self.error_count += 1
        self.add_event(path=path, action="sync", status="error", error=error)
        self.last_error = datetime.now()


class SyncOrchestrator:
    """
    Drives one group folder through PULLING -> RECONCILING -> APPLYING ->
    PUSHING -> IDLE.

    At most one cycle runs at a time; triggers that arrive during a cycle
    collapse into a single follow-up cycle. The only crash-consistency point
    is the index commit, which for remote changes carries the page cursor.
    """

    def __init__(
        self,
        folder: GroupFolder,
        index: IndexRepository,
        remote: RemoteClient,
        config: SyncConfig,
        pool: Optional[WorkerPool] = None,
        resolver: Optional[ConflictResolver] = None,
        on_report: Optional[ReportListener] = None,
    ):
        self.folder_id = folder.id
        self.remote_folder_id = folder.remote_folder_id
        self.root = Path(folder.local_root).expanduser()
        self.index = index
        self.remote = remote
        self.config = config
        self.pool = pool or WorkerPool(config.global_concurrency, config.folder_concurrency)
        self.pool.register(folder.id, folder.concurrency)
        self.resolver = resolver or ConflictResolver()
        self.on_report = on_report

        self.ignore_patterns = load_ignore_patterns(self.root, config.ignore_patterns)
        self.scanner = FileChangeScanner(self.root, self.ignore_patterns, config.hash_chunk_size)
        self.delta = DeltaComputer()

        self.state = FolderSyncState(
            group_folder_id=folder.id, name=folder.name, local_root=str(self.root)
        )
        self.status_path = config.status_dir / f"folder-{folder.id}.json"

        self.watcher: Optional[WatchService] = None
        self._task: Optional[asyncio.Task] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._retry_handle: Optional[asyncio.TimerHandle] = None
        self._wakeup = asyncio.Event()
        self._cycle_lock = asyncio.Lock()
        self._stop_requested = False
        self._pending_paths: Set[str] = set()
        # Directory path -> remote folder id, loaded from the index each cycle
        self._folder_ids: Dict[str, str] = {}
        self._folder_lock = asyncio.Lock()
        # First cycle always reconciles against the whole tree
        self._needs_scan = True
        self._force_scan = False
        self._degraded_in_cycle = False

    # lifecycle

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self, watch: bool = True) -> None:
        """Start the cycle loop (and the watcher). Calling it again is a no-op."""
        if self.is_running:
            logger.debug(f"Orchestrator for {self.root} already running")
            return

        await file_utils.ensure_directory(self.root)
        file_utils.remove_temp_files(self.root)
        self._stop_requested = False
        self.state.running = True
        self.state.start_time = datetime.now()
        if self.state.phase == SyncPhase.STOPPING:
            self.state.phase = SyncPhase.IDLE
        await self.write_status()

        if watch:
            self.watcher = WatchService(
                self.root,
                self.ignore_patterns,
                on_batch=self.notify_local_changes,
                debounce_ms=self.config.debounce_ms,
                queue_size=self.config.event_queue_size,
            )
            self._watch_task = asyncio.create_task(self._watch())
        self._task = asyncio.create_task(self._run())
        self.request_sync()
        logger.info(f"Started sync for group folder {self.folder_id} at {self.root}")

    async def stop(self) -> None:
        """Stop after the current atomic unit; uncommitted work is discarded."""
        self._stop_requested = True
        if not self.state.halted:
            self._set_phase(SyncPhase.STOPPING)
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        if self.watcher is not None:
            self.watcher.stop()
        self._wakeup.set()

        tasks = [t for t in (self._task, self._watch_task) if t is not None and not t.done()]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=STOP_TIMEOUT)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._task = None
        self._watch_task = None
        self.watcher = None

        if self.root.exists():
            file_utils.remove_temp_files(self.root)
        self.state.running = False
        if not self.state.halted:
            self._set_phase(SyncPhase.IDLE)
        await self.write_status()
        logger.info(f"Stopped sync for group folder {self.folder_id}")

    def resume(self) -> None:
        """Clear a halt, e.g. after the user logged in again."""
        self.state.halted = False
        self.state.requires_reauth = False
        self.state.halt_reason = None
        self._set_phase(SyncPhase.IDLE)

    # triggers

    def request_sync(self, full_scan: bool = False) -> None:
        if full_scan:
            self._needs_scan = True
        self._wakeup.set()

    async def notify_local_changes(self, batch: SettledBatch) -> None:
        """Queue a settled batch from the watcher for the next cycle."""
        self._pending_paths.update(batch.paths)
        if batch.overflow:
            self._needs_scan = True
        if batch.events or batch.overflow:
            self.request_sync()

    def _schedule_retry(self) -> None:
        if self._retry_handle is not None or self._stop_requested:
            return
        delay = min(self.config.poll_interval, self.config.max_backoff)

        def fire() -> None:
            self._retry_handle = None
            self.request_sync()

        self._retry_handle = asyncio.get_running_loop().call_later(delay, fire)
        logger.info(f"Group folder {self.folder_id} degraded, reconnecting in {delay:.0f}s")

    async def _watch(self) -> None:
        assert self.watcher is not None
        try:
            await self.watcher.run()
        except (OSError, RuntimeError) as e:
            # Without a watcher every cycle falls back to a reconciliation scan
            logger.error(f"Watcher for {self.root} failed: {e}")
            self.state.record_error(f"Watcher failed: {e}")
            self._needs_scan = True
            await self.write_status()

    async def _run(self) -> None:
        while not self._stop_requested:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.config.poll_interval)
            except TimeoutError:
                logger.debug(f"Periodic sync for group folder {self.folder_id}")
            if self._stop_requested:
                break
            self._wakeup.clear()
            if self.watcher is None:
                self._needs_scan = True

            try:
                await self.sync_once()
            except AuthError:
                # Halted until the user logs in again
                break
            except SyncError as e:
                logger.error(f"Sync cycle for group folder {self.folder_id} failed: {e}")
            except Exception as e:
                # Keep the loop alive; the next cycle starts from a full scan
                logger.exception(f"Unexpected error syncing group folder {self.folder_id}")
                self.state.record_error(f"Unexpected error: {e}")
                self._needs_scan = True
                if not self.state.halted:
                    self._set_phase(SyncPhase.IDLE)
                await self.write_status()

    # status

    def _set_phase(self, phase: SyncPhase) -> None:
        if self.state.phase != phase:
            logger.debug(f"Group folder {self.folder_id}: {self.state.phase.value} -> {phase.value}")
        self.state.phase = phase

    def _check_stop(self) -> None:
        if self._stop_requested:
            raise StopRequested(f"Stop requested for group folder {self.folder_id}")

    def _halt(self, reason: str, requires_reauth: bool = False) -> None:
        logger.error(f"Halting group folder {self.folder_id}: {reason}")
        self.state.halted = True
        self.state.requires_reauth = requires_reauth
        self.state.halt_reason = reason
        self._set_phase(SyncPhase.HALTED)

    async def write_status(self) -> None:
        """Write current state to status file"""
        self.status_path.parent.mkdir(parents=True, exist_ok=True)
        self.status_path.write_text(FolderSyncState.model_dump_json(self.state, indent=2))

    def _record_events(self, report: SyncReport) -> None:
        for path in report.new:
            self.state.add_event(path, "new", "success", report.checksums.get(path))
        for path in report.modified:
            self.state.add_event(path, "modified", "success", report.checksums.get(path))
        for old_path, new_path in report.moves.items():
            self.state.add_event(
                f"{old_path} -> {new_path}", "moved", "success", report.checksums.get(new_path)
            )
        for path in report.deleted:
            self.state.add_event(path, "deleted", "success")
        for path, copy in report.conflicts.items():
            self.state.add_event(f"{path} -> {copy}", "conflict", "success")
        for path, error in report.errors.items():
            self.state.record_error(error, path=path)

    # the cycle

    async def sync_once(self, full_scan: bool = False) -> SyncReport:
        """Run one complete cycle and return what it did."""
        if full_scan:
            self._needs_scan = True
        report = SyncReport()
        if self.state.halted:
            logger.warning(f"Group folder {self.folder_id} is halted: {self.state.halt_reason}")
            return report

        async with self._cycle_lock:
            self._degraded_in_cycle = False
            try:
                await self._cycle(report)
            except StopRequested:
                logger.info(f"Cycle for group folder {self.folder_id} interrupted by stop")
                self._needs_scan = True
            except TransientNetworkError as e:
                self._degraded_in_cycle = True
                self._needs_scan = True
                self.state.record_error(str(e))
            except AuthError as e:
                self._halt(str(e), requires_reauth=True)
                self.state.record_error(str(e))
                await self.write_status()
                raise
            except IndexCorruptionError as e:
                self.state.record_error(f"Index corrupted: {e}")
                await self._rebuild_index()
            except LocalIOError as e:
                self._needs_scan = True
                self.state.record_error(str(e), path=e.path)
                report.errors[e.path] = str(e)
            except OSError as e:
                logger.error(f"Local filesystem error in group folder {self.folder_id}: {e}")
                self._needs_scan = True
                self.state.record_error(str(e))

            self.state.degraded = self._degraded_in_cycle
            if self._degraded_in_cycle:
                self._schedule_retry()
            if self.state.phase not in (SyncPhase.HALTED, SyncPhase.STOPPING):
                self._set_phase(SyncPhase.IDLE)
            self.state.cycles += 1
            self.state.last_sync = datetime.now()
            self._record_events(report)
            await self.write_status()

        if report.total_changes or report.conflicts:
            logger.info(
                f"Group folder {self.folder_id}: {len(report.new)} new, "
                f"{len(report.modified)} modified, {len(report.moves)} moved, "
                f"{len(report.deleted)} deleted, {len(report.conflicts)} conflicts"
            )
        if self.on_report is not None:
            self.on_report(self.state, report)
        return report

    async def _rebuild_index(self) -> None:
        try:
            await self.index.clear()
        except IndexCorruptionError as e:
            self._halt(f"Index could not be rebuilt: {e}")
            return
        self._needs_scan = True
        self._force_scan = True
        self.request_sync()

    async def _cycle(self, report: SyncReport) -> None:
        self._check_stop()

        self._set_phase(SyncPhase.PULLING)
        pages = await self._pull(await self.index.get_cursor())
        self._folder_ids = await self.index.folder_ids()
        self._check_stop()

        self._set_phase(SyncPhase.RECONCILING)
        entries = await self.index.list_all()
        by_path = {e.path: e for e in entries}
        by_remote_id = {e.remote_id: e for e in entries if e.remote_id}
        local_ops = await self._local_ops(by_path, report)

        remote_ops: List[ChangeOp] = []
        folders: List[RemoteChange] = []
        page_by_remote_id: Dict[str, int] = {}
        adopted: Dict[int, List[IndexMutation]] = {}
        final = coalesce_remote_changes([changes for changes, _ in pages])
        for remote_id, (page_index, change) in final.items():
            if change.is_folder:
                folders.append(change)
                continue
            op = self.delta.compute_remote(change, by_path, by_remote_id)
            if op is not None:
                remote_ops.append(op)
                page_by_remote_id[remote_id] = page_index
                continue
            entry = by_path.get(change.path or "")
            if (
                change.action != "delete"
                and entry is not None
                and entry.remote_id is None
                and entry.fingerprint == change.fingerprint
            ):
                # Same content already here, just learn the remote identity
                adopted.setdefault(page_index, []).append(
                    IndexMutation.upsert(
                        entry.path,
                        remote_id=remote_id,
                        revision=change.revision,
                        sync_state=SyncState.CLEAN,
                    )
                )

        resolution = self.resolver.resolve(local_ops, remote_ops)
        self._check_stop()

        self._set_phase(SyncPhase.APPLYING)
        await self._apply_folders(folders, report)
        touched = await self._apply_pages(
            pages,
            resolution.remote_ops,
            resolution.conflicts,
            page_by_remote_id,
            adopted,
            by_path,
            report,
        )
        await self._retry_pending_remote(touched, report)

        self._set_phase(SyncPhase.PUSHING)
        pushed = await self._push(resolution.local_ops, report)
        if pushed or resolution.conflicts:
            await self._pull_echoes()

        await self._refresh_counts()

    async def _remote_call(self, func: Callable[[], Awaitable[T]]) -> T:
        return await retry_with_backoff(
            func,
            max_retries=self.config.max_retries,
            initial_backoff=self.config.initial_backoff,
            max_backoff=self.config.max_backoff,
        )

    async def _pull(self, cursor: int) -> List[Page]:
        """Pull the feed until an empty page. Each page keeps its own cursor."""
        pages: List[Page] = []
        while True:
            self._check_stop()
            position = cursor
            changes, new_cursor = await self._remote_call(
                lambda: self.remote.list_changes(position)
            )
            if not changes:
                if new_cursor > cursor:
                    pages.append(([], new_cursor))
                break
            pages.append((changes, new_cursor))
            if new_cursor <= cursor:
                logger.warning(f"Feed cursor did not advance past {cursor}, stopping pull")
                break
            cursor = new_cursor
        if pages:
            logger.debug(f"Pulled {sum(len(c) for c, _ in pages)} remote changes in {len(pages)} pages")
        return pages

    async def _local_ops(
        self, by_path: Mapping[str, IndexEntry], report: SyncReport
    ) -> List[ChangeOp]:
        pending_local = any(e.sync_state == SyncState.PENDING_LOCAL for e in by_path.values())
        if self._needs_scan or pending_local:
            observations, errors = await self.scanner.find_changes(
                list(by_path.values()), force=self._force_scan
            )
            self._needs_scan = False
            self._force_scan = False
            self._pending_paths.clear()
            self.state.last_scan = datetime.now()
        elif self._pending_paths:
            paths, self._pending_paths = self._pending_paths, set()
            observations, errors = await self.scanner.observe_paths(paths, by_path)
        else:
            return []
        report.errors.update(errors)
        ops = self.delta.compute_local(observations, by_path)

        # Pending pushes whose path is back to the synced content need nothing
        op_paths = {p for op in ops for p in op.paths}
        settled = [
            IndexMutation.mark(e.path, SyncState.CLEAN)
            for e in by_path.values()
            if e.sync_state == SyncState.PENDING_LOCAL
            and e.remote_id is not None
            and e.path not in op_paths
            and observations.get(e.path) is not None
        ]
        if settled:
            await self.index.apply_and_advance_cursor(settled, None)
        return ops

    async def _unit(
        self,
        paths: Tuple[str, ...],
        work: Callable[[], Awaitable[List[IndexMutation]]],
        on_error: Callable[[], List[IndexMutation]],
        report: SyncReport,
    ) -> List[IndexMutation]:
        """Run one atomic unit in a worker slot. Per-file failures never escape."""
        async with self.pool.slot(self.folder_id, *paths):
            # Units still waiting for a slot when stop is requested never start
            if self._stop_requested:
                return []
            try:
                return await work()
            except TransientNetworkError as e:
                logger.error(f"Giving up on {paths[-1]} for now: {e}")
                report.errors[paths[-1]] = str(e)
                self._degraded_in_cycle = True
                return on_error()
            except (AuthError, IndexCorruptionError, StopRequested):
                raise
            except (SyncError, OSError) as e:
                logger.error(f"Failed to sync {paths[-1]}: {e}")
                report.errors[paths[-1]] = str(e)
                return on_error()

    @staticmethod
    def _ordered(ops: List[ChangeOp]) -> List[List[ChangeOp]]:
        """Deletes first, then moves, then creates and updates."""
        deletes, moves, writes = [], [], []
        for op in ops:
            match op.kind:
                case ChangeKind.DELETE:
                    deletes.append(op)
                case ChangeKind.MOVE:
                    moves.append(op)
                case ChangeKind.CREATE | ChangeKind.UPDATE:
                    writes.append(op)
        return [group for group in (deletes, moves, writes) if group]

    # applying remote changes

    async def _apply_folders(self, folders: List[RemoteChange], report: SyncReport) -> None:
        by_remote_id = {remote_id: path for path, remote_id in self._folder_ids.items()}
        for change in folders:
            path = change.path or by_remote_id.get(change.remote_id)
            if not path or self.scanner.is_ignored(self.root / path):
                continue
            directory = self.root / path
            try:
                if change.action == "delete":
                    await self.index.forget_folder(path)
                    if directory.is_dir() and not any(directory.iterdir()):
                        directory.rmdir()
                    continue
                await self.index.record_folder(path, change.remote_id)
                await file_utils.ensure_directory(directory)
            except (LocalIOError, OSError) as e:
                logger.error(f"Failed to apply remote folder {path}: {e}")
                report.errors[path] = str(e)
        if folders:
            self._folder_ids = await self.index.folder_ids()

    async def _folder_id_for(self, rel_path: str) -> Optional[str]:
        """Remote folder holding ``rel_path``. Missing folders are created top-down."""
        parent = PurePosixPath(rel_path).parent
        if not parent.parts:
            return self.remote_folder_id
        known = self._folder_ids.get(parent.as_posix())
        if known is not None:
            return known

        async with self._folder_lock:
            parent_id = self.remote_folder_id
            for depth in range(1, len(parent.parts) + 1):
                path = "/".join(parent.parts[:depth])
                folder_id = self._folder_ids.get(path)
                if folder_id is None:
                    try:
                        folder_id = await self._remote_call(
                            lambda path=path, parent_id=parent_id: self.remote.create_folder(
                                path, parent_id
                            )
                        )
                    except (AuthError, TransientNetworkError):
                        raise
                    except SyncError as e:
                        raise SyncError(
                            f"Remote folder {path} is missing, not uploading {rel_path} "
                            f"to avoid flattening it: {e}"
                        ) from e
                    await self.index.record_folder(path, folder_id)
                    self._folder_ids[path] = folder_id
                parent_id = folder_id
            return parent_id

    async def _apply_pages(
        self,
        pages: List[Page],
        remote_ops: List[ChangeOp],
        conflicts: List[Conflict],
        page_by_remote_id: Mapping[str, int],
        adopted: Mapping[int, List[IndexMutation]],
        by_path: Mapping[str, IndexEntry],
        report: SyncReport,
    ) -> Set[str]:
        """Apply remote ops page by page; each page commits with its cursor."""
        last_page = len(pages) - 1
        ops_by_page: Dict[int, List[ChangeOp]] = {}
        for op in remote_ops:
            page = page_by_remote_id.get(op.remote_id or "", last_page)
            ops_by_page.setdefault(page, []).append(op)
        conflicts_by_page: Dict[int, List[Conflict]] = {}
        for conflict in conflicts:
            page = page_by_remote_id.get(conflict.remote.remote_id or "", last_page)
            conflicts_by_page.setdefault(page, []).append(conflict)

        touched: Set[str] = set()
        for page_index, (_, new_cursor) in enumerate(pages):
            self._check_stop()
            mutations: List[IndexMutation] = list(adopted.get(page_index, []))

            for group in self._ordered(ops_by_page.get(page_index, [])):
                results = await asyncio.gather(
                    *(
                        self._unit(
                            op.paths,
                            lambda op=op: self._apply_remote(op, by_path, report),
                            lambda op=op: self._pending_remote(op, by_path),
                            report,
                        )
                        for op in group
                    )
                )
                mutations.extend(m for result in results for m in result)
                touched.update(p for op in group for p in op.paths)

            page_conflicts = conflicts_by_page.get(page_index, [])
            results = await asyncio.gather(
                *(
                    self._unit(
                        (c.path,) if c.conflict_path is None else (c.path, c.conflict_path),
                        lambda c=c: self._apply_conflict(c, by_path, report),
                        lambda c=c: self._failed_conflict(c, by_path),
                        report,
                    )
                    for c in page_conflicts
                )
            )
            mutations.extend(m for result in results for m in result)
            touched.update(c.path for c in page_conflicts)

            if self._stop_requested:
                # Finished units are kept, the cursor is not
                await self.index.apply_and_advance_cursor(mutations, None)
                self._check_stop()
            await self.index.apply_and_advance_cursor(mutations, new_cursor)
            self.state.cursor = max(self.state.cursor, new_cursor)
        return touched

    async def _observe(self, rel_path: str) -> Optional[LocalFileState]:
        return await self.scanner.observe(self.root / rel_path, None, force=True)

    async def _write_remote_content(
        self, rel_path: str, data: bytes, expected: Optional[str]
    ) -> Tuple[LocalFileState, Optional[str]]:
        """
        Write downloaded bytes at ``rel_path`` via temp file and atomic rename.

        If the path holds content we have not seen (neither ``expected`` nor
        the incoming bytes) it is moved to a conflict copy first.
        """
        target = self.root / rel_path
        fingerprint = file_utils.compute_checksum_bytes(data)
        current = await self._observe(rel_path)
        aside = None
        if current is not None and current.fingerprint not in (expected, fingerprint):
            aside = file_utils.conflict_path(rel_path, machine_name=self.resolver.machine_name)
            logger.warning(f"Unsynced local changes in {rel_path}, keeping them as {aside}")
            await file_utils.move_file(target, self.root / aside)

        await file_utils.write_file_atomic(target, data)
        stat = file_utils.file_stat(target)
        if stat is None:
            raise LocalIOError(rel_path, "File disappeared after write")
        return LocalFileState(rel_path, fingerprint, stat.size, stat.mtime), aside

    async def _download(self, remote_id: str) -> bytes:
        return await self._remote_call(lambda: self.remote.download(remote_id))

    async def _apply_remote(
        self, op: ChangeOp, by_path: Mapping[str, IndexEntry], report: SyncReport
    ) -> List[IndexMutation]:
        assert op.remote_id is not None
        match op.kind:
            case ChangeKind.CREATE | ChangeKind.UPDATE:
                entry = by_path.get(op.path)
                data = await self._download(op.remote_id)
                state, aside = await self._write_remote_content(
                    op.path, data, entry.fingerprint if entry else None
                )
                if op.fingerprint and op.fingerprint != state.fingerprint:
                    logger.debug(f"{op.path} changed again remotely since the feed record")
                report.record(dataclasses.replace(op, fingerprint=state.fingerprint))
                if aside:
                    report.conflicts[op.path] = aside
                return [
                    IndexMutation.upsert(
                        op.path,
                        fingerprint=state.fingerprint,
                        size=state.size,
                        mtime=state.mtime,
                        remote_id=op.remote_id,
                        revision=op.revision,
                        sync_state=SyncState.CONFLICT if aside else SyncState.CLEAN,
                    )
                ]

            case ChangeKind.MOVE:
                assert op.old_path is not None
                entry = by_path.get(op.old_path)
                source = await self._observe(op.old_path)
                unchanged = (
                    source is not None
                    and entry is not None
                    and source.fingerprint == entry.fingerprint
                )
                aside = None
                if unchanged and op.fingerprint in (None, entry.fingerprint):
                    target = await self._observe(op.path)
                    if target is not None and target.fingerprint != source.fingerprint:
                        aside = file_utils.conflict_path(
                            op.path, machine_name=self.resolver.machine_name
                        )
                        await file_utils.move_file(self.root / op.path, self.root / aside)
                    await file_utils.move_file(self.root / op.old_path, self.root / op.path)
                    state = await self._observe(op.path)
                    if state is None:
                        raise LocalIOError(op.path, "File disappeared after move")
                else:
                    # Content changed on one side too: fetch the remote version
                    data = await self._download(op.remote_id)
                    state, aside = await self._write_remote_content(op.path, data, None)
                    if unchanged:
                        await file_utils.delete_file(self.root / op.old_path)

                report.record(dataclasses.replace(op, fingerprint=state.fingerprint))
                if aside:
                    report.conflicts[op.path] = aside
                return [
                    IndexMutation.move(
                        op.old_path,
                        op.path,
                        fingerprint=state.fingerprint,
                        size=state.size,
                        mtime=state.mtime,
                        remote_id=op.remote_id,
                        revision=op.revision,
                        sync_state=SyncState.CONFLICT if aside else SyncState.CLEAN,
                    )
                ]

            case ChangeKind.DELETE:
                entry = by_path.get(op.path)
                current = await self._observe(op.path)
                if current is not None:
                    if entry is not None and current.fingerprint != entry.fingerprint:
                        # Next scan uploads it again as a new file
                        logger.warning(f"Keeping {op.path}: deleted remotely but changed locally")
                        self._needs_scan = True
                        report.conflicts[op.path] = op.path
                        return [IndexMutation.remove(op.path)]
                    await file_utils.delete_file(self.root / op.path)
                report.record(op)
                return [IndexMutation.remove(op.path)]

    def _pending_remote(
        self, op: ChangeOp, by_path: Mapping[str, IndexEntry]
    ) -> List[IndexMutation]:
        """Index change recording a remote op that could not be applied yet."""
        match op.kind:
            case ChangeKind.CREATE | ChangeKind.UPDATE:
                if op.path in by_path:
                    return [
                        IndexMutation.upsert(
                            op.path, remote_id=op.remote_id, sync_state=SyncState.PENDING_REMOTE
                        )
                    ]
                return [
                    IndexMutation.upsert(
                        op.path,
                        fingerprint="",
                        size=0,
                        mtime=0.0,
                        remote_id=op.remote_id,
                        revision=op.revision,
                        sync_state=SyncState.PENDING_REMOTE,
                    )
                ]
            case ChangeKind.MOVE:
                assert op.old_path is not None
                return [
                    IndexMutation.move(
                        op.old_path,
                        op.path,
                        remote_id=op.remote_id,
                        sync_state=SyncState.PENDING_REMOTE,
                    )
                ]
            case ChangeKind.DELETE:
                # Without a remote id the retry deletes the file it still matches
                return [
                    IndexMutation.upsert(
                        op.path, remote_id=None, revision=None, sync_state=SyncState.PENDING_REMOTE
                    )
                ]

    async def _apply_conflict(
        self, conflict: Conflict, by_path: Mapping[str, IndexEntry], report: SyncReport
    ) -> List[IndexMutation]:
        path = conflict.path
        remote = conflict.remote

        match conflict.action:
            case ConflictAction.DISCHARGE:
                if remote.kind == ChangeKind.DELETE:
                    return [IndexMutation.remove(path)]
                state = await self._observe(path)
                if state is None:
                    return []
                return [
                    IndexMutation.upsert(
                        path,
                        fingerprint=state.fingerprint,
                        size=state.size,
                        mtime=state.mtime,
                        remote_id=remote.remote_id,
                        revision=remote.revision,
                        sync_state=SyncState.CLEAN,
                    )
                ]

            case ConflictAction.KEEP_BOTH:
                assert conflict.conflict_path is not None and remote.remote_id is not None
                copy = conflict.conflict_path
                folder_id = await self._folder_id_for(copy)
                await self._remote_call(
                    lambda: self.remote.move_remote(remote.remote_id, copy, folder_id)
                )
                data = await self._download(remote.remote_id)
                remote_state, _ = await self._write_remote_content(copy, data, None)
                local_state, new_id = await self._upload(path, None)
                report.conflicts[path] = copy
                report.checksums[path] = local_state.fingerprint
                report.checksums[copy] = remote_state.fingerprint
                return [
                    IndexMutation.upsert(
                        copy,
                        fingerprint=remote_state.fingerprint,
                        size=remote_state.size,
                        mtime=remote_state.mtime,
                        remote_id=remote.remote_id,
                        revision=remote.revision,
                        sync_state=SyncState.CONFLICT,
                    ),
                    IndexMutation.upsert(
                        path,
                        fingerprint=local_state.fingerprint,
                        size=local_state.size,
                        mtime=local_state.mtime,
                        remote_id=new_id,
                        revision=None,
                        sync_state=SyncState.CONFLICT,
                    ),
                ]

            case ConflictAction.RESTORE_REMOTE:
                assert remote.remote_id is not None
                data = await self._download(remote.remote_id)
                state, _ = await self._write_remote_content(path, data, None)
                report.conflicts[path] = path
                report.checksums[path] = state.fingerprint
                return [
                    IndexMutation.upsert(
                        path,
                        fingerprint=state.fingerprint,
                        size=state.size,
                        mtime=state.mtime,
                        remote_id=remote.remote_id,
                        revision=remote.revision,
                        sync_state=SyncState.CONFLICT,
                    )
                ]

            case ConflictAction.REUPLOAD_LOCAL:
                state, new_id = await self._upload(path, None)
                report.conflicts[path] = path
                report.checksums[path] = state.fingerprint
                return [
                    IndexMutation.upsert(
                        path,
                        fingerprint=state.fingerprint,
                        size=state.size,
                        mtime=state.mtime,
                        remote_id=new_id,
                        revision=None,
                        sync_state=SyncState.CONFLICT,
                    )
                ]

    def _failed_conflict(
        self, conflict: Conflict, by_path: Mapping[str, IndexEntry]
    ) -> List[IndexMutation]:
        self._needs_scan = True
        if conflict.remote.kind == ChangeKind.DELETE:
            return [IndexMutation.remove(conflict.path)]
        # The retry keeps any local content as a conflict copy
        return self._pending_remote(
            dataclasses.replace(conflict.remote, kind=ChangeKind.UPDATE, old_path=None), by_path
        )

    async def _retry_pending_remote(self, touched: Set[str], report: SyncReport) -> None:
        """Retry downloads and local deletes that failed in earlier cycles."""
        entries = [
            e
            for e in await self.index.list_by_state(SyncState.PENDING_REMOTE)
            if e.path not in touched
        ]
        if not entries:
            return
        logger.info(f"Retrying {len(entries)} pending remote changes")

        async def retry_delete(entry: IndexEntry) -> List[IndexMutation]:
            current = await self._observe(entry.path)
            if current is not None:
                if current.fingerprint != entry.fingerprint:
                    logger.warning(f"Keeping {entry.path}: deleted remotely but changed locally")
                    self._needs_scan = True
                    report.conflicts[entry.path] = entry.path
                    return [IndexMutation.remove(entry.path)]
                await file_utils.delete_file(self.root / entry.path)
            report.record(ChangeOp(kind=ChangeKind.DELETE, origin=Origin.REMOTE, path=entry.path))
            return [IndexMutation.remove(entry.path)]

        async def retry(entry: IndexEntry) -> List[IndexMutation]:
            if entry.remote_id is None:
                return await retry_delete(entry)
            try:
                data = await self._download(entry.remote_id)
            except RemoteNotFoundError:
                logger.info(f"{entry.path} no longer exists remotely")
                return [IndexMutation.remove(entry.path)]
            state, aside = await self._write_remote_content(
                entry.path, data, entry.fingerprint or None
            )
            report.record(
                ChangeOp(
                    kind=ChangeKind.UPDATE if entry.fingerprint else ChangeKind.CREATE,
                    origin=Origin.REMOTE,
                    path=entry.path,
                    fingerprint=state.fingerprint,
                    size=state.size,
                    remote_id=entry.remote_id,
                )
            )
            if aside:
                report.conflicts[entry.path] = aside
            return [
                IndexMutation.upsert(
                    entry.path,
                    fingerprint=state.fingerprint,
                    size=state.size,
                    mtime=state.mtime,
                    sync_state=SyncState.CONFLICT if aside else SyncState.CLEAN,
                )
            ]

        results = await asyncio.gather(
            *(
                self._unit((e.path,), lambda e=e: retry(e), lambda: [], report)
                for e in entries
            )
        )
        await self.index.apply_and_advance_cursor([m for r in results for m in r], None)

    # pushing local changes

    async def _upload(
        self, rel_path: str, remote_id: Optional[str]
    ) -> Tuple[LocalFileState, str]:
        """Upload the file's current bytes; returns what was sent and its remote id."""
        path = self.root / rel_path
        # Stat before reading so a concurrent edit shows up as a newer mtime
        stat = file_utils.file_stat(path)
        if stat is None:
            raise LocalIOError(rel_path, "File no longer exists")
        data = await file_utils.read_file_bytes(path)
        folder_id = await self._folder_id_for(rel_path)
        try:
            new_id = await self._remote_call(
                lambda: self.remote.upload(rel_path, data, remote_id, folder_id)
            )
        except RemoteNotFoundError:
            if remote_id is None:
                raise
            logger.info(f"Remote copy of {rel_path} is gone, uploading it as a new file")
            new_id = await self._remote_call(
                lambda: self.remote.upload(rel_path, data, None, folder_id)
            )
        state = LocalFileState(
            rel_path, file_utils.compute_checksum_bytes(data), len(data), stat.mtime
        )
        return state, new_id

    async def _push_one(self, op: ChangeOp, report: SyncReport) -> List[IndexMutation]:
        """Push one local op; its acknowledgment commits its index update."""
        match op.kind:
            case ChangeKind.CREATE | ChangeKind.UPDATE:
                state, remote_id = await self._upload(op.path, op.remote_id)
                mutation = IndexMutation.upsert(
                    op.path,
                    fingerprint=state.fingerprint,
                    size=state.size,
                    mtime=state.mtime,
                    remote_id=remote_id,
                    sync_state=SyncState.CLEAN,
                )
                op = dataclasses.replace(op, fingerprint=state.fingerprint)

            case ChangeKind.MOVE:
                assert op.old_path is not None and op.remote_id is not None
                remote_id = op.remote_id
                try:
                    folder_id = await self._folder_id_for(op.path)
                    await self._remote_call(
                        lambda: self.remote.move_remote(remote_id, op.path, folder_id)
                    )
                    state = await self._observe(op.path)
                    if state is None:
                        raise LocalIOError(op.path, "File no longer exists")
                except RemoteNotFoundError:
                    logger.info(f"Remote copy of {op.old_path} is gone, uploading {op.path}")
                    state, remote_id = await self._upload(op.path, None)
                mutation = IndexMutation.move(
                    op.old_path,
                    op.path,
                    fingerprint=state.fingerprint,
                    size=state.size,
                    mtime=state.mtime,
                    remote_id=remote_id,
                    sync_state=SyncState.CLEAN,
                )

            case ChangeKind.DELETE:
                if op.remote_id is not None:
                    remote_id = op.remote_id
                    try:
                        await self._remote_call(lambda: self.remote.delete_remote(remote_id))
                    except RemoteNotFoundError:
                        logger.debug(f"{op.path} was already gone remotely")
                mutation = IndexMutation.remove(op.path)

        await self.index.apply_and_advance_cursor(mutation, None)
        report.record(op)
        return []

    def _pending_local(self, op: ChangeOp) -> List[IndexMutation]:
        """Index change recording a local op that could not be pushed yet."""
        match op.kind:
            case ChangeKind.CREATE:
                if op.remote_id is None:
                    return [
                        IndexMutation.upsert(
                            op.path,
                            fingerprint="",
                            size=0,
                            mtime=0.0,
                            remote_id=None,
                            sync_state=SyncState.PENDING_LOCAL,
                        )
                    ]
                return [IndexMutation.mark(op.path, SyncState.PENDING_LOCAL)]
            case ChangeKind.UPDATE | ChangeKind.DELETE:
                return [IndexMutation.mark(op.path, SyncState.PENDING_LOCAL)]
            case ChangeKind.MOVE:
                assert op.old_path is not None
                return [IndexMutation.mark(op.old_path, SyncState.PENDING_LOCAL)]

    async def _push(self, ops: List[ChangeOp], report: SyncReport) -> int:
        """Push local ops through the worker pool. Returns how many were acknowledged."""
        pushed_before = len(report.ops)
        for group in self._ordered(ops):
            self._check_stop()
            results = await asyncio.gather(
                *(
                    self._unit(
                        op.paths,
                        lambda op=op: self._push_one(op, report),
                        lambda op=op: self._pending_local(op),
                        report,
                    )
                    for op in group
                )
            )
            failed = [m for result in results for m in result]
            if failed:
                await self.index.apply_and_advance_cursor(failed, None)
        self._check_stop()
        return len(report.ops) - pushed_before

    async def _pull_echoes(self) -> None:
        """
        Pull once more after pushing so our own changes do not come back as
        remote work. Pages holding only echoes advance the cursor; the first
        page with a real remote change is left for the next cycle.
        """
        cursor = await self.index.get_cursor()
        entries = await self.index.list_all()
        by_path = {e.path: e for e in entries}
        by_remote_id = {e.remote_id: e for e in entries if e.remote_id}

        while True:
            self._check_stop()
            position = cursor
            changes, new_cursor = await self._remote_call(
                lambda: self.remote.list_changes(position)
            )
            if new_cursor <= cursor:
                break
            final = coalesce_remote_changes([changes])
            real = [
                change
                for _, change in final.values()
                if (
                    change.is_folder
                    and change.action != "delete"
                    and change.path
                    and not (self.root / change.path).is_dir()
                )
                or (
                    not change.is_folder
                    and self.delta.compute_remote(change, by_path, by_remote_id) is not None
                )
            ]
            if real:
                logger.debug(f"{len(real)} remote changes arrived while pushing, syncing again")
                self.request_sync()
                break
            await self.index.set_cursor(new_cursor)
            self.state.cursor = new_cursor
            cursor = new_cursor
            if not changes:
                break

    async def _refresh_counts(self) -> None:
        entries = await self.index.list_all()
        self.state.synced_files = sum(1 for e in entries if e.sync_state == SyncState.CLEAN)
        self.state.pending_files = sum(
            1
            for e in entries
            if e.sync_state in (SyncState.PENDING_LOCAL, SyncState.PENDING_REMOTE)
        )
        self.state.conflict_files = sum(1 for e in entries if e.sync_state == SyncState.CONFLICT)
        self.state.cursor = await self.index.get_cursor()
