"""Common test fixtures."""

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import AsyncGenerator, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from xynoxa_sync import db
from xynoxa_sync.config import SyncConfig
from xynoxa_sync.db import DatabaseType
from xynoxa_sync.models import GroupFolder
from xynoxa_sync.remote.client import RemoteChange, RemoteClient
from xynoxa_sync.repository import GroupFolderRepository, IndexRepository
from xynoxa_sync.services.db_version_service import DbVersionService
from xynoxa_sync.services.exceptions import AuthError, RemoteNotFoundError, TransientNetworkError
from xynoxa_sync.services.secret_vault import SecretVault
from xynoxa_sync.sync.conflict import ConflictResolver
from xynoxa_sync.sync.sync_service import SyncOrchestrator


@dataclass
class RemoteFile:
    remote_id: str
    path: str
    data: bytes
    folder_id: Optional[str] = None


class FakeRemote(RemoteClient):
    """
    In-process remote with a change feed.

    The cursor is the position in ``feed``. ``put``, ``remove`` and
    ``rename`` act like another device editing the remote side; the
    ``RemoteClient`` methods are what the engine calls.
    """

    def __init__(self, page_size: int = 100):
        self.page_size = page_size
        self.files: Dict[str, RemoteFile] = {}
        self.feed: List[RemoteChange] = []
        # Folder path -> folder id
        self.folders: Dict[str, str] = {}
        self.calls: List[Tuple[str, ...]] = []
        # (path, folder_id) of every upload
        self.uploads: List[Tuple[str, Optional[str]]] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.offline = False
        self.token_valid = True
        self._next_id = 1

    # failure injection

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        self.failures.setdefault(method, []).extend([error] * times)

    def _check(self, method: str, *args: str) -> None:
        self.calls.append((method, *args))
        if not self.token_valid:
            raise AuthError("Server rejected credentials (401)")
        if self.offline:
            raise TransientNetworkError(f"{method}: connection refused")
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def calls_to(self, method: str) -> List[Tuple[str, ...]]:
        return [c for c in self.calls if c[0] == method]

    # server side

    def _emit(self, action: str, f: RemoteFile) -> None:
        self.feed.append(
            RemoteChange(
                action=action,
                remote_id=f.remote_id,
                path=f.path,
                fingerprint=None if action == "delete" else hashlib.sha256(f.data).hexdigest(),
                size=len(f.data),
                revision=len(self.feed) + 1,
            )
        )

    def _new_id(self) -> str:
        remote_id = f"file-{self._next_id}"
        self._next_id += 1
        return remote_id

    def by_path(self, path: str) -> Optional[RemoteFile]:
        return next((f for f in self.files.values() if f.path == path), None)

    def tree(self) -> Dict[str, bytes]:
        return {f.path: f.data for f in self.files.values()}

    def _register_parents(self, path: str) -> Optional[str]:
        """Folders another device created along with a file."""
        folder_id = None
        parts = PurePosixPath(path).parent.parts
        for depth in range(1, len(parts) + 1):
            folder = "/".join(parts[:depth])
            if folder not in self.folders:
                self.folders[folder] = f"folder-{len(self.folders) + 1}"
            folder_id = self.folders[folder]
        return folder_id

    def put(self, path: str, data: bytes) -> str:
        existing = self.by_path(path)
        if existing is not None:
            existing.data = data
            self._emit("update", existing)
            return existing.remote_id
        f = RemoteFile(self._new_id(), path, data, self._register_parents(path))
        self.files[f.remote_id] = f
        self._emit("create", f)
        return f.remote_id

    def remove(self, path: str) -> None:
        f = self.by_path(path)
        assert f is not None
        del self.files[f.remote_id]
        self._emit("delete", f)

    def rename(self, old_path: str, new_path: str) -> None:
        f = self.by_path(old_path)
        assert f is not None
        f.path = new_path
        f.folder_id = self._register_parents(new_path)
        self._emit("move", f)

    # RemoteClient

    async def list_changes(self, cursor: int) -> Tuple[List[RemoteChange], int]:
        self._check("list_changes", str(cursor))
        page = self.feed[cursor : cursor + self.page_size]
        return page, cursor + len(page)

    async def upload(
        self,
        path: str,
        data: bytes,
        remote_id: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> str:
        self._check("upload", path)
        self.uploads.append((path, folder_id))
        if remote_id is not None:
            f = self.files.get(remote_id)
            if f is None:
                raise RemoteNotFoundError(f"{remote_id} not found")
            f.path = path
            f.data = data
            f.folder_id = folder_id
            self._emit("update", f)
            return remote_id
        occupant = self.by_path(path)
        if occupant is not None:
            del self.files[occupant.remote_id]
            self._emit("delete", occupant)
        f = RemoteFile(self._new_id(), path, data, folder_id)
        self.files[f.remote_id] = f
        self._emit("create", f)
        return f.remote_id

    async def download(self, remote_id: str) -> bytes:
        self._check("download", remote_id)
        f = self.files.get(remote_id)
        if f is None:
            raise RemoteNotFoundError(f"{remote_id} not found")
        return f.data

    async def delete_remote(self, remote_id: str) -> None:
        self._check("delete_remote", remote_id)
        f = self.files.pop(remote_id, None)
        if f is None:
            raise RemoteNotFoundError(f"{remote_id} not found")
        self._emit("delete", f)

    async def move_remote(
        self, remote_id: str, new_path: str, folder_id: Optional[str] = None
    ) -> None:
        self._check("move_remote", remote_id, new_path)
        f = self.files.get(remote_id)
        if f is None:
            raise RemoteNotFoundError(f"{remote_id} not found")
        f.path = new_path
        f.folder_id = folder_id
        self._emit("move", f)

    async def create_folder(self, path: str, parent_id: Optional[str]) -> str:
        self._check("create_folder", path)
        existing = self.folders.get(path)
        if existing is not None:
            return existing
        folder_id = f"folder-{len(self.folders) + 1}"
        self.folders[path] = folder_id
        self.feed.append(
            RemoteChange(
                action="create",
                remote_id=folder_id,
                path=path,
                revision=len(self.feed) + 1,
                is_folder=True,
            )
        )
        return folder_id

    def folder_of(self, path: str) -> Optional[str]:
        """Folder id the file at ``path`` was stored under."""
        f = self.by_path(path)
        assert f is not None
        return f.folder_id


class MemoryVault(SecretVault):
    def __init__(self):
        self.secrets: Dict[str, str] = {}

    def store_secret(self, key: str, value: str) -> None:
        self.secrets[key] = value

    def load_secret(self, key: str) -> Optional[str]:
        return self.secrets.get(key)

    def delete_secret(self, key: str) -> None:
        self.secrets.pop(key, None)


def local_tree(root: Path) -> Dict[str, bytes]:
    """Every file under root keyed by POSIX relative path."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes() for p in root.rglob("*") if p.is_file()
    }


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


@pytest.fixture
def config_home(tmp_path, monkeypatch) -> Path:
    # Patch HOME environment variable for the duration of the test
    monkeypatch.setenv("HOME", str(tmp_path))
    if os.name == "nt":
        monkeypatch.setenv("USERPROFILE", str(tmp_path))
    monkeypatch.setenv("XYNOXA_CONFIG_DIR", str(tmp_path / ".config" / "xynoxa"))
    return tmp_path


@pytest.fixture
def sync_config(config_home) -> SyncConfig:
    """Test configuration with short timings so cycles finish quickly."""
    return SyncConfig(
        env="test",
        config_dir=config_home / ".config" / "xynoxa",
        debounce_ms=50,
        poll_interval=0.2,
        max_retries=1,
        initial_backoff=0.01,
        max_backoff=0.05,
    )


@pytest_asyncio.fixture
async def engine_factory(
    sync_config,
) -> AsyncGenerator[tuple[AsyncEngine, async_sessionmaker[AsyncSession]], None]:
    """Engine and session factory on a database file in the test's tmp dir."""
    async with db.engine_session_factory(
        db_path=sync_config.database_path, db_type=DatabaseType.FILESYSTEM
    ) as (engine, session_maker):
        await DbVersionService(session_maker, sync_config.database_path).check_db()
        yield engine, session_maker


@pytest_asyncio.fixture
async def session_maker(engine_factory) -> async_sessionmaker[AsyncSession]:
    _, session_maker = engine_factory
    return session_maker


@pytest.fixture
def sync_root(config_home) -> Path:
    root = config_home / "Xynoxa"
    root.mkdir()
    return root


@pytest_asyncio.fixture
async def group_folder(session_maker, sync_root) -> GroupFolder:
    return await GroupFolderRepository(session_maker).create(
        {
            "name": "Xynoxa",
            "local_root": str(sync_root),
            "remote_folder_id": None,
            "enabled": True,
            "concurrency": 4,
        }
    )


@pytest_asyncio.fixture
async def index_repository(session_maker, group_folder) -> IndexRepository:
    return IndexRepository(session_maker, group_folder.id)


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def memory_vault() -> MemoryVault:
    return MemoryVault()


@pytest.fixture
def resolver() -> ConflictResolver:
    return ConflictResolver(machine_name="testhost")


@pytest_asyncio.fixture
async def orchestrator(
    group_folder, index_repository, fake_remote, sync_config, resolver
) -> AsyncGenerator[SyncOrchestrator, None]:
    orchestrator = SyncOrchestrator(
        folder=group_folder,
        index=index_repository,
        remote=fake_remote,
        config=sync_config,
        resolver=resolver,
    )
    yield orchestrator
    if orchestrator.is_running:
        await orchestrator.stop()
