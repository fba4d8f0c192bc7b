"""Commands exposed to the presentation layer."""

from contextlib import AsyncExitStack
from pathlib import Path
from typing import Callable, Dict, List, Optional

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xynoxa_sync import db
from xynoxa_sync.config import AppConfig, ConfigManager, SyncConfig
from xynoxa_sync.db import DatabaseType
from xynoxa_sync.models import GroupFolder, IndexEntry
from xynoxa_sync.remote import HttpRemoteClient, RemoteClient
from xynoxa_sync.repository import IndexRepository
from xynoxa_sync.services.db_version_service import DbVersionService
from xynoxa_sync.services.exceptions import AuthError, ConfigError
from xynoxa_sync.services.secret_vault import AUTH_TOKEN_KEY, KeyringVault, SecretVault
from xynoxa_sync.sync.group_folder_manager import GroupFolderManager
from xynoxa_sync.sync.sync_service import FolderSyncState, ReportListener
from xynoxa_sync.sync.utils import SyncReport

RemoteClientFactory = Callable[[str, str], RemoteClient]

TOKEN_PREFIXES = ("xyn-", "syn-")
DEFAULT_FOLDER_NAME = "Xynoxa"


def validate_token_format(token: str) -> str:
    """Strip the token and check its prefix; legacy ``syn-`` tokens are still accepted."""
    token = token.strip()
    if not token:
        raise AuthError("Token must not be empty")
    if not token.startswith(TOKEN_PREFIXES):
        raise AuthError("Invalid token format: expected a 'xyn-' token")
    return token


class SyncApp:
    """
    Control surface of the sync engine.

    Holds the configuration, the secret vault and, once sync has been
    started, the database and the group folder manager.
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        vault: Optional[SecretVault] = None,
        remote_factory: Optional[RemoteClientFactory] = None,
        db_type: DatabaseType = DatabaseType.FILESYSTEM,
        on_report: Optional[ReportListener] = None,
    ):
        self.config = config or SyncConfig()
        self.config_manager = ConfigManager(self.config)
        self.vault = vault or KeyringVault()
        self.remote_factory = remote_factory or HttpRemoteClient
        self.db_type = db_type
        self.on_report = on_report

        self.session_maker: Optional[async_sessionmaker[AsyncSession]] = None
        self.manager: Optional[GroupFolderManager] = None
        self.remote: Optional[RemoteClient] = None
        self._exit_stack: Optional[AsyncExitStack] = None
        self._rebuilt = False
        self._started = False

    @property
    def is_running(self) -> bool:
        return self.manager is not None and any(
            o.is_running for o in self.manager.orchestrators.values()
        )

    # configuration

    def get_config(self) -> AppConfig:
        return self.config_manager.config

    def save_config(
        self,
        url: Optional[str] = None,
        path: Optional[str] = None,
        completed: Optional[bool] = None,
    ) -> None:
        self.config_manager.update(url=url, path=path, completed=completed)

    # authentication

    async def login(self, token: str) -> None:
        """Check the token against the server and store it in the vault."""
        token = validate_token_format(token)
        server_url = self.get_config().server_url
        if not server_url:
            raise ConfigError("Server URL is not configured")

        client = self.remote_factory(server_url, token)
        try:
            await client.validate_token()
        finally:
            await client.close()

        self.vault.store_secret(AUTH_TOKEN_KEY, token)
        logger.info("Login successful, token stored")
        if self.manager is not None:
            if isinstance(self.remote, HttpRemoteClient):
                self.remote.token = token
            self.manager.resume_all()
            if self._started:
                # Loops of halted folders exited, start them again
                await self.manager.start_all(watch=self.manager.watch)

    async def check_auth(self) -> bool:
        """True when a token is stored and no folder is waiting for re-authentication."""
        if self.vault.load_secret(AUTH_TOKEN_KEY) is None:
            return False
        return self.manager is None or not self.manager.requires_reauth

    async def logout(self) -> None:
        """Forget the token and halt every orchestrator."""
        self.vault.delete_secret(AUTH_TOKEN_KEY)
        await self.shutdown()
        logger.info("Logged out")

    # sync lifecycle

    async def open(self, token: Optional[str] = None) -> GroupFolderManager:
        """Open the index database and load the group folders. Idempotent."""
        if self.manager is not None:
            return self.manager

        token = token or self.vault.load_secret(AUTH_TOKEN_KEY)
        if not token:
            raise AuthError("Not logged in")
        app_config = self.get_config()
        if not app_config.server_url:
            raise ConfigError("Server URL is not configured")

        stack = AsyncExitStack()
        try:
            _, session_maker = await stack.enter_async_context(
                db.engine_session_factory(self.config.database_path, db_type=self.db_type)
            )
            version_service = DbVersionService(
                session_maker, self.config.database_path, self.db_type
            )
            self._rebuilt = await version_service.check_db()
            await version_service.cleanup_backups()

            self.remote = self.remote_factory(app_config.server_url, token)
            stack.push_async_callback(self.remote.close)
            remote = self.remote
            manager = GroupFolderManager(
                session_maker,
                self.config,
                remote_factory=lambda folder: remote,
                on_report=self.on_report,
            )
            if app_config.setup_completed and app_config.sync_root is not None:
                await manager.add_folder(DEFAULT_FOLDER_NAME, app_config.sync_root)
            await manager.load()
        except BaseException:
            await stack.aclose()
            self.remote = None
            raise

        self._exit_stack = stack
        self.session_maker = session_maker
        self.manager = manager
        if self._rebuilt:
            manager.request_full_scan()
        return manager

    async def start_sync(self, token: Optional[str] = None, watch: bool = True) -> None:
        """Start every enabled group folder. Does nothing if sync is already running."""
        if self.is_running:
            logger.info("Sync already running")
            return
        manager = await self.open(token)
        if not manager.orchestrators:
            raise ConfigError("No group folders configured, complete setup first")
        await manager.start_all(watch=watch)
        self._started = True
        logger.info(f"Sync started for {len(manager.orchestrators)} group folders")

    async def sync_once(self, full_scan: bool = False) -> Dict[int, SyncReport]:
        """One cycle for every enabled folder without starting the loops."""
        manager = await self.open()
        return await manager.sync_all(full_scan=full_scan or self._rebuilt)

    async def shutdown(self) -> None:
        """Stop all orchestrators and release the database and network client."""
        if self.manager is not None:
            await self.manager.stop_all()
        if self._exit_stack is not None:
            await self._exit_stack.aclose()
        self._exit_stack = None
        self._started = False
        self.manager = None
        self.session_maker = None
        self.remote = None

    def states(self) -> List[FolderSyncState]:
        return self.manager.states() if self.manager is not None else []

    # group folders and files

    async def get_file_list(self, folder_id: Optional[int] = None) -> List[IndexEntry]:
        """Index entries of one folder, or of every enabled folder."""
        manager = await self.open()
        folder_ids = [folder_id] if folder_id is not None else list(manager.orchestrators)
        entries: List[IndexEntry] = []
        for fid in folder_ids:
            assert self.session_maker is not None
            entries.extend(await IndexRepository(self.session_maker, fid).list_all())
        return entries

    async def list_group_folders(self) -> List[GroupFolder]:
        manager = await self.open()
        return await manager.list_folders()

    async def add_group_folder(
        self,
        name: str,
        path: Path,
        remote_folder_id: Optional[str] = None,
    ) -> GroupFolder:
        manager = await self.open()
        folder = await manager.add_folder(name, path, remote_folder_id=remote_folder_id)
        if self.is_running:
            await manager.get(folder.id).start(watch=manager.watch)
        return folder

    async def disable_group_folder(self, folder_id: int) -> None:
        manager = await self.open()
        await manager.disable(folder_id)
