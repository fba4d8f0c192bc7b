"""Service for managing database lifecycle and schema updates."""

import shutil
from datetime import datetime
from pathlib import Path
from typing import Optional

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xynoxa_sync import db
from xynoxa_sync.db import DatabaseType
from xynoxa_sync.models import SCHEMA_VERSION, GroupFolder


class DbVersionService:
    """Manages database lifecycle including backups and schema rebuilds."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        db_path: Path,
        db_type: DatabaseType = DatabaseType.FILESYSTEM,
    ):
        self.session_maker = session_maker
        self.db_path = Path(db_path)
        self.db_type = db_type

    async def create_backup(self) -> Optional[Path]:
        """Copy the existing database file aside.

        Returns:
            Optional[Path]: Path to backup file if created, None if no DB exists
        """
        if self.db_type == DatabaseType.MEMORY:
            return None

        if not self.db_path.exists():
            return None

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = self.db_path.with_suffix(f".{timestamp}.backup")

        try:
            shutil.copy2(self.db_path, backup_path)
            logger.info(f"Created database backup: {backup_path}")
            return backup_path
        except OSError as e:
            logger.error(f"Failed to create database backup: {e}")
            return None

    async def rebuild_db(self):
        """Drop and recreate every table, then stamp the current schema version."""
        logger.info("Rebuilding index database...")

        await self.create_backup()

        async with db.scoped_session(self.session_maker) as session:
            await db.drop_db(session)
            await db.init_db(session)
            await db.set_schema_version(session)

        logger.info(f"Database initialized with schema version {SCHEMA_VERSION}")

    async def check_db(self) -> bool:
        """Check database state and rebuild if needed.

        Returns:
            bool: True if the database was rebuilt and every folder needs a
            reconciliation scan, False if the existing index is usable
        """
        async with db.scoped_session(self.session_maker) as session:
            db_version = await db.get_schema_version(session)
            folder_count = (
                await session.execute(select(func.count()).select_from(GroupFolder))
            ).scalar() or 0

            if db_version is None and folder_count == 0:
                logger.info(f"New database, stamping schema version {SCHEMA_VERSION}")
                await db.set_schema_version(session)
                return False
            if db_version == SCHEMA_VERSION:
                logger.info(f"Database schema version {db_version} matches current version")
                return False

        logger.info(
            f"Schema version mismatch (DB: {db_version}, Current: {SCHEMA_VERSION}), rebuilding..."
        )
        await self.rebuild_db()
        return True

    async def cleanup_backups(self, keep_count: int = 5):
        """Clean up old database backups, keeping the N most recent."""

        if self.db_type == DatabaseType.MEMORY:
            return

        backups = sorted(
            self.db_path.parent.glob("*.backup"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )

        for backup in backups[keep_count:]:
            try:
                backup.unlink()
                logger.debug(f"Removed old backup: {backup}")
            except OSError as e:
                logger.error(f"Failed to remove backup {backup}: {e}")
