"""Tests for DbVersionService."""

import os
import time
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import select

from xynoxa_sync import db
from xynoxa_sync.models import SchemaVersion
from xynoxa_sync.repository import GroupFolderRepository, IndexRepository
from xynoxa_sync.services.db_version_service import DbVersionService


@pytest_asyncio.fixture
async def db_version_service(session_maker, sync_config) -> DbVersionService:
    return DbVersionService(session_maker, sync_config.database_path)


@pytest.mark.asyncio
async def test_check_db_stamps_new_db(db_version_service, session_maker):
    # engine_factory already stamped it; a second check is a no-op
    assert await db_version_service.check_db() is False

    async with db.scoped_session(session_maker) as session:
        assert await db.get_schema_version(session) == db.SCHEMA_VERSION
        row = (await session.execute(select(SchemaVersion))).scalars().one()
        assert row.stamped_at is not None


@pytest.mark.asyncio
async def test_check_db_rebuilds_on_version_mismatch(
    db_version_service, session_maker, index_repository
):
    await index_repository.upsert("a.txt", fingerprint="f", remote_id="r1")
    async with db.scoped_session(session_maker) as session:
        await db.set_schema_version(session, "0")

    assert await db_version_service.check_db() is True

    async with db.scoped_session(session_maker) as session:
        assert await db.get_schema_version(session) == db.SCHEMA_VERSION
    # The index is gone and must be rebuilt by a reconciliation scan
    assert await GroupFolderRepository(session_maker).find_all() == []
    assert await IndexRepository(session_maker, index_repository.group_folder_id).list_all() == []
    assert list(Path(db_version_service.db_path).parent.glob("*.backup"))


@pytest.mark.asyncio
async def test_create_backup(db_version_service):
    backup = await db_version_service.create_backup()

    assert backup is not None
    assert backup.exists()
    assert backup.name.startswith("index.")
    assert backup.suffix == ".backup"


@pytest.mark.asyncio
async def test_cleanup_backups_keeps_most_recent(db_version_service, sync_config):
    now = time.time()
    for i in range(7):
        backup = sync_config.config_dir / f"index.2025010{i}_000000.backup"
        backup.write_text("old")
        os.utime(backup, (now - 100 + i, now - 100 + i))

    await db_version_service.cleanup_backups(keep_count=5)

    remaining = sorted(p.name for p in sync_config.config_dir.glob("*.backup"))
    assert len(remaining) == 5
    assert "index.20250100_000000.backup" not in remaining
    assert "index.20250101_000000.backup" not in remaining
