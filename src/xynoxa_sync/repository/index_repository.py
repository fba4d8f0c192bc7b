"""Repository for a group folder's index partition and cursor."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional, Sequence

from loguru import logger
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import DatabaseError, MultipleResultsFound
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xynoxa_sync import db
from xynoxa_sync.models import Cursor, IndexEntry, RemoteFolder, SyncState
from xynoxa_sync.repository.repository import Repository
from xynoxa_sync.services.exceptions import IndexCorruptionError


@dataclass(frozen=True)
class IndexMutation:
    """One index change to commit, optionally together with a cursor advance."""

    kind: str  # upsert, remove, move, mark
    path: str
    old_path: Optional[str] = None
    data: dict = field(default_factory=dict)

    @classmethod
    def upsert(cls, path: str, **data) -> "IndexMutation":
        return cls(kind="upsert", path=path, data=data)

    @classmethod
    def remove(cls, path: str) -> "IndexMutation":
        return cls(kind="remove", path=path)

    @classmethod
    def move(cls, old_path: str, new_path: str, **data) -> "IndexMutation":
        return cls(kind="move", path=new_path, old_path=old_path, data=data)

    @classmethod
    def mark(cls, path: str, state: SyncState) -> "IndexMutation":
        """Retag an existing entry; a missing entry is left alone."""
        return cls(kind="mark", path=path, data={"sync_state": state})


class IndexRepository(Repository[IndexEntry]):
    """
    Index partition of one group folder.

    Reads open their own short-lived session and never wait on writers.
    Writes go through a single exclusive section per folder so an index
    mutation and its cursor advance always commit as one transaction.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], group_folder_id: int):
        super().__init__(session_maker, IndexEntry)
        self.group_folder_id = group_folder_id
        self.write_lock = asyncio.Lock()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with db.scoped_session(self.session_maker) as session:
                yield session
        except (DatabaseError, MultipleResultsFound) as e:
            logger.error(f"Index for group folder {self.group_folder_id} is unusable: {e}")
            raise IndexCorruptionError(str(e)) from e

    def _select(self):
        return select(IndexEntry).where(IndexEntry.group_folder_id == self.group_folder_id)

    async def lookup(self, path: str) -> Optional[IndexEntry]:
        async with self._session() as session:
            result = await session.execute(self._select().where(IndexEntry.path == path))
            return result.scalars().one_or_none()

    async def lookup_by_remote_id(self, remote_id: str) -> Optional[IndexEntry]:
        async with self._session() as session:
            result = await session.execute(
                self._select().where(IndexEntry.remote_id == remote_id)
            )
            return result.scalars().one_or_none()

    async def list_all(self) -> Sequence[IndexEntry]:
        """All entries of this folder ordered by path."""
        async with self._session() as session:
            result = await session.execute(self._select().order_by(IndexEntry.path))
            return result.scalars().all()

    async def list_by_state(self, state: SyncState) -> Sequence[IndexEntry]:
        async with self._session() as session:
            result = await session.execute(
                self._select().where(IndexEntry.sync_state == state).order_by(IndexEntry.path)
            )
            return result.scalars().all()

    async def get_cursor(self) -> int:
        async with self._session() as session:
            cursor = await session.get(Cursor, self.group_folder_id)
            return cursor.position if cursor else 0

    async def upsert(self, path: str, **data) -> None:
        await self.apply_and_advance_cursor(IndexMutation.upsert(path, **data), None)

    async def remove(self, path: str) -> None:
        await self.apply_and_advance_cursor(IndexMutation.remove(path), None)

    async def mark_state(self, path: str, state: SyncState) -> None:
        await self.apply_and_advance_cursor(IndexMutation.mark(path, state), None)

    async def set_cursor(self, position: int) -> None:
        await self.apply_and_advance_cursor(None, position)

    async def apply_and_advance_cursor(
        self,
        mutation: IndexMutation | Sequence[IndexMutation] | None,
        new_cursor: Optional[int],
    ) -> None:
        """Commit index mutation(s) and the cursor advance in one transaction.

        Either everything is durable afterwards or nothing is. The cursor
        never moves backwards; a lower ``new_cursor`` is ignored.
        """
        if mutation is None:
            mutations: Sequence[IndexMutation] = []
        elif isinstance(mutation, IndexMutation):
            mutations = [mutation]
        else:
            mutations = mutation

        async with self.write_lock:
            async with self._session() as session:
                for m in mutations:
                    await self._apply(session, m)
                if new_cursor is not None:
                    await self._advance_cursor(session, new_cursor)

    async def clear(self) -> None:
        """Drop every entry, folder id and the cursor of this folder."""
        async with self.write_lock:
            async with self._session() as session:
                await session.execute(
                    delete(IndexEntry).where(IndexEntry.group_folder_id == self.group_folder_id)
                )
                await session.execute(
                    delete(Cursor).where(Cursor.group_folder_id == self.group_folder_id)
                )
                await session.execute(
                    delete(RemoteFolder).where(
                        RemoteFolder.group_folder_id == self.group_folder_id
                    )
                )
        logger.info(f"Cleared index for group folder {self.group_folder_id}")

    async def folder_ids(self) -> Dict[str, str]:
        """Directory path -> remote folder id for this group folder."""
        async with self._session() as session:
            result = await session.execute(
                select(RemoteFolder).where(RemoteFolder.group_folder_id == self.group_folder_id)
            )
            return {f.path: f.remote_id for f in result.scalars().all()}

    async def record_folder(self, path: str, remote_id: str) -> None:
        """Remember the remote id of a directory.

        When the id was known under another path the directory moved, and
        the ids recorded below the old path move along with it.
        """
        async with self.write_lock:
            async with self._session() as session:
                result = await session.execute(
                    select(RemoteFolder).where(
                        RemoteFolder.group_folder_id == self.group_folder_id,
                        or_(RemoteFolder.path == path, RemoteFolder.remote_id == remote_id),
                    )
                )
                old_path = None
                for row in result.scalars().all():
                    if row.remote_id == remote_id and row.path != path:
                        old_path = row.path
                    await session.delete(row)
                await session.flush()

                if old_path is not None:
                    below = await session.execute(
                        select(RemoteFolder).where(
                            RemoteFolder.group_folder_id == self.group_folder_id,
                            RemoteFolder.path.startswith(f"{old_path}/", autoescape=True),
                        )
                    )
                    for row in below.scalars().all():
                        row.path = path + row.path[len(old_path) :]

                session.add(
                    RemoteFolder(
                        group_folder_id=self.group_folder_id, path=path, remote_id=remote_id
                    )
                )

    async def forget_folder(self, path: str) -> None:
        """Drop the remote id of a directory and of everything below it."""
        async with self.write_lock:
            async with self._session() as session:
                await session.execute(
                    delete(RemoteFolder).where(
                        RemoteFolder.group_folder_id == self.group_folder_id,
                        or_(
                            RemoteFolder.path == path,
                            RemoteFolder.path.startswith(f"{path}/", autoescape=True),
                        ),
                    )
                )

    async def _get(self, session: AsyncSession, path: str) -> Optional[IndexEntry]:
        result = await session.execute(self._select().where(IndexEntry.path == path))
        return result.scalars().one_or_none()

    async def _apply(self, session: AsyncSession, mutation: IndexMutation) -> None:
        data = self.get_model_data(mutation.data)
        data.pop("group_folder_id", None)
        data.pop("path", None)

        match mutation.kind:
            case "upsert":
                entry = await self._get(session, mutation.path)
                if entry is None:
                    data.setdefault("sync_state", SyncState.CLEAN)
                    data.setdefault("fingerprint", "")
                    session.add(
                        IndexEntry(group_folder_id=self.group_folder_id, path=mutation.path, **data)
                    )
                else:
                    for key, value in data.items():
                        setattr(entry, key, value)
            case "remove":
                await session.execute(
                    delete(IndexEntry).where(
                        IndexEntry.group_folder_id == self.group_folder_id,
                        IndexEntry.path == mutation.path,
                    )
                )
            case "move":
                assert mutation.old_path is not None
                entry = await self._get(session, mutation.old_path)
                # Whatever sat at the destination is replaced
                await session.execute(
                    delete(IndexEntry).where(
                        IndexEntry.group_folder_id == self.group_folder_id,
                        IndexEntry.path == mutation.path,
                    )
                )
                await session.flush()
                if entry is None:
                    data.setdefault("sync_state", SyncState.CLEAN)
                    data.setdefault("fingerprint", "")
                    session.add(
                        IndexEntry(group_folder_id=self.group_folder_id, path=mutation.path, **data)
                    )
                else:
                    entry.path = mutation.path
                    for key, value in data.items():
                        setattr(entry, key, value)
            case "mark":
                entry = await self._get(session, mutation.path)
                if entry is not None:
                    entry.sync_state = mutation.data["sync_state"]
            case _:
                raise ValueError(f"Unknown index mutation: {mutation.kind}")
        await session.flush()

    async def _advance_cursor(self, session: AsyncSession, position: int) -> None:
        cursor = await session.get(Cursor, self.group_folder_id)
        if cursor is None:
            session.add(Cursor(group_folder_id=self.group_folder_id, position=position))
        elif position > cursor.position:
            cursor.position = position
        else:
            logger.debug(f"Ignoring cursor {position}, already at {cursor.position}")
