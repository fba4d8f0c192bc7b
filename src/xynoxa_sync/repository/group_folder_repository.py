"""Repository for group folder rows."""

from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xynoxa_sync import db
from xynoxa_sync.models import GroupFolder
from xynoxa_sync.repository.repository import Repository


class GroupFolderRepository(Repository[GroupFolder]):
    """Repository for GroupFolder model."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        super().__init__(session_maker, GroupFolder)

    async def get_by_local_root(self, local_root: str) -> Optional[GroupFolder]:
        query = select(GroupFolder).where(GroupFolder.local_root == local_root)
        return await self.find_one(query)

    async def find_enabled(self) -> Sequence[GroupFolder]:
        async with db.scoped_session(self.session_maker) as session:
            result = await session.execute(
                select(GroupFolder).where(GroupFolder.enabled.is_(True)).order_by(GroupFolder.id)
            )
            return result.scalars().all()

    async def set_enabled(self, folder_id: int, enabled: bool) -> Optional[GroupFolder]:
        return await self.update(folder_id, {"enabled": enabled})
