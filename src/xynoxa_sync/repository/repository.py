"""Base repository implementation."""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar

from sqlalchemy import Column, Select, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from xynoxa_sync import db
from xynoxa_sync.models import Base

T = TypeVar("T", bound=Base)


class Repository(Generic[T]):
    """Base repository implementation with generic CRUD operations."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], Model: Type[T]):
        self.session_maker = session_maker
        self.Model = Model
        self.primary_key: Column[Any] = inspect(self.Model).mapper.primary_key[0]
        self.valid_columns = [column.key for column in inspect(self.Model).columns]

    def get_model_data(self, entity_data: dict) -> dict:
        return {k: v for k, v in entity_data.items() if k in self.valid_columns}

    async def find_all(self, skip: int = 0, limit: Optional[int] = None) -> Sequence[T]:
        """Fetch records from the database with pagination."""
        query = select(self.Model).offset(skip)
        if limit:
            query = query.limit(limit)
        async with db.scoped_session(self.session_maker) as session:
            result = await session.execute(query)
            return result.scalars().all()

    async def create(self, data: dict) -> T:
        """Create a new record from the provided data."""
        async with db.scoped_session(self.session_maker) as session:
            model = self.Model(**self.get_model_data(data))
            session.add(model)
            await session.flush()
            await session.refresh(model)
            return model

    async def update(self, entity_id: Any, entity_data: dict) -> Optional[T]:
        """Update an entity with the given data."""
        async with db.scoped_session(self.session_maker) as session:
            entity = await session.get(self.Model, entity_id)
            if entity is None:
                return None
            for key, value in self.get_model_data(entity_data).items():
                setattr(entity, key, value)
            await session.flush()
            await session.refresh(entity)
            return entity

    async def find_one(self, query: Select[tuple[T]]) -> Optional[T]:
        """Execute a query and retrieve a single record."""
        async with db.scoped_session(self.session_maker) as session:
            result = await session.execute(query)
            return result.scalars().one_or_none()
