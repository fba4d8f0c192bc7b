"""Declarative base and the schema version row of the index database."""
from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Bump whenever a table changes shape; a mismatch rebuilds the index
SCHEMA_VERSION = "5"


class Base(AsyncAttrs, DeclarativeBase):
    pass


class SchemaVersion(Base):
    """Version the index database was created with. Holds a single row."""

    __tablename__ = "schema_version"

    version: Mapped[str] = mapped_column(String, primary_key=True)
    stamped_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now)

    def __repr__(self) -> str:
        return f"SchemaVersion(version='{self.version}', stamped_at={self.stamped_at})"
