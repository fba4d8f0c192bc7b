"""Models tracking group folders, their index entries and remote cursors."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from xynoxa_sync.models.base import Base


class SyncState(str, Enum):
    """Sync-state tag of an index entry."""

    CLEAN = "clean"
    PENDING_LOCAL = "pending_local"
    PENDING_REMOTE = "pending_remote"
    CONFLICT = "conflict"


class GroupFolder(Base):
    """
    One independently synchronized local root.

    Disconnecting a folder disables it rather than deleting the row so its
    index partition and cursor survive a reconnect.
    """

    __tablename__ = "group_folder"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    local_root: Mapped[str] = mapped_column(String, unique=True)
    # Remote folder identity; None for the user's own root
    remote_folder_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    concurrency: Mapped[int] = mapped_column(Integer, default=4)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=text("CURRENT_TIMESTAMP"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=text("CURRENT_TIMESTAMP"), onupdate=text("CURRENT_TIMESTAMP")
    )

    def __repr__(self) -> str:
        return (
            f"GroupFolder(id={self.id}, name='{self.name}', local_root='{self.local_root}', "
            f"enabled={self.enabled})"
        )


class IndexEntry(Base):
    """
    Last-known-synced metadata for one path of a group folder.

    The index is the sole record of what we believe is in sync on both sides.
    """

    __tablename__ = "index_entry"
    __table_args__ = (
        UniqueConstraint("group_folder_id", "path", name="uix_index_entry_folder_path"),
        Index("ix_index_entry_remote_id", "group_folder_id", "remote_id"),
        Index("ix_index_entry_fingerprint", "group_folder_id", "fingerprint"),
        Index("ix_index_entry_sync_state", "group_folder_id", "sync_state"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_folder_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("group_folder.id", ondelete="CASCADE")
    )
    # POSIX-style path relative to the folder root
    path: Mapped[str] = mapped_column(String)
    fingerprint: Mapped[str] = mapped_column(String)
    size: Mapped[int] = mapped_column(BigInteger, default=0)
    mtime: Mapped[float] = mapped_column(Float, default=0.0)
    remote_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    revision: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    sync_state: Mapped[SyncState] = mapped_column(
        SQLEnum(SyncState, values_callable=lambda e: [m.value for m in e]),
        default=SyncState.CLEAN,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=text("CURRENT_TIMESTAMP"), onupdate=text("CURRENT_TIMESTAMP")
    )

    def __repr__(self) -> str:
        return (
            f"IndexEntry(path='{self.path}', fingerprint='{self.fingerprint[:8]}', "
            f"remote_id={self.remote_id!r}, sync_state={self.sync_state.value})"
        )


class Cursor(Base):
    """Last fully-applied remote revision of a group folder."""

    __tablename__ = "cursor"

    group_folder_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("group_folder.id", ondelete="CASCADE"), primary_key=True
    )
    position: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=text("CURRENT_TIMESTAMP"), onupdate=text("CURRENT_TIMESTAMP")
    )

    def __repr__(self) -> str:
        return f"Cursor(group_folder_id={self.group_folder_id}, position={self.position})"


class RemoteFolder(Base):
    """
    Remote identity of a directory under a group folder.

    Uploads and moves address their parent directory by this id, so it has
    to survive restarts just like the index.
    """

    __tablename__ = "remote_folder"
    __table_args__ = (
        UniqueConstraint("group_folder_id", "path", name="uix_remote_folder_folder_path"),
        Index("ix_remote_folder_remote_id", "group_folder_id", "remote_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    group_folder_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("group_folder.id", ondelete="CASCADE")
    )
    path: Mapped[str] = mapped_column(String)
    remote_id: Mapped[str] = mapped_column(String)

    def __repr__(self) -> str:
        return f"RemoteFolder(path='{self.path}', remote_id='{self.remote_id}')"
