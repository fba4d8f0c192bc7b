"""Utilities for file operations."""

import asyncio
import hashlib
import os
import socket
import stat
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Optional

from loguru import logger

from xynoxa_sync.services.exceptions import LocalIOError

DEFAULT_CHUNK_SIZE = 1024 * 1024
TEMP_SUFFIX = ".xynoxa-part"


@dataclass(frozen=True)
class FileStat:
    """Size and modification time of a file on disk."""

    size: int
    mtime: float


def _hash_file(path: Path, chunk_size: int) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            digest.update(chunk)
    return digest.hexdigest()


def compute_checksum_bytes(data: bytes) -> str:
    """SHA-256 hex digest of in-memory content."""
    return hashlib.sha256(data).hexdigest()


async def compute_checksum(path: Path, chunk_size: int = DEFAULT_CHUNK_SIZE) -> str:
    """
    Compute SHA-256 checksum of a file's bytes.

    The file is read in chunks on a worker thread so large files never block
    the event loop on a single read.

    Args:
        path: File to hash
        chunk_size: Bytes read per step

    Returns:
        SHA-256 hex digest

    Raises:
        LocalIOError: If the file cannot be read
    """
    try:
        return await asyncio.to_thread(_hash_file, path, chunk_size)
    except OSError as e:
        logger.error(f"Failed to compute checksum for {path}: {e}")
        raise LocalIOError(str(path), f"Failed to compute checksum: {e}") from e


def file_stat(path: Path) -> Optional[FileStat]:
    """Return size and mtime, or None if the path is not a regular file."""
    try:
        st = path.stat()
    except (FileNotFoundError, NotADirectoryError):
        # A parent that is a regular file means there is no file here either
        return None
    except OSError as e:
        raise LocalIOError(str(path), f"Failed to stat file: {e}") from e
    if not stat.S_ISREG(st.st_mode):
        return None
    return FileStat(size=st.st_size, mtime=st.st_mtime)


def temp_path_for(path: Path) -> Path:
    return path.with_name(f".{path.name}{TEMP_SUFFIX}")


async def write_file_atomic(path: Path, content: bytes) -> None:
    """
    Write file with atomic operation using temporary file.

    Args:
        path: Target file path
        content: Content to write

    Raises:
        LocalIOError: If write operation fails
    """
    temp_path = temp_path_for(path)

    def _write() -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with temp_path.open("wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        temp_path.replace(path)

    try:
        await asyncio.to_thread(_write)
    except OSError as e:
        with suppress(OSError):
            temp_path.unlink(missing_ok=True)
        logger.error(f"Failed to write file: {path}: {e}")
        raise LocalIOError(str(path), f"Failed to write file: {e}") from e


async def read_file_bytes(path: Path) -> bytes:
    try:
        return await asyncio.to_thread(path.read_bytes)
    except OSError as e:
        raise LocalIOError(str(path), f"Failed to read file: {e}") from e


async def delete_file(path: Path) -> None:
    """Delete a file, tolerating one that is already gone."""
    try:
        await asyncio.to_thread(path.unlink, True)
    except OSError as e:
        raise LocalIOError(str(path), f"Failed to delete file: {e}") from e


async def move_file(source: Path, dest: Path) -> None:
    def _move() -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        source.replace(dest)

    try:
        await asyncio.to_thread(_move)
    except OSError as e:
        raise LocalIOError(str(source), f"Failed to move file to {dest}: {e}") from e


async def ensure_directory(path: Path) -> None:
    """
    Ensure directory exists, creating if necessary.

    Raises:
        LocalIOError: If directory creation fails
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Failed to create directory: {path}: {e}")
        raise LocalIOError(str(path), f"Failed to create directory: {e}") from e


def conflict_path(
    path: str, when: Optional[datetime] = None, machine_name: Optional[str] = None
) -> str:
    """Sibling path for a conflicting copy.

    Format: ``name.conflict-YYYYMMDD-HHMMSS-<machine>.ext``
    """
    when = when or datetime.now()
    machine_name = machine_name or socket.gethostname()
    p = PurePosixPath(path)
    suffix = "".join(p.suffixes[-1:])
    stem = p.name[: len(p.name) - len(suffix)] if suffix else p.name
    name = f"{stem}.conflict-{when.strftime('%Y%m%d-%H%M%S')}-{machine_name}{suffix}"
    return str(p.with_name(name))


def remove_temp_files(root: Path) -> int:
    """Remove partial downloads left behind by an interrupted write."""
    removed = 0
    for temp in root.rglob(f"*{TEMP_SUFFIX}"):
        try:
            temp.unlink()
            removed += 1
        except OSError as e:
            logger.warning(f"Failed to remove stale temp file {temp}: {e}")
    if removed:
        logger.info(f"Removed {removed} stale temp files under {root}")
    return removed
