"""Service for observing the local tree and comparing it with the index."""

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from loguru import logger

from xynoxa_sync.ignore_utils import should_ignore_path
from xynoxa_sync.models import IndexEntry
from xynoxa_sync.services.exceptions import LocalIOError
from xynoxa_sync.sync.utils import LocalFileState
from xynoxa_sync.utils.file_utils import DEFAULT_CHUNK_SIZE, compute_checksum, file_stat

# path -> current state on disk, None when the path no longer exists
Observations = Dict[str, Optional[LocalFileState]]


@dataclass
class ScanResult:
    """Result of scanning a directory."""

    # relative path -> state
    files: Dict[str, LocalFileState] = field(default_factory=dict)
    # relative path -> error message
    errors: Dict[str, str] = field(default_factory=dict)
    hashed: int = 0


class FileChangeScanner:
    """
    Observes files under a group folder root.

    Fingerprints are only recomputed when size or mtime differ from the
    index, unless a forced scan is requested.
    """

    def __init__(
        self,
        root: Path,
        ignore_patterns: Set[str],
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.root = root
        self.ignore_patterns = ignore_patterns
        self.chunk_size = chunk_size

    def relative_path(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def is_ignored(self, path: Path) -> bool:
        return should_ignore_path(path, self.root, self.ignore_patterns)

    def _walk(self) -> List[Path]:
        found = []
        for dirpath, dirnames, filenames in os.walk(self.root):
            current = Path(dirpath)
            # Prune ignored directories so we never descend into them
            dirnames[:] = [d for d in dirnames if not self.is_ignored(current / d)]
            for name in filenames:
                path = current / name
                if not self.is_ignored(path):
                    found.append(path)
        return found

    async def observe(
        self, path: Path, entry: Optional[IndexEntry], force: bool = False
    ) -> Optional[LocalFileState]:
        """Current state of one file, or None if it is not a regular file."""
        stat = file_stat(path)
        if stat is None:
            return None

        rel_path = self.relative_path(path)
        if (
            not force
            and entry is not None
            and entry.size == stat.size
            and entry.mtime == stat.mtime
        ):
            return LocalFileState(rel_path, entry.fingerprint, stat.size, stat.mtime)

        fingerprint = await compute_checksum(path, self.chunk_size)
        return LocalFileState(rel_path, fingerprint, stat.size, stat.mtime)

    async def scan_directory(
        self, entries: Mapping[str, IndexEntry], force: bool = False
    ) -> ScanResult:
        """
        Walk the root and fingerprint every file.

        Args:
            entries: Index entries keyed by path, used to skip unchanged files
            force: Hash every file regardless of size and mtime

        Returns:
            ScanResult containing found files and any errors
        """
        logger.debug(f"Scanning directory: {self.root}")
        result = ScanResult()

        if not self.root.exists():
            logger.debug(f"Directory does not exist: {self.root}")
            return result

        for path in await asyncio.to_thread(self._walk):
            rel_path = self.relative_path(path)
            try:
                state = await self.observe(path, entries.get(rel_path), force=force)
            except LocalIOError as e:
                result.errors[rel_path] = str(e)
                logger.error(f"Failed to read {rel_path}: {e}")
                continue
            if state is None:
                # Vanished between walk and stat
                continue
            if entries.get(rel_path) is None or state.fingerprint != entries[rel_path].fingerprint:
                result.hashed += 1
            result.files[rel_path] = state

        logger.debug(f"Found {len(result.files)} files")
        if result.errors:
            logger.warning(f"Encountered {len(result.errors)} errors while scanning")

        return result

    async def find_changes(
        self, entries: Sequence[IndexEntry], force: bool = False
    ) -> tuple[Observations, Dict[str, str]]:
        """
        Full reconciliation scan: observations for every file on disk plus
        every indexed path that is now missing.

        Returns:
            (observations, per-path read errors)
        """
        by_path = {e.path: e for e in entries}
        scan_result = await self.scan_directory(by_path, force=force)

        observations: Observations = dict(scan_result.files)
        for path in by_path:
            # Unreadable files are not treated as deleted
            if path not in observations and path not in scan_result.errors:
                observations[path] = None

        logger.debug(
            f"Reconciliation scan: {len(scan_result.files)} on disk, "
            f"{len(by_path)} indexed, {len(scan_result.errors)} errors"
        )
        return observations, scan_result.errors

    async def observe_paths(
        self, paths: Iterable[str], entries: Mapping[str, IndexEntry]
    ) -> tuple[Observations, Dict[str, str]]:
        """Observations for just the given relative paths (a settled batch).

        A settled path that turns out to be a directory expands to the files
        below it and to indexed paths underneath that vanished.
        """
        observations: Observations = {}
        errors: Dict[str, str] = {}

        for rel_path in sorted(set(paths)):
            path = self.root / rel_path
            if self.is_ignored(path):
                continue
            if path.is_dir():
                prefix = f"{rel_path}/"
                for child in await asyncio.to_thread(self._walk_below, path):
                    child_rel = self.relative_path(child)
                    await self._observe_into(child, entries.get(child_rel), observations, errors)
                for indexed in entries:
                    if indexed.startswith(prefix) and not (self.root / indexed).exists():
                        observations[indexed] = None
                continue
            if not path.exists():
                prefix = f"{rel_path}/"
                observations[rel_path] = None
                # A removed directory takes its indexed children with it
                for indexed in entries:
                    if indexed.startswith(prefix):
                        observations[indexed] = None
                continue
            await self._observe_into(path, entries.get(rel_path), observations, errors)

        return observations, errors

    def _walk_below(self, directory: Path) -> List[Path]:
        return [
            p
            for p in directory.rglob("*")
            if p.is_file() and not self.is_ignored(p)
        ]

    async def _observe_into(
        self,
        path: Path,
        entry: Optional[IndexEntry],
        observations: Observations,
        errors: Dict[str, str],
    ) -> None:
        rel_path = self.relative_path(path)
        try:
            observations[rel_path] = await self.observe(path, entry)
        except LocalIOError as e:
            errors[rel_path] = str(e)
            logger.error(f"Failed to read {rel_path}: {e}")
