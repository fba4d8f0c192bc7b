"""Utilities for deciding which paths under a sync root are never synchronized."""

import fnmatch
from pathlib import Path
from typing import Iterable, Set

from xynoxa_sync.utils.file_utils import TEMP_SUFFIX

# Directories and files that never leave the machine
DEFAULT_IGNORE_PATTERNS = {
    ".git",
    "node_modules",
    ".xynoxa.db",
    ".xynoxa.db-wal",
    ".xynoxa.db-shm",
    f"*{TEMP_SUFFIX}",
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    "~$*",
}


def load_ignore_patterns(base_path: Path, extra: Iterable[str] = ()) -> Set[str]:
    """Load patterns from a ``.xynoxaignore`` file plus the defaults.

    Args:
        base_path: The sync root to search for the ignore file
        extra: Additional patterns from configuration

    Returns:
        Set of patterns to ignore
    """
    patterns = set(DEFAULT_IGNORE_PATTERNS)
    patterns.update(extra)

    ignore_file = base_path / ".xynoxaignore"
    if ignore_file.exists():
        with ignore_file.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                # Skip empty lines and comments
                if line and not line.startswith("#"):
                    patterns.add(line)

    return patterns


def should_ignore_path(file_path: Path, base_path: Path, ignore_patterns: Set[str]) -> bool:
    """Check if a path should be ignored.

    Args:
        file_path: The file path to check
        base_path: The sync root for relative path calculation
        ignore_patterns: Set of patterns to match against

    Returns:
        True if the path should be ignored, False otherwise
    """
    try:
        relative_path = file_path.relative_to(base_path)
    except ValueError:
        # Outside the root
        return True

    if not relative_path.parts:
        return True
    relative_posix = relative_path.as_posix()

    for pattern in ignore_patterns:
        # Root-relative pattern
        if pattern.startswith("/"):
            root_pattern = pattern[1:].rstrip("/")
            if relative_path.parts[0] == root_pattern or fnmatch.fnmatch(
                relative_posix, root_pattern
            ):
                return True
            continue

        # Directory pattern matches any path component
        if pattern.endswith("/"):
            if pattern[:-1] in relative_path.parts:
                return True
            continue

        # Direct name match (e.g., ".git", "node_modules")
        if pattern in relative_path.parts:
            return True

        # Glob against the name of each component and the full path
        if fnmatch.fnmatch(relative_posix, pattern) or any(
            fnmatch.fnmatch(part, pattern) for part in relative_path.parts
        ):
            return True

    return False
