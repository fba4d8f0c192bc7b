"""Types and utilities for file sync."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set


class ChangeKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    MOVE = "move"
    DELETE = "delete"


class Origin(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True)
class ChangeOp:
    """A typed unit of work produced by the delta computer.

    ``old_path`` is only set for moves. ``fingerprint`` is the content the
    path holds once the op is applied (None for deletes).
    """

    kind: ChangeKind
    origin: Origin
    path: str
    fingerprint: Optional[str] = None
    old_path: Optional[str] = None
    size: int = 0
    remote_id: Optional[str] = None
    revision: Optional[int] = None

    @property
    def paths(self) -> tuple[str, ...]:
        """Every path this op touches."""
        if self.old_path is not None:
            return (self.old_path, self.path)
        return (self.path,)

    def describe(self) -> str:
        match self.kind:
            case ChangeKind.MOVE:
                return f"{self.origin.value} move {self.old_path} -> {self.path}"
            case ChangeKind.CREATE | ChangeKind.UPDATE | ChangeKind.DELETE:
                return f"{self.origin.value} {self.kind.value} {self.path}"


@dataclass(frozen=True)
class LocalFileState:
    """What a path currently holds on disk."""

    path: str
    fingerprint: str
    size: int
    mtime: float


@dataclass(frozen=True)
class SettledEvent:
    """A debounced, stable filesystem change ready for delta computation."""

    path: str
    change: str  # added, modified, deleted
    raw_events: int = 1


@dataclass
class SettledBatch:
    """Settled events that became quiet together."""

    events: List[SettledEvent] = field(default_factory=list)
    overflow: bool = False

    @property
    def paths(self) -> Set[str]:
        return {e.path for e in self.events}

    def __len__(self) -> int:
        return len(self.events)


@dataclass
class SyncReport:
    """Report of what one sync cycle did.

    Attributes:
        new: Paths created (either side)
        modified: Paths whose content changed
        moves: old path -> new path
        deleted: Paths removed
        conflicts: original path -> conflict copy path
        errors: path -> error message for per-file failures
        checksums: Current fingerprints for touched paths
    """

    new: Set[str] = field(default_factory=set)
    modified: Set[str] = field(default_factory=set)
    moves: Dict[str, str] = field(default_factory=dict)
    deleted: Set[str] = field(default_factory=set)
    conflicts: Dict[str, str] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    checksums: Dict[str, str] = field(default_factory=dict)
    ops: List[ChangeOp] = field(default_factory=list)

    @property
    def total_changes(self) -> int:
        """Total number of paths that needed attention."""
        return len(self.new) + len(self.modified) + len(self.moves) + len(self.deleted)

    def record(self, op: ChangeOp) -> None:
        self.ops.append(op)
        match op.kind:
            case ChangeKind.CREATE:
                self.new.add(op.path)
            case ChangeKind.UPDATE:
                self.modified.add(op.path)
            case ChangeKind.MOVE:
                assert op.old_path is not None
                self.moves[op.old_path] = op.path
            case ChangeKind.DELETE:
                self.deleted.add(op.path)
        if op.fingerprint:
            self.checksums[op.path] = op.fingerprint
