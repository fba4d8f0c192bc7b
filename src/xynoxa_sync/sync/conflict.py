"""Resolution of local and remote changes that touch the same path."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional

from loguru import logger

from xynoxa_sync.sync.utils import ChangeKind, ChangeOp, Origin
from xynoxa_sync.utils.file_utils import conflict_path


class ConflictAction(str, Enum):
    # Both sides ended up identical, nothing to transfer
    DISCHARGE = "discharge"
    # Remote version goes to a conflict copy, local version stays at the path
    KEEP_BOTH = "keep_both"
    # Local delete lost against a remote edit
    RESTORE_REMOTE = "restore_remote"
    # Remote delete lost against a local edit
    REUPLOAD_LOCAL = "reupload_local"


@dataclass(frozen=True)
class Conflict:
    path: str
    local: ChangeOp
    remote: ChangeOp
    action: ConflictAction
    conflict_path: Optional[str] = None


@dataclass
class Resolution:
    """Ops left to apply normally plus the conflicts that replace the rest."""

    local_ops: List[ChangeOp] = field(default_factory=list)
    remote_ops: List[ChangeOp] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)


def split_move(op: ChangeOp) -> List[ChangeOp]:
    """Decompose a Move into Delete of the source plus Create at the target."""
    assert op.kind == ChangeKind.MOVE and op.old_path is not None
    return [
        ChangeOp(
            kind=ChangeKind.DELETE,
            origin=op.origin,
            path=op.old_path,
            remote_id=op.remote_id,
            revision=op.revision,
        ),
        ChangeOp(
            kind=ChangeKind.CREATE,
            origin=op.origin,
            path=op.path,
            fingerprint=op.fingerprint,
            size=op.size,
            # A remote move keeps its object, so the create downloads it
            remote_id=op.remote_id if op.origin == Origin.REMOTE else None,
            revision=op.revision,
        ),
    ]


class ConflictResolver:
    """
    Pairs up local and remote ops on the same path and decides what happens.

    Policy is rename-and-keep-both: no version of a file is ever silently
    dropped. Last-writer-wins is never used.
    """

    def __init__(
        self,
        machine_name: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.machine_name = machine_name
        self.clock = clock

    def resolve(self, local_ops: List[ChangeOp], remote_ops: List[ChangeOp]) -> Resolution:
        remote_paths = {p for op in remote_ops for p in op.paths}

        # Moves whose paths collide with the other side become Delete + Create
        local_ops = self._split_colliding(local_ops, remote_paths)
        remote_ops = self._split_colliding(remote_ops, {p for op in local_ops for p in op.paths})

        local_by_path: Dict[str, ChangeOp] = {op.path: op for op in local_ops}
        remote_by_path: Dict[str, ChangeOp] = {op.path: op for op in remote_ops}
        overlapping = sorted(set(local_by_path) & set(remote_by_path))

        resolution = Resolution()
        for path in overlapping:
            conflict = self._decide(path, local_by_path[path], remote_by_path[path])
            if conflict.action == ConflictAction.DISCHARGE:
                logger.debug(f"Both sides agree on {path}, nothing to transfer")
            else:
                logger.warning(
                    f"Conflict on {path}: local {conflict.local.kind.value} vs "
                    f"remote {conflict.remote.kind.value}, resolving with {conflict.action.value}"
                )
            resolution.conflicts.append(conflict)

        resolved = set(overlapping)
        resolution.local_ops = [op for op in local_ops if op.path not in resolved]
        resolution.remote_ops = [op for op in remote_ops if op.path not in resolved]
        return resolution

    def _split_colliding(self, ops: List[ChangeOp], other_paths: set[str]) -> List[ChangeOp]:
        result: List[ChangeOp] = []
        for op in ops:
            if op.kind == ChangeKind.MOVE and any(p in other_paths for p in op.paths):
                logger.debug(f"Splitting colliding {op.describe()}")
                result.extend(split_move(op))
            else:
                result.append(op)
        return result

    def _decide(self, path: str, local: ChangeOp, remote: ChangeOp) -> Conflict:
        local_deleted = local.kind == ChangeKind.DELETE
        remote_deleted = remote.kind == ChangeKind.DELETE

        if local_deleted and remote_deleted:
            action = ConflictAction.DISCHARGE
        elif local_deleted:
            action = ConflictAction.RESTORE_REMOTE
        elif remote_deleted:
            action = ConflictAction.REUPLOAD_LOCAL
        elif local.fingerprint is not None and local.fingerprint == remote.fingerprint:
            action = ConflictAction.DISCHARGE
        else:
            action = ConflictAction.KEEP_BOTH

        copy_path = None
        if action == ConflictAction.KEEP_BOTH:
            copy_path = conflict_path(path, when=self.clock(), machine_name=self.machine_name)
        return Conflict(path=path, local=local, remote=remote, action=action, conflict_path=copy_path)
