"""Turns observations and remote feed records into typed change operations."""

from typing import Dict, List, Mapping, Optional

from loguru import logger

from xynoxa_sync.models import IndexEntry, SyncState
from xynoxa_sync.remote.client import RemoteChange
from xynoxa_sync.sync.file_change_scanner import Observations
from xynoxa_sync.sync.utils import ChangeKind, ChangeOp, LocalFileState, Origin


class DeltaComputer:
    """Compares what we see against the index and emits ChangeOps.

    The index holds the last state both sides agreed on, so a path whose
    fingerprint matches its entry is never a change, whatever its mtime says.
    """

    def compute_local(
        self,
        observations: Observations,
        index_entries: Mapping[str, IndexEntry],
    ) -> List[ChangeOp]:
        """
        Local ops for one settled batch or reconciliation scan.

        A vanished path and an appearing path in the same batch with the same
        fingerprint form a Move. Each vanished path pairs with at most one
        new path; anything unpaired is a Delete or a Create.
        """
        created: Dict[str, LocalFileState] = {}
        vanished: Dict[str, IndexEntry] = {}
        ops: List[ChangeOp] = []

        for path, state in sorted(observations.items()):
            entry = index_entries.get(path)
            # Entries waiting on a remote download describe the remote side
            if entry is not None and entry.sync_state == SyncState.PENDING_REMOTE:
                continue

            if state is None:
                if entry is not None:
                    vanished[path] = entry
                continue

            if entry is None or entry.remote_id is None:
                created[path] = state
            elif entry.fingerprint != state.fingerprint:
                ops.append(
                    ChangeOp(
                        kind=ChangeKind.UPDATE,
                        origin=Origin.LOCAL,
                        path=path,
                        fingerprint=state.fingerprint,
                        size=state.size,
                        remote_id=entry.remote_id,
                        revision=entry.revision,
                    )
                )

        for old_path, entry in vanished.items():
            new_path = next(
                (
                    p
                    for p, s in created.items()
                    if entry.remote_id is not None and s.fingerprint == entry.fingerprint
                ),
                None,
            )
            if new_path is not None:
                state = created.pop(new_path)
                logger.debug(f"Detected local move: {old_path} -> {new_path}")
                ops.append(
                    ChangeOp(
                        kind=ChangeKind.MOVE,
                        origin=Origin.LOCAL,
                        path=new_path,
                        old_path=old_path,
                        fingerprint=state.fingerprint,
                        size=state.size,
                        remote_id=entry.remote_id,
                        revision=entry.revision,
                    )
                )
            else:
                ops.append(
                    ChangeOp(
                        kind=ChangeKind.DELETE,
                        origin=Origin.LOCAL,
                        path=old_path,
                        remote_id=entry.remote_id,
                        revision=entry.revision,
                    )
                )

        for path, state in created.items():
            ops.append(
                ChangeOp(
                    kind=ChangeKind.CREATE,
                    origin=Origin.LOCAL,
                    path=path,
                    fingerprint=state.fingerprint,
                    size=state.size,
                )
            )

        return ops

    def compute_remote(
        self,
        record: RemoteChange,
        entry_by_path: Mapping[str, IndexEntry],
        entry_by_remote_id: Mapping[str, IndexEntry],
    ) -> Optional[ChangeOp]:
        """
        The op one remote feed record implies, or None when it is a no-op.

        Echoes of our own pushes come back with the fingerprint the index
        already holds and produce nothing.
        """
        if record.is_folder:
            return None

        entry = entry_by_remote_id.get(record.remote_id)

        match record.action:
            case "delete":
                if entry is None:
                    return None
                return ChangeOp(
                    kind=ChangeKind.DELETE,
                    origin=Origin.REMOTE,
                    path=entry.path,
                    remote_id=record.remote_id,
                    revision=record.revision,
                )
            case "create" | "update" | "move":
                assert record.path is not None
                if entry is not None and entry.path != record.path:
                    return ChangeOp(
                        kind=ChangeKind.MOVE,
                        origin=Origin.REMOTE,
                        path=record.path,
                        old_path=entry.path,
                        fingerprint=record.fingerprint or entry.fingerprint,
                        size=record.size,
                        remote_id=record.remote_id,
                        revision=record.revision,
                    )
                if entry is not None:
                    if self._same_content(record, entry):
                        return None
                    return self._remote_op(ChangeKind.UPDATE, record)

                at_path = entry_by_path.get(record.path)
                if at_path is not None:
                    if at_path.remote_id is None and record.fingerprint == at_path.fingerprint:
                        return None
                    return self._remote_op(ChangeKind.UPDATE, record)
                return self._remote_op(ChangeKind.CREATE, record)

    def _same_content(self, record: RemoteChange, entry: IndexEntry) -> bool:
        if record.fingerprint is not None:
            return record.fingerprint == entry.fingerprint
        # Without a fingerprint only the revision tells us whether it is new
        return entry.revision is not None and record.revision <= entry.revision

    def _remote_op(self, kind: ChangeKind, record: RemoteChange) -> ChangeOp:
        return ChangeOp(
            kind=kind,
            origin=Origin.REMOTE,
            path=record.path or "",
            fingerprint=record.fingerprint,
            size=record.size,
            remote_id=record.remote_id,
            revision=record.revision,
        )


def coalesce_remote_changes(
    pages: List[List[RemoteChange]],
) -> Dict[str, tuple[int, RemoteChange]]:
    """Fold feed records per remote id into their final state.

    Returns remote id -> (index of the page holding the last record, record).
    A move record without a fingerprint inherits the one seen before it.
    """
    final: Dict[str, tuple[int, RemoteChange]] = {}
    for page_index, changes in enumerate(pages):
        for change in changes:
            previous = final.get(change.remote_id)
            if (
                previous is not None
                and change.fingerprint is None
                and change.action != "delete"
                and previous[1].action != "delete"
            ):
                change = change.model_copy(update={"fingerprint": previous[1].fingerprint})
            final[change.remote_id] = (page_index, change)
    return final
