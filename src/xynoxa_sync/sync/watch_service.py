"""Watch service: filesystem events -> bounded queue -> debounced batches."""

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set

from loguru import logger
from watchfiles import Change, awatch

from xynoxa_sync.ignore_utils import should_ignore_path
from xynoxa_sync.sync.utils import SettledBatch, SettledEvent

BatchHandler = Callable[[SettledBatch], Awaitable[None]]

CHANGE_NAMES = {
    Change.added: "added",
    Change.modified: "modified",
    Change.deleted: "deleted",
}


@dataclass(frozen=True)
class RawEvent:
    path: str
    change: str


@dataclass
class _PendingPath:
    change: str
    raw_events: int
    deadline: float


class Debouncer:
    """
    Coalesces raw events per path.

    A path settles once ``quiet_ms`` pass without another event for it.
    Every path that has settled when the debouncer looks is emitted in one
    batch.
    """

    def __init__(
        self,
        quiet_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.quiet = quiet_ms / 1000
        self.clock = clock
        self.pending: Dict[str, _PendingPath] = {}
        self.overflow = False

    def feed(self, event: RawEvent, now: Optional[float] = None) -> None:
        now = self.clock() if now is None else now
        current = self.pending.get(event.path)
        count = current.raw_events + 1 if current else 1
        self.pending[event.path] = _PendingPath(
            change=event.change, raw_events=count, deadline=now + self.quiet
        )

    def mark_overflow(self) -> None:
        self.overflow = True

    def next_deadline(self) -> Optional[float]:
        if self.overflow:
            return self.clock()
        if not self.pending:
            return None
        return min(p.deadline for p in self.pending.values())

    def collect(self, now: Optional[float] = None) -> Optional[SettledBatch]:
        """Remove and return the paths that have settled, or None."""
        now = self.clock() if now is None else now
        settled = [path for path, p in self.pending.items() if p.deadline <= now]
        if not settled and not self.overflow:
            return None

        events: List[SettledEvent] = []
        for path in sorted(settled):
            p = self.pending.pop(path)
            events.append(SettledEvent(path=path, change=p.change, raw_events=p.raw_events))
        batch = SettledBatch(events=events, overflow=self.overflow)
        self.overflow = False
        return batch

    async def run(self, queue: "asyncio.Queue[RawEvent]", on_batch: BatchHandler) -> None:
        """Drain ``queue`` forever, handing settled batches to ``on_batch``."""
        while True:
            deadline = self.next_deadline()
            timeout = None if deadline is None else max(deadline - self.clock(), 0)
            try:
                self.feed(await asyncio.wait_for(queue.get(), timeout=timeout))
            except TimeoutError:
                pass

            # Paths that went quiet still settle under a steady event stream
            batch = self.collect()
            if batch is not None:
                logger.debug(
                    f"Settled {len(batch)} paths"
                    + (" after queue overflow" if batch.overflow else "")
                )
                await on_batch(batch)


class WatchService:
    """Recursive watch of one group folder root."""

    def __init__(
        self,
        root: Path,
        ignore_patterns: Set[str],
        on_batch: BatchHandler,
        debounce_ms: int = 500,
        queue_size: int = 1000,
    ):
        self.root = root
        self.ignore_patterns = ignore_patterns
        self.on_batch = on_batch
        self.queue: asyncio.Queue[RawEvent] = asyncio.Queue(maxsize=queue_size)
        self.debouncer = Debouncer(debounce_ms)
        self.stop_event = asyncio.Event()
        self.dropped_events = 0

    def filter_changes(self, change: Change, path: str) -> bool:
        """Skip ignored paths (.git, node_modules, temp downloads, etc.)"""
        return not should_ignore_path(Path(path), self.root, self.ignore_patterns)

    def enqueue(self, path: str, change: str) -> None:
        """Hand one raw event to the debouncer; a full queue raises the overflow flag."""
        try:
            self.queue.put_nowait(RawEvent(path=path, change=change))
        except asyncio.QueueFull:
            self.dropped_events += 1
            if not self.debouncer.overflow:
                logger.warning(f"Event queue full for {self.root}, falling back to a full scan")
            self.debouncer.mark_overflow()

    def handle_changes(self, changes: Set[tuple[Change, str]]) -> None:
        for change, raw_path in changes:
            try:
                rel_path = Path(raw_path).relative_to(self.root).as_posix()
            except ValueError:
                continue
            self.enqueue(rel_path, CHANGE_NAMES.get(change, "modified"))

    async def run(self) -> None:
        """Watch for file changes until stop() is called."""
        logger.info(f"Watching {self.root} for changes")
        debouncer_task = asyncio.create_task(self.debouncer.run(self.queue, self.on_batch))
        try:
            async for changes in awatch(
                self.root,
                watch_filter=self.filter_changes,
                # Per-path settling is done by the debouncer
                debounce=50,
                recursive=True,
                stop_event=self.stop_event,
            ):
                self.handle_changes(changes)
        finally:
            debouncer_task.cancel()
            await asyncio.gather(debouncer_task, return_exceptions=True)
            logger.info(f"Stopped watching {self.root}")

    def stop(self) -> None:
        self.stop_event.set()
