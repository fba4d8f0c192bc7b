"""Tests for the watch service and debouncer."""

import asyncio
from pathlib import Path
from typing import List

import pytest
from watchfiles import Change

from xynoxa_sync.ignore_utils import load_ignore_patterns
from xynoxa_sync.sync.utils import SettledBatch
from xynoxa_sync.sync.watch_service import Debouncer, RawEvent, WatchService


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def test_rapid_events_settle_once(clock):
    debouncer = Debouncer(quiet_ms=500, clock=clock)

    for _ in range(50):
        debouncer.feed(RawEvent("a.txt", "modified"))
        clock.now += 0.01
        assert debouncer.collect() is None

    clock.now += 0.5
    batch = debouncer.collect()

    assert batch is not None
    assert len(batch) == 1
    event = batch.events[0]
    assert event.path == "a.txt"
    assert event.raw_events == 50
    assert event.change == "modified"
    assert debouncer.collect() is None


def test_paths_settle_independently(clock):
    debouncer = Debouncer(quiet_ms=100, clock=clock)

    debouncer.feed(RawEvent("a.txt", "added"))
    clock.now += 0.08
    debouncer.feed(RawEvent("b.txt", "added"))
    clock.now += 0.05

    first = debouncer.collect()
    assert [e.path for e in first.events] == ["a.txt"]

    clock.now += 0.1
    second = debouncer.collect()
    assert [e.path for e in second.events] == ["b.txt"]


def test_quiet_paths_settle_together(clock):
    debouncer = Debouncer(quiet_ms=100, clock=clock)
    for name in ["c.txt", "a.txt", "b.txt"]:
        debouncer.feed(RawEvent(name, "added"))

    clock.now += 0.2
    batch = debouncer.collect()

    assert [e.path for e in batch.events] == ["a.txt", "b.txt", "c.txt"]
    assert batch.paths == {"a.txt", "b.txt", "c.txt"}


def test_last_change_wins(clock):
    debouncer = Debouncer(quiet_ms=100, clock=clock)
    debouncer.feed(RawEvent("a.txt", "added"))
    debouncer.feed(RawEvent("a.txt", "deleted"))

    clock.now += 0.2

    assert debouncer.collect().events[0].change == "deleted"


def test_overflow_flushes_immediately(clock):
    debouncer = Debouncer(quiet_ms=1000, clock=clock)
    debouncer.feed(RawEvent("a.txt", "modified"))
    debouncer.mark_overflow()

    assert debouncer.next_deadline() == clock.now
    batch = debouncer.collect()

    assert batch.overflow is True
    # Unsettled paths are covered by the full scan the overflow triggers
    assert batch.events == []
    assert debouncer.overflow is False


@pytest.mark.asyncio
async def test_debouncer_run_emits_one_batch():
    debouncer = Debouncer(quiet_ms=50)
    queue: asyncio.Queue[RawEvent] = asyncio.Queue()
    batches: List[SettledBatch] = []

    async def on_batch(batch: SettledBatch) -> None:
        batches.append(batch)

    task = asyncio.create_task(debouncer.run(queue, on_batch))
    try:
        for _ in range(50):
            queue.put_nowait(RawEvent("a.txt", "modified"))
        await asyncio.sleep(0.3)
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    assert len(batches) == 1
    assert batches[0].events[0].raw_events == 50


@pytest.fixture
def watch_service(tmp_path) -> WatchService:
    async def on_batch(batch: SettledBatch) -> None:
        pass

    return WatchService(
        tmp_path, load_ignore_patterns(tmp_path), on_batch, debounce_ms=50, queue_size=2
    )


def test_filter_changes(watch_service, tmp_path):
    assert watch_service.filter_changes(Change.added, str(tmp_path / "a.txt"))
    assert not watch_service.filter_changes(Change.added, str(tmp_path / ".git" / "index"))
    assert not watch_service.filter_changes(
        Change.added, str(tmp_path / "big.iso.xynoxa-part")
    )


def test_handle_changes_queues_relative_paths(watch_service, tmp_path: Path):
    watch_service.handle_changes({(Change.added, str(tmp_path / "dir" / "a.txt"))})

    event = watch_service.queue.get_nowait()
    assert event == RawEvent("dir/a.txt", "added")


def test_full_queue_raises_overflow(watch_service):
    for name in ["a.txt", "b.txt", "c.txt", "d.txt"]:
        watch_service.enqueue(name, "modified")

    assert watch_service.queue.qsize() == 2
    assert watch_service.dropped_events == 2
    assert watch_service.debouncer.overflow is True
