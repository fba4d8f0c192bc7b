"""Tests for the file change scanner."""

import os
from pathlib import Path

import pytest

from xynoxa_sync.ignore_utils import load_ignore_patterns
from xynoxa_sync.models import IndexEntry, SyncState
from xynoxa_sync.sync.file_change_scanner import FileChangeScanner
from xynoxa_sync.utils.file_utils import TEMP_SUFFIX

from conftest import sha


def make_entry(path: str, fingerprint: str, size: int = 0, mtime: float = 0.0) -> IndexEntry:
    return IndexEntry(
        group_folder_id=1,
        path=path,
        fingerprint=fingerprint,
        size=size,
        mtime=mtime,
        remote_id=f"id-{path}",
        sync_state=SyncState.CLEAN,
    )


@pytest.fixture
def scanner(tmp_path) -> FileChangeScanner:
    return FileChangeScanner(tmp_path, load_ignore_patterns(tmp_path))


def write(root: Path, rel_path: str, content: bytes) -> Path:
    path = root / rel_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


@pytest.mark.asyncio
async def test_scan_directory_finds_files(scanner, tmp_path):
    write(tmp_path, "a.txt", b"alpha")
    write(tmp_path, "nested/deeper/b.txt", b"beta")

    result = await scanner.scan_directory({})

    assert set(result.files) == {"a.txt", "nested/deeper/b.txt"}
    assert result.files["a.txt"].fingerprint == sha(b"alpha")
    assert result.files["nested/deeper/b.txt"].size == 4
    assert result.errors == {}
    assert result.hashed == 2


@pytest.mark.asyncio
async def test_scan_skips_ignored_paths(scanner, tmp_path):
    write(tmp_path, "keep.txt", b"x")
    write(tmp_path, ".git/config", b"x")
    write(tmp_path, "node_modules/lib/index.js", b"x")
    write(tmp_path, f".partial.bin{TEMP_SUFFIX}", b"x")
    write(tmp_path, ".DS_Store", b"x")

    result = await scanner.scan_directory({})

    assert set(result.files) == {"keep.txt"}


@pytest.mark.asyncio
async def test_scan_respects_ignore_file(tmp_path):
    write(tmp_path, ".xynoxaignore", b"# build output\n*.log\n/build\n")
    write(tmp_path, "app.log", b"x")
    write(tmp_path, "build/out.bin", b"x")
    write(tmp_path, "src/build.txt", b"x")
    scanner = FileChangeScanner(tmp_path, load_ignore_patterns(tmp_path))

    result = await scanner.scan_directory({})

    assert set(result.files) == {".xynoxaignore", "src/build.txt"}


@pytest.mark.asyncio
async def test_unchanged_size_and_mtime_reuse_indexed_fingerprint(scanner, tmp_path):
    path = write(tmp_path, "a.txt", b"alpha")
    stat = path.stat()
    entry = make_entry("a.txt", "indexed-fingerprint", stat.st_size, stat.st_mtime)

    state = await scanner.observe(path, entry)
    assert state.fingerprint == "indexed-fingerprint"

    forced = await scanner.observe(path, entry, force=True)
    assert forced.fingerprint == sha(b"alpha")


@pytest.mark.asyncio
async def test_touch_without_change_keeps_fingerprint(scanner, tmp_path):
    path = write(tmp_path, "a.txt", b"alpha")
    entry = make_entry("a.txt", sha(b"alpha"), 5, 1.0)
    os.utime(path, (2_000_000_000, 2_000_000_000))

    state = await scanner.observe(path, entry)

    # mtime differs so the file is hashed, but the content is the same
    assert state.fingerprint == entry.fingerprint
    assert state.mtime == 2_000_000_000


@pytest.mark.asyncio
async def test_find_changes_reports_missing_indexed_paths(scanner, tmp_path):
    write(tmp_path, "here.txt", b"x")
    entries = [make_entry("here.txt", sha(b"x")), make_entry("gone.txt", sha(b"y"))]

    observations, errors = await scanner.find_changes(entries)

    assert observations["here.txt"].fingerprint == sha(b"x")
    assert observations["gone.txt"] is None
    assert errors == {}


@pytest.mark.asyncio
async def test_observe_paths_for_single_files(scanner, tmp_path):
    write(tmp_path, "a.txt", b"alpha")
    entries = {"b.txt": make_entry("b.txt", sha(b"beta"))}

    observations, errors = await scanner.observe_paths(["a.txt", "b.txt", ".git/HEAD"], entries)

    assert set(observations) == {"a.txt", "b.txt"}
    assert observations["b.txt"] is None
    assert observations["a.txt"].fingerprint == sha(b"alpha")
    assert errors == {}


@pytest.mark.asyncio
async def test_observe_paths_expands_directories(scanner, tmp_path):
    write(tmp_path, "dir/one.txt", b"1")
    write(tmp_path, "dir/sub/two.txt", b"2")
    entries = {"dir/old.txt": make_entry("dir/old.txt", sha(b"old"))}

    observations, _ = await scanner.observe_paths(["dir"], entries)

    assert set(observations) == {"dir/one.txt", "dir/sub/two.txt", "dir/old.txt"}
    assert observations["dir/old.txt"] is None


@pytest.mark.asyncio
async def test_observe_paths_for_removed_directory(scanner, tmp_path):
    entries = {
        "photos/a.jpg": make_entry("photos/a.jpg", "a"),
        "photos/2024/b.jpg": make_entry("photos/2024/b.jpg", "b"),
        "photos-old.txt": make_entry("photos-old.txt", "c"),
    }

    observations, _ = await scanner.observe_paths(["photos"], entries)

    assert observations == {"photos": None, "photos/a.jpg": None, "photos/2024/b.jpg": None}
