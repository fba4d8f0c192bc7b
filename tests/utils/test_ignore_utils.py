"""Tests for ignore pattern handling."""

from pathlib import Path

from xynoxa_sync.ignore_utils import (
    DEFAULT_IGNORE_PATTERNS,
    load_ignore_patterns,
    should_ignore_path,
)


def test_load_defaults_and_extra(tmp_path: Path):
    patterns = load_ignore_patterns(tmp_path, ["*.tmp"])

    assert DEFAULT_IGNORE_PATTERNS <= patterns
    assert "*.tmp" in patterns


def test_load_ignore_file(tmp_path: Path):
    (tmp_path / ".xynoxaignore").write_text("# comment\n\n*.log\nbuild/\n")

    patterns = load_ignore_patterns(tmp_path)

    assert {"*.log", "build/"} <= patterns
    assert "# comment" not in patterns


def test_should_ignore_defaults(tmp_path: Path):
    patterns = load_ignore_patterns(tmp_path)

    def ignored(rel: str) -> bool:
        return should_ignore_path(tmp_path / rel, tmp_path, patterns)

    assert ignored(".git/config")
    assert ignored("web/node_modules/pkg/index.js")
    assert ignored(".DS_Store")
    assert ignored("docs/Thumbs.db")
    assert ignored("~$report.docx")
    assert ignored(".video.mp4.xynoxa-part")
    assert not ignored("docs/report.docx")
    assert not ignored("gitignore.txt")


def test_should_ignore_custom_patterns(tmp_path: Path):
    patterns = {"*.log", "/dist", "cache/"}

    def ignored(rel: str) -> bool:
        return should_ignore_path(tmp_path / rel, tmp_path, patterns)

    assert ignored("app.log")
    assert ignored("logs/deep/app.log")
    assert ignored("dist/bundle.js")
    assert not ignored("src/dist/bundle.js")
    assert ignored("a/cache/b.txt")
    assert not ignored("a/cached.txt")


def test_paths_outside_root_are_ignored(tmp_path: Path):
    root = tmp_path / "root"

    assert should_ignore_path(tmp_path / "elsewhere.txt", root, set())
    assert should_ignore_path(root, root, set())
