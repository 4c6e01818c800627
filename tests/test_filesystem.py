"""Tests for local filesystem helpers."""
from __future__ import annotations

from pathlib import Path

import pytest

from davsync.filesystem import (
    FilesystemError,
    prepare_local_path,
    prepare_target_path,
    setup_favorite_link,
    start_from_scratch,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("", "/"),
        ("/", "/"),
        ("Documents", "/Documents"),
        ("/Documents/", "/Documents"),
        ("Photos\\2024", "/Photos/2024"),
    ],
)
def test_prepare_target_path(raw: str, expected: str) -> None:
    """Remote paths get one leading slash and no trailing slash."""
    assert prepare_target_path(raw) == expected


def test_prepare_local_path_adds_single_separator(tmp_path: Path) -> None:
    """Local paths are absolute and end with exactly one slash."""
    assert prepare_local_path(tmp_path) == tmp_path.as_posix() + "/"
    assert prepare_local_path(str(tmp_path) + "/") == tmp_path.as_posix() + "/"


def test_prepare_local_path_expands_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """A leading tilde resolves to the home directory."""
    monkeypatch.setenv("HOME", str(tmp_path))

    assert prepare_local_path("~/Sync") == (tmp_path / "Sync").as_posix() + "/"


def test_setup_favorite_link_is_deduplicated(tmp_path: Path) -> None:
    """A folder is bookmarked once."""
    bookmarks = tmp_path / "gtk" / "bookmarks"
    folder = tmp_path / "Sync"
    folder.mkdir()

    assert setup_favorite_link(folder, bookmarks=bookmarks) is True
    assert setup_favorite_link(folder, bookmarks=bookmarks) is False
    assert bookmarks.read_text(encoding="utf-8").count("Sync") == 1


def test_start_from_scratch_moves_contents_aside(tmp_path: Path) -> None:
    """A non-empty folder is renamed and recreated empty."""
    folder = tmp_path / "Sync"
    folder.mkdir()
    (folder / "old.txt").write_text("old")

    backup = start_from_scratch(folder)

    assert backup is not None
    assert backup.name.startswith("Sync.bak.")
    assert (backup / "old.txt").read_text() == "old"
    assert folder.is_dir()
    assert list(folder.iterdir()) == []


def test_start_from_scratch_ignores_empty_or_missing(tmp_path: Path) -> None:
    """Nothing is moved when there is nothing to keep."""
    empty = tmp_path / "Empty"
    empty.mkdir()

    assert start_from_scratch(empty) is None
    assert start_from_scratch(tmp_path / "missing") is None


def test_start_from_scratch_wraps_errors(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Rename failures raise FilesystemError."""
    folder = tmp_path / "Sync"
    folder.mkdir()
    (folder / "data").write_text("x")

    def fail_rename(self: Path, target: Path) -> Path:
        raise PermissionError("read-only")

    monkeypatch.setattr(Path, "rename", fail_rename)

    with pytest.raises(FilesystemError, match="Unable to back up"):
        start_from_scratch(folder)
