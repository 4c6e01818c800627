"""Local filesystem helpers for sync folders."""
from __future__ import annotations

import logging
import os
import stat
import sys
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import quote

LOGGER = logging.getLogger(__name__)

GTK_BOOKMARKS = Path("~/.config/gtk-3.0/bookmarks")


class FilesystemError(RuntimeError):
    """Raised when a local folder cannot be prepared."""


def prepare_local_path(path: str | os.PathLike[str]) -> str:
    """Return *path* in forward-slash form with exactly one trailing separator."""
    text = Path(path).expanduser().absolute().as_posix()
    if not text.endswith("/"):
        text += "/"
    return text


def prepare_target_path(path: str) -> str:
    """Return a remote path with a leading slash and no trailing slash.

    The empty string and ``"/"`` both map to ``"/"``.
    """
    result = path.replace("\\", "/")
    if result.endswith("/"):
        result = result[:-1]
    if not result.startswith("/"):
        result = "/" + result
    return result


def set_folder_minimum_permissions(path: Path) -> None:
    """Ensure the owner can read, write and enter *path*."""
    mode = path.stat().st_mode
    wanted = mode | stat.S_IRWXU
    if wanted != mode:
        path.chmod(stat.S_IMODE(wanted))


def setup_favorite_link(path: Path, *, bookmarks: Path | None = None) -> bool:
    """Add *path* to the desktop's favourite places where supported.

    Only the GTK bookmarks file is handled; other platforms are a no-op.
    Returns ``True`` when a bookmark was added.
    """
    if bookmarks is None:
        if not sys.platform.startswith("linux"):
            return False
        bookmarks = GTK_BOOKMARKS.expanduser()
    uri = "file://" + quote(str(path.resolve()))
    existing = bookmarks.read_text(encoding="utf-8").splitlines() if bookmarks.exists() else []
    if any(line.split(" ", 1)[0] == uri for line in existing):
        return False
    bookmarks.parent.mkdir(parents=True, exist_ok=True)
    with bookmarks.open("a", encoding="utf-8") as handle:
        handle.write(uri + "\n")
    return True


def start_from_scratch(path: Path) -> Path | None:
    """Move an existing, non-empty folder aside and recreate it empty.

    Returns the backup location, or ``None`` when nothing had to be moved.
    """
    if not path.exists():
        return None
    if path.is_dir() and not any(path.iterdir()):
        return None
    stamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
    backup = path.with_name(f"{path.name}.bak.{stamp}")
    try:
        path.rename(backup)
        path.mkdir(parents=True)
    except OSError as exc:
        raise FilesystemError(f"Unable to back up {path}: {exc}") from exc
    LOGGER.info("Moved %s to %s before a fresh sync", path, backup)
    return backup


__all__ = [
    "FilesystemError",
    "prepare_local_path",
    "prepare_target_path",
    "set_folder_minimum_permissions",
    "setup_favorite_link",
    "start_from_scratch",
]
