"""Tests for account persistence and the folder registry."""
from __future__ import annotations

from pathlib import Path

import pytest

from davsync.accounts import AccountError, AccountManager
from davsync.credentials import HttpBasicCredentials, PlaceholderCredentials
from davsync.folders import FolderRegistry, FolderRegistryError, SelectiveSyncListKind
from davsync.provisioning import AuthKind, FolderDefinition
from davsync.state import StateRegistry, StateRegistryError

DAV_PATH = "remote.php/webdav/"


def _manager(tmp_path: Path) -> AccountManager:
    return AccountManager(StateRegistry(tmp_path), dav_path=DAV_PATH, proxy_mode="none")


def test_draft_starts_with_placeholder_credentials(tmp_path: Path) -> None:
    """Drafts carry neutral credentials and the configured paths."""
    draft = _manager(tmp_path).create_draft("https://cloud.example.test")

    assert isinstance(draft.credentials, PlaceholderCredentials)
    assert draft.dav_path == DAV_PATH
    assert draft.proxy_mode == "none"
    assert draft.dav_url == "https://cloud.example.test/remote.php/webdav/"
    assert len(draft.id) == 12


def test_commit_detaches_and_save_persists(tmp_path: Path) -> None:
    """Committed accounts are snapshots; saving never writes secrets."""
    manager = _manager(tmp_path)
    draft = manager.create_draft("https://cloud.example.test")
    draft.credentials = HttpBasicCredentials("alice", "hunter2")
    draft.auth_kind = AuthKind.HTTP_BASIC
    draft.server_version = "10.0"

    state = manager.commit(draft)
    draft.base_url = "https://changed.example.test"
    written = manager.save()

    assert written == [state]
    assert state.url == "https://cloud.example.test"
    assert state.user == "alice"
    assert manager.list_accounts() == [state]
    assert manager.get(state.id) == state
    stored = (tmp_path / "accounts.yml").read_text(encoding="utf-8")
    assert "hunter2" not in stored
    assert "http-basic" in stored


def test_commit_reuses_existing_account_id(tmp_path: Path) -> None:
    """Re-running setup for the same URL and user updates the account."""
    manager = _manager(tmp_path)
    first = manager.create_draft("https://cloud.example.test")
    first.credentials = HttpBasicCredentials("alice", "a")
    original = manager.commit(first)
    manager.save()

    second = manager.create_draft("https://cloud.example.test")
    second.credentials = HttpBasicCredentials("alice", "b")
    second.server_version = "10.1"
    updated = manager.commit(second)
    manager.save()

    assert updated.id == original.id
    (only,) = manager.list_accounts()
    assert only.server_version == "10.1"


def test_save_failure_raises_account_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Registry failures surface as AccountError."""
    manager = _manager(tmp_path)
    manager.commit(manager.create_draft("https://cloud.example.test"))

    def boom(self: StateRegistry, entry: object) -> None:
        raise StateRegistryError("disk full")

    monkeypatch.setattr(StateRegistry, "upsert_account", boom)

    with pytest.raises(AccountError, match="disk full"):
        manager.save()


def _definition(local: Path, remote: str = "/") -> FolderDefinition:
    return FolderDefinition(local_path=local.as_posix() + "/", remote_path=remote)


def test_add_folder_and_list(tmp_path: Path) -> None:
    """Registered folders are listed with their account."""
    manager = _manager(tmp_path / "state")
    account = manager.commit(manager.create_draft("https://cloud.example.test"))
    folders = FolderRegistry(StateRegistry(tmp_path / "state"))

    handle = folders.add_folder(account, _definition(tmp_path / "Sync", "/Documents"))

    (listed,) = folders.list_folders()
    assert listed.id == handle.id
    assert listed.account_id == account.id
    assert listed.definition.remote_path == "/Documents"


@pytest.mark.parametrize("candidate", ["Sync", "Sync/inner", "."])
def test_overlapping_local_paths_are_rejected(tmp_path: Path, candidate: str) -> None:
    """The same, nested or enclosing folders cannot be registered twice."""
    manager = _manager(tmp_path / "state")
    account = manager.commit(manager.create_draft("https://cloud.example.test"))
    folders = FolderRegistry(StateRegistry(tmp_path / "state"))
    folders.add_folder(account, _definition(tmp_path / "Sync"))

    with pytest.raises(FolderRegistryError):
        folders.validate_local_path(str(tmp_path / candidate))


def test_sibling_paths_with_common_prefix_are_allowed(tmp_path: Path) -> None:
    """Sync and Sync2 do not overlap."""
    manager = _manager(tmp_path / "state")
    account = manager.commit(manager.create_draft("https://cloud.example.test"))
    folders = FolderRegistry(StateRegistry(tmp_path / "state"))
    folders.add_folder(account, _definition(tmp_path / "Sync"))

    folders.validate_local_path(str(tmp_path / "Sync2"))


def test_journal_selective_sync_lists(tmp_path: Path) -> None:
    """Journal lists are stored sorted with trailing slashes."""
    manager = _manager(tmp_path / "state")
    account = manager.commit(manager.create_draft("https://cloud.example.test"))
    folders = FolderRegistry(StateRegistry(tmp_path / "state"))
    handle = folders.add_folder(account, _definition(tmp_path / "Sync"))

    handle.journal.set_selective_sync_list(SelectiveSyncListKind.BLACKLIST, ["/Videos", "Music/"])
    handle.journal.set_selective_sync_list(SelectiveSyncListKind.WHITELIST, ["/"])

    assert handle.journal.get_selective_sync_list(SelectiveSyncListKind.BLACKLIST) == [
        "Music/",
        "Videos/",
    ]
    assert handle.journal.get_selective_sync_list(SelectiveSyncListKind.WHITELIST) == ["/"]
    assert handle.journal.get_selective_sync_list(SelectiveSyncListKind.UNDECIDED) == []
    assert (tmp_path / "state" / "journals" / f"{handle.id}.yml").exists()
