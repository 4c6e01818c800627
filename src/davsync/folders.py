"""Folder registry and per-folder sync journals."""
from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from .filesystem import prepare_local_path
from .provisioning.models import AccountState, FolderDefinition
from .state.registry import StateRegistry, StateRegistryError

LOGGER = logging.getLogger(__name__)


class FolderRegistryError(RuntimeError):
    """Raised when a folder cannot be registered."""


class SelectiveSyncListKind(str, Enum):
    """Selective sync lists kept in a folder journal."""

    BLACKLIST = "blacklist"
    WHITELIST = "whitelist"
    UNDECIDED = "undecided"


def _normalize_entry(path: str) -> str:
    entry = path.replace("\\", "/").lstrip("/")
    if entry and not entry.endswith("/"):
        entry += "/"
    return entry or "/"


@dataclass(frozen=True)
class SyncJournal:
    """Per-folder journal stored as ``journals/<folder id>.yml``."""

    registry: StateRegistry
    folder_id: str

    @property
    def name(self) -> str:
        """Return the registry-relative file name."""
        return f"journals/{self.folder_id}.yml"

    def _load(self) -> dict[str, object]:
        data = self.registry.read(self.name, default={})
        return dict(data) if isinstance(data, dict) else {}

    def get_selective_sync_list(self, kind: SelectiveSyncListKind) -> list[str]:
        """Return the entries of the *kind* list."""
        lists = self._load().get("selective_sync", {})
        if not isinstance(lists, dict):
            return []
        return [str(item) for item in lists.get(kind.value, []) or []]

    def set_selective_sync_list(self, kind: SelectiveSyncListKind, paths: Iterable[str]) -> None:
        """Replace the *kind* list; entries are stored with a trailing slash."""
        data = self._load()
        lists = data.get("selective_sync")
        lists = dict(lists) if isinstance(lists, dict) else {}
        lists[kind.value] = sorted({_normalize_entry(path) for path in paths})
        data["selective_sync"] = lists
        try:
            self.registry.write(self.name, data)
        except (StateRegistryError, OSError) as exc:
            raise FolderRegistryError(f"Unable to update journal {self.name}: {exc}") from exc


@dataclass(frozen=True)
class FolderHandle:
    """A registered folder together with its journal."""

    id: str
    account_id: str
    definition: FolderDefinition
    journal: SyncJournal

    def to_dict(self) -> dict[str, object]:
        """Return the persisted representation."""
        return {"id": self.id, "account_id": self.account_id, **self.definition.to_dict()}


class FolderRegistry:
    """Registers sync folders in ``folders.yml``."""

    def __init__(self, registry: StateRegistry) -> None:
        self._registry = registry

    def validate_local_path(self, path: str) -> None:
        """Raise :class:`FolderRegistryError` if *path* overlaps a registered folder."""
        candidate = prepare_local_path(path)
        for handle in self.list_folders():
            existing = handle.definition.local_path
            if candidate == existing:
                raise FolderRegistryError(f"The local folder {candidate} is already synced.")
            if candidate.startswith(existing):
                raise FolderRegistryError(
                    f"The local folder {candidate} is inside the synced folder {existing}."
                )
            if existing.startswith(candidate):
                raise FolderRegistryError(
                    f"The local folder {candidate} already contains the synced folder {existing}."
                )

    def add_folder(self, account: AccountState, definition: FolderDefinition) -> FolderHandle:
        """Register *definition* for *account* and return its handle."""
        self.validate_local_path(definition.local_path)
        folder_id = _folder_id(account.id, definition.local_path)
        handle = FolderHandle(
            id=folder_id,
            account_id=account.id,
            definition=definition,
            journal=SyncJournal(self._registry, folder_id),
        )
        try:
            self._registry.add_folder(handle.to_dict())
        except (StateRegistryError, OSError) as exc:
            raise FolderRegistryError(str(exc)) from exc
        LOGGER.info("Registered folder %s -> %s", definition.local_path, definition.remote_path)
        return handle

    def remove_folder(self, folder_id: str) -> None:
        """Unregister the folder *folder_id*."""
        try:
            self._registry.remove_folder(folder_id)
        except (StateRegistryError, OSError) as exc:
            raise FolderRegistryError(str(exc)) from exc
        LOGGER.info("Unregistered folder %s", folder_id)

    def list_folders(self) -> list[FolderHandle]:
        """Return every registered folder."""
        try:
            entries = self._registry.list_folders()
        except StateRegistryError as exc:
            raise FolderRegistryError(str(exc)) from exc
        handles: list[FolderHandle] = []
        for entry in entries:
            try:
                definition = FolderDefinition.from_dict(entry)
                folder_id = str(entry["id"])
            except (KeyError, ValueError) as exc:
                LOGGER.warning("Skipping malformed folder entry %r: %s", entry, exc)
                continue
            handles.append(
                FolderHandle(
                    id=folder_id,
                    account_id=str(entry.get("account_id", "")),
                    definition=definition,
                    journal=SyncJournal(self._registry, folder_id),
                )
            )
        return handles


def _folder_id(account_id: str, local_path: str) -> str:
    digest = hashlib.sha1(f"{account_id}:{local_path}".encode(), usedforsecurity=False)
    return digest.hexdigest()[:12]


__all__ = [
    "FolderHandle",
    "FolderRegistry",
    "FolderRegistryError",
    "SelectiveSyncListKind",
    "SyncJournal",
]
