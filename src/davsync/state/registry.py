"""Helpers for interacting with the davsync state registry.

The registry directory (``~/.local/share/davsync/registry`` by default) stores
YAML artifacts such as ``accounts.yml`` and ``folders.yml`` plus one journal
file per registered folder. This module provides lightweight helpers to read
and write those files using atomic operations.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)
        path.parent.mkdir(parents=True, exist_ok=True)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            # Account metadata may include user names and server URLs.
            os.chmod(path, 0o600)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Convenience wrappers -------------------------------------------------
    def read_accounts(self) -> Mapping[str, object]:
        """Return the contents of ``accounts.yml`` (empty mapping if missing)."""
        value = self.read("accounts.yml", default={"accounts": []})
        return value if isinstance(value, Mapping) else {"accounts": []}

    def read_folders(self) -> Mapping[str, object]:
        """Return the contents of ``folders.yml`` (empty mapping if missing)."""
        value = self.read("folders.yml", default={"folders": []})
        return value if isinstance(value, Mapping) else {"folders": []}

    def write_accounts(self, accounts: Iterable[object]) -> None:
        """Persist account entries to ``accounts.yml``."""
        self.write("accounts.yml", {"accounts": list(accounts)})

    def write_folders(self, folders: Iterable[object]) -> None:
        """Persist folder entries to ``folders.yml``."""
        self.write("folders.yml", {"folders": list(folders)})

    # Account helpers -------------------------------------------------
    def list_accounts(self) -> list[dict[str, Any]]:
        """Return every well-formed account entry."""
        return _mapping_entries(self.read_accounts().get("accounts", []))

    def get_account(self, account_id: str) -> dict[str, Any] | None:
        """Return the account entry for *account_id* if registered."""
        normalized = account_id.strip()
        if not normalized:
            raise StateRegistryError("Account identifier must be a non-empty string.")
        for entry in self.list_accounts():
            if entry.get("id") == normalized:
                return deepcopy(entry)
        return None

    def upsert_account(self, entry: Mapping[str, object]) -> None:
        """Add or replace an account entry keyed by its ``id``."""
        account_id = str(entry.get("id") or "").strip()
        if not account_id:
            raise StateRegistryError("Account entry missing 'id'.")
        accounts: list[dict[str, Any]] = []
        replaced = False
        for existing in self.list_accounts():
            if existing.get("id") == account_id:
                accounts.append(dict(entry))
                replaced = True
            else:
                accounts.append(existing)
        if not replaced:
            accounts.append(dict(entry))
        self.write_accounts(accounts)

    # Folder helpers --------------------------------------------------
    def list_folders(self) -> list[dict[str, Any]]:
        """Return every well-formed folder entry."""
        return _mapping_entries(self.read_folders().get("folders", []))

    def add_folder(self, entry: Mapping[str, object]) -> None:
        """Append a folder entry, refusing duplicate identifiers."""
        folder_id = str(entry.get("id") or "").strip()
        if not folder_id:
            raise StateRegistryError("Folder entry missing 'id'.")
        folders = self.list_folders()
        if any(existing.get("id") == folder_id for existing in folders):
            raise StateRegistryError(f"Folder '{folder_id}' already registered")
        folders.append(dict(entry))
        self.write_folders(folders)

    def remove_folder(self, folder_id: str) -> None:
        """Remove the folder entry identified by *folder_id*."""
        folders = self.list_folders()
        filtered = [entry for entry in folders if entry.get("id") != folder_id]
        if len(filtered) == len(folders):
            raise StateRegistryError(f"Folder '{folder_id}' not found in registry")
        self.write_folders(filtered)


def _mapping_entries(raw_entries: object) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    if isinstance(raw_entries, list):
        for item in raw_entries:
            if isinstance(item, Mapping):
                entries.append(dict(item))
    return entries


__all__ = ["StateRegistry", "StateRegistryError"]
