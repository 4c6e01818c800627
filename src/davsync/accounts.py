"""Account persistence backed by the state registry."""
from __future__ import annotations

import logging
import uuid
from dataclasses import replace

from .credentials import PlaceholderCredentials
from .provisioning.models import AccountDescriptor, AccountState
from .state.registry import StateRegistry, StateRegistryError

LOGGER = logging.getLogger(__name__)


class AccountError(RuntimeError):
    """Raised when accounts cannot be loaded or saved."""


class AccountManager:
    """Creates drafts, turns them into committed accounts and saves them.

    Committed accounts are queued until :meth:`save` writes them to
    ``accounts.yml``. Credentials never reach the registry.
    """

    def __init__(
        self,
        registry: StateRegistry,
        *,
        dav_path: str,
        proxy_mode: str = "system",
    ) -> None:
        self._registry = registry
        self._dav_path = dav_path
        self._proxy_mode = proxy_mode
        self._pending: list[AccountState] = []

    def create_draft(self, url: str = "") -> AccountDescriptor:
        """Return a fresh draft carrying placeholder credentials."""
        return AccountDescriptor(
            id=uuid.uuid4().hex[:12],
            base_url=url,
            dav_path=self._dav_path,
            credentials=PlaceholderCredentials(),
            proxy_mode=self._proxy_mode,
        )

    def commit(self, draft: AccountDescriptor) -> AccountState:
        """Detach *draft* into an :class:`AccountState` queued for :meth:`save`.

        An account already registered for the same URL and user keeps its
        identifier so that re-running setup updates it in place.
        """
        state = draft.detach()
        for existing in self.list_accounts():
            if existing.url == state.url and existing.user == state.user:
                state = replace(state, id=existing.id)
                break
        self._pending = [item for item in self._pending if item.id != state.id]
        self._pending.append(state)
        return state

    def save(self) -> list[AccountState]:
        """Persist every committed account and return what was written."""
        written: list[AccountState] = []
        for state in self._pending:
            try:
                self._registry.upsert_account(state.to_dict())
            except (StateRegistryError, OSError) as exc:
                raise AccountError(f"Unable to save account {state.id}: {exc}") from exc
            LOGGER.info("Saved account %s (%s)", state.id, state.url)
            written.append(state)
        self._pending = []
        return written

    def discard(self) -> None:
        """Drop committed accounts that were not saved yet."""
        self._pending = []

    def list_accounts(self) -> list[AccountState]:
        """Return every persisted account."""
        try:
            entries = self._registry.list_accounts()
        except StateRegistryError as exc:
            raise AccountError(str(exc)) from exc
        accounts: list[AccountState] = []
        for entry in entries:
            try:
                accounts.append(AccountState.from_dict(entry))
            except (KeyError, ValueError) as exc:
                LOGGER.warning("Skipping malformed account entry %r: %s", entry, exc)
        return accounts

    def get(self, account_id: str) -> AccountState | None:
        """Return the persisted account *account_id*, if any."""
        try:
            entry = self._registry.get_account(account_id)
        except StateRegistryError as exc:
            raise AccountError(str(exc)) from exc
        return AccountState.from_dict(entry) if entry is not None else None


__all__ = ["AccountError", "AccountManager"]
