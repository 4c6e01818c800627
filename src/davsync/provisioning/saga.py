"""The account provisioning saga.

:class:`ProvisioningSaga` drives one setup run through its states::

    START -> SERVER_EXISTENCE_CHECK -> AUTH_TYPE_NEGOTIATION
          -> AWAITING_CREDENTIALS -> AUTHENTICATED_VERIFICATION
          -> FOLDER_PROVISIONING -> COMMIT | ABORTED

Each step awaits exactly one probe, so probes never overlap. The saga owns a
:class:`~davsync.provisioning.client.CancellationToken`; :meth:`close` cancels
it and every continuation checks it before touching the draft account.
Nothing is persisted unless the run reaches ``COMMIT``.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import httpx
from packaging.version import InvalidVersion, Version

from ..errors import ErrorCategory, ErrorKind
from ..filesystem import (
    FilesystemError,
    prepare_local_path,
    prepare_target_path,
    start_from_scratch,
)
from ..proxy import ProxyResolutionError, resolve_proxy
from ..tls import TLSInspectionError, describe_peer_certificate
from .auth import AuthTypeNegotiator
from .client import CancellationToken, ProbeClient
from .connectivity import AuthenticatedConnectivityProbe
from .folders import FolderProvisioner
from .models import (
    AccountDescriptor,
    AccountState,
    AuthKind,
    FolderDefinition,
    LogEntry,
    LogLevel,
    OutcomeKind,
    ProbeOutcome,
    ProvisioningResult,
    SagaEvent,
    SagaState,
)
from .server import ServerExistenceProbe

if TYPE_CHECKING:
    from ..accounts import AccountManager
    from ..config import AppConfig
    from ..credentials import CredentialSupplier
    from ..folders import FolderRegistry

LOGGER = logging.getLogger(__name__)

SagaListener = Callable[[SagaEvent], None]


class SagaError(RuntimeError):
    """Raised when the saga is driven out of order."""


@dataclass(frozen=True)
class FolderRequest:
    """Folder pair the user asked for."""

    local_path: str
    remote_path: str = "/"
    ignore_hidden_files: bool = True
    selective_sync_blacklist: Sequence[str] = ()
    confirm_big_folders: bool = False
    start_from_scratch: bool = False


def normalize_user_url(url: str) -> str:
    """Default to https when the user typed no scheme and drop trailing slashes."""
    text = url.strip()
    if not text.startswith(("http://", "https://")):
        text = "https://" + text
    return text.rstrip("/")


class ProvisioningSaga:
    """Ordered, cancellable account setup workflow."""

    def __init__(
        self,
        config: AppConfig,
        *,
        accounts: AccountManager,
        folders: FolderRegistry,
        supplier: CredentialSupplier,
        transport: httpx.AsyncBaseTransport | None = None,
        max_credential_attempts: int = 3,
        favorites_file: Path | None = None,
    ) -> None:
        self._config = config
        self._accounts = accounts
        self._folders = folders
        self._supplier = supplier
        self._transport = transport
        self._max_credential_attempts = max_credential_attempts
        self._favorites_file = favorites_file

        self._token = CancellationToken()
        self._state = SagaState.START
        self._history: list[SagaState] = [SagaState.START]
        self._log_entries: list[LogEntry] = []
        self._listeners: list[SagaListener] = []
        self._draft: AccountDescriptor | None = None
        self._client: ProbeClient | None = None
        self._task: asyncio.Task[object] | None = None
        self._remote_folder: str | None = None
        self._downgrade_advised = False
        self._result: ProvisioningResult | None = None
        self._announced = False
        self._closed = False

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    @property
    def state(self) -> SagaState:
        """Return the current state."""
        return self._state

    @property
    def history(self) -> tuple[SagaState, ...]:
        """Return every state entered so far, in order."""
        return tuple(self._history)

    @property
    def log(self) -> tuple[LogEntry, ...]:
        """Return the configuration log."""
        return tuple(self._log_entries)

    @property
    def result(self) -> ProvisioningResult | None:
        """Return the terminal result once the saga has finished."""
        return self._result

    @property
    def remote_folder(self) -> str | None:
        """Return the remote folder the saga is working with."""
        return self._remote_folder

    @property
    def finished(self) -> bool:
        """Return ``True`` once the saga is terminal or closed."""
        return self._closed or self._state.is_terminal

    def subscribe(self, listener: SagaListener) -> Callable[[], None]:
        """Register *listener* for :class:`SagaEvent` notifications."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Driving the saga
    # ------------------------------------------------------------------
    async def run(self, url: str | None, folder: FolderRequest | None = None) -> ProvisioningResult:
        """Run every step; ``folder=None`` skips folder configuration."""
        if self._state is not SagaState.START or self._draft is not None:
            raise SagaError("A provisioning saga can only be run once.")
        self._task = asyncio.current_task()
        try:
            if not await self.start(url):
                return self._finish()
            if not await self.check_server():
                return self._finish()
            auth_kind = await self.negotiate_auth()
            if auth_kind is None:
                return self._finish()
            if not await self.authenticate(auth_kind):
                return self._finish()
            if folder is None:
                return self.skip_folder_configuration()
            if not await self.provision_folders(folder):
                return self._finish()
            return self.commit(folder)
        except asyncio.CancelledError:
            if self._result is not None and not self._closed:
                # Cancelled by skip_folder_configuration().
                return self._result
            self._state = SagaState.ABORTED
            raise
        finally:
            self._task = None
            if self._client is not None:
                await self._client.aclose()

    async def start(self, url: str | None) -> bool:
        """Create the draft with placeholder credentials and resolve the proxy."""
        raw_url = url or self._config.server.override_url
        if not raw_url:
            self._abort("No server URL given.", ErrorCategory.SERVER_NOT_FOUND)
            return False
        normalized = normalize_user_url(raw_url)
        draft = self._accounts.create_draft(normalized)
        self._draft = draft
        try:
            selection = await resolve_proxy(self._config.proxy, normalized)
        except ProxyResolutionError as exc:
            self._abort(str(exc), ErrorCategory.NETWORK_TRANSPORT)
            return False
        if not self._alive():
            return False
        draft.proxy_mode = selection.mode
        draft.proxy_url = selection.url
        self._client = ProbeClient.from_config(
            self._config,
            proxy=selection.url,
            transport=self._transport,
            token=self._token,
        )
        return True

    async def check_server(self) -> bool:
        """Confirm a compatible server answers at the draft URL."""
        draft, client = self._require_running()
        self._transition(SagaState.SERVER_EXISTENCE_CHECK)
        self._log(f"Trying to connect to {draft.base_url}...")
        probe = ServerExistenceProbe(
            client,
            status_path=self._config.server.status_path,
            max_redirects=self._config.server.max_redirects,
        )
        scheme = urlsplit(draft.base_url).scheme
        outcome = await probe.probe(draft.base_url, self._config.timeouts.for_scheme(scheme))
        if not self._alive():
            return False
        if outcome.is_success:
            info = outcome.info or {}
            draft.server_version = outcome.version
            draft.server_product = _optional_text(info.get("productname"))
            if outcome.canonical_url and outcome.canonical_url != draft.base_url:
                LOGGER.debug("%s was redirected to %s", draft.base_url, outcome.canonical_url)
                draft.base_url = outcome.canonical_url
            product = draft.server_product or "server"
            versionstring = _optional_text(info.get("versionstring")) or outcome.version or "?"
            self._log(
                f"Successfully connected to {draft.base_url}: {product} version "
                f"{versionstring} ({outcome.version})",
                LogLevel.SUCCESS,
            )
            self._check_min_version(outcome.version)
            return True

        if outcome.raw_body:
            self._log(f"The server replied:\n{outcome.raw_body}", LogLevel.WARNING)
        if outcome.error is ErrorKind.SSL_HANDSHAKE and self._config.tls.inspect_certificates:
            await self._describe_certificate(draft.base_url)
            if not self._alive():
                return False
        self._fail(outcome)
        return False

    async def negotiate_auth(self) -> AuthKind | None:
        """Detect the authentication scheme and record it on the draft."""
        draft, client = self._require_running()
        self._transition(SagaState.AUTH_TYPE_NEGOTIATION)
        negotiator = AuthTypeNegotiator(
            client,
            sso_indicators=self._config.server.sso_indicators,
            timeout=self._config.timeouts.request,
        )
        auth_kind = await negotiator.negotiate(
            draft.base_url,
            self._config.server.dav_path,
            self._config.server.max_redirects,
        )
        if not self._alive():
            return None
        draft.auth_kind = auth_kind
        self._log(f"Server expects {auth_kind.value} authentication.")
        return auth_kind

    async def authenticate(self, auth_kind: AuthKind) -> bool:
        """Collect credentials and verify them until accepted or given up."""
        draft, client = self._require_running()
        probe = AuthenticatedConnectivityProbe(client, timeout=self._config.timeouts.request)
        rejected = False
        attempts = 0
        while True:
            self._transition(SagaState.AWAITING_CREDENTIALS)
            supplied = self._supplier.credentials_for(auth_kind, draft.base_url, rejected=rejected)
            credentials = await supplied if inspect.isawaitable(supplied) else supplied
            if not self._alive():
                return False
            if credentials is None:
                self._abort(
                    "Setup cancelled: no credentials supplied.", ErrorCategory.USER_CANCELLED
                )
                return False
            draft.credentials = credentials
            attempts += 1

            self._transition(SagaState.AUTHENTICATED_VERIFICATION)
            self._log(f"Verifying credentials at {draft.base_url}...")
            before = draft.base_url
            outcome = await probe.verify(draft, self._config.server.dav_path)
            if not self._alive():
                return False
            if draft.base_url != before:
                self._log(f"The authenticated request was redirected, using {draft.base_url}.")
                self._transition(SagaState.AUTHENTICATED_VERIFICATION)
            if outcome.is_success:
                self._log("Credentials accepted.", LogLevel.SUCCESS)
                return True
            if outcome.kind is OutcomeKind.AUTH_REQUIRED:
                self._log(outcome.message, LogLevel.WARNING)
                if attempts >= self._max_credential_attempts:
                    self._abort(
                        f"Credentials rejected {attempts} times, giving up.",
                        ErrorCategory.AUTHENTICATION_INVALID,
                    )
                    return False
                rejected = True
                continue
            self._fail(outcome)
            return False

    async def provision_folders(self, request: FolderRequest) -> bool:
        """Ensure the local folder, then (only if that worked) the remote one."""
        draft, client = self._require_running()
        self._transition(SagaState.FOLDER_PROVISIONING)
        local_path = prepare_local_path(request.local_path)
        # Imported here to keep davsync.folders free of a module-level cycle.
        from ..folders import FolderRegistryError

        try:
            self._folders.validate_local_path(local_path)
        except FolderRegistryError as exc:
            self._abort(str(exc), ErrorCategory.LOCAL_FILESYSTEM)
            return False

        provisioner = FolderProvisioner(
            client,
            dav_path=self._config.server.dav_path,
            bookmarks=self._favorites_file,
            timeout=self._config.timeouts.request,
        )
        local = provisioner.ensure_local(local_path)
        if not local.ok:
            self._abort(local.message, local.category or ErrorCategory.LOCAL_FILESYSTEM)
            return False
        self._log(local.message)

        self._remote_folder = request.remote_path
        self._log(f"Checking remote folder {prepare_target_path(request.remote_path)}...")
        remote = await provisioner.ensure_remote(draft, request.remote_path)
        if not self._alive():
            return False
        if not remote.ok:
            if remote.category is ErrorCategory.AUTHENTICATION_INVALID:
                self._remote_folder = None
            self._abort(remote.message, remote.category or ErrorCategory.REMOTE_FOLDER_CONFLICT)
            return False
        self._log(remote.message, LogLevel.SUCCESS)
        return True

    def commit(self, request: FolderRequest) -> ProvisioningResult:
        """Persist the account and register the folder pair."""
        if self._state is not SagaState.FOLDER_PROVISIONING or self._draft is None:
            raise SagaError(f"Cannot commit from state {self._state.value}.")
        local_path = prepare_local_path(request.local_path)
        if request.start_from_scratch:
            try:
                backup = start_from_scratch(Path(local_path))
            except FilesystemError as exc:
                self._abort(str(exc), ErrorCategory.LOCAL_FILESYSTEM)
                return self._finish()
            if backup is not None:
                self._log(f"Moved the previous contents of {local_path} to {backup}.")

        state = self._commit_account()
        if state is None:
            return self._finish()

        from ..folders import FolderRegistryError, SelectiveSyncListKind

        blacklist = tuple(request.selective_sync_blacklist)
        whitelist: tuple[str, ...] = () if request.confirm_big_folders else ("/",)
        definition = FolderDefinition(
            local_path=local_path,
            remote_path=prepare_target_path(self._remote_folder or request.remote_path),
            ignore_hidden_files=request.ignore_hidden_files,
            selective_sync_blacklist=blacklist,
            selective_sync_whitelist=whitelist,
        )
        folder_id: str | None = None
        try:
            handle = self._folders.add_folder(state, definition)
            folder_id = handle.id
            handle.journal.set_selective_sync_list(SelectiveSyncListKind.BLACKLIST, blacklist)
            if whitelist:
                # Nothing left to confirm: everything is on the white list.
                handle.journal.set_selective_sync_list(SelectiveSyncListKind.WHITELIST, whitelist)
        except FolderRegistryError as exc:
            self._accounts.discard()
            if folder_id is not None:
                self._unregister_folder(folder_id)
            self._abort(
                f"Unable to register folder {local_path}: {exc}",
                ErrorCategory.LOCAL_FILESYSTEM,
            )
            return self._finish()

        if not self._save_accounts():
            self._unregister_folder(handle.id)
            return self._finish()

        self._log(
            f"A sync connection from {local_path} to remote directory "
            f"{definition.remote_path} was set up."
        )
        self._log(f"Successfully connected to {self._config.app_name}!", LogLevel.SUCCESS)
        self._transition(SagaState.COMMIT)
        return self._finish(success=True, account=state, folder=definition)

    def skip_folder_configuration(self) -> ProvisioningResult:
        """Persist the account without registering any folder."""
        if self._state.is_terminal or self._closed:
            raise SagaError("The saga has already finished.")
        if self._draft is None:
            raise SagaError("No account draft to persist; start the saga first.")
        state = self._commit_account()
        if state is None or not self._save_accounts():
            return self._finish()
        self._log("Folder configuration skipped.")
        self._transition(SagaState.COMMIT)
        result = self._finish(success=True, account=state)
        # Stop whatever step was still in flight; its continuation is a no-op now.
        self._token.cancel()
        self._cancel_task()
        return result

    def close(self) -> None:
        """Tear the saga down; pending continuations will not touch the draft."""
        if self._closed:
            return
        self._closed = True
        self._token.cancel()
        if not self._state.is_terminal:
            self._state = SagaState.ABORTED
        self._cancel_task()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _alive(self) -> bool:
        return not self._token.cancelled and not self._closed and not self._state.is_terminal

    def _require_running(self) -> tuple[AccountDescriptor, ProbeClient]:
        if self._draft is None or self._client is None:
            raise SagaError("The saga has not been started.")
        if not self._alive():
            raise SagaError("The saga has already finished.")
        return self._draft, self._client

    def _cancel_task(self) -> None:
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _transition(self, state: SagaState) -> None:
        self._state = state
        self._history.append(state)
        LOGGER.debug("Saga state -> %s", state.value)
        self._emit(SagaEvent(kind="state", state=state))

    def _log(self, message: str, level: LogLevel = LogLevel.INFO) -> None:
        entry = LogEntry(message=message, level=level)
        self._log_entries.append(entry)
        self._emit(SagaEvent(kind="log", state=self._state, entry=entry))

    def _emit(self, event: SagaEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    def _check_min_version(self, version: str | None) -> None:
        if not version:
            return
        try:
            parsed = Version(version)
        except InvalidVersion:
            self._log(f"Unrecognised server version '{version}'.", LogLevel.WARNING)
            return
        minimum = Version(self._config.server.min_version)
        if parsed < minimum:
            self._log(
                f"Server version {version} is older than the supported minimum {minimum}.",
                LogLevel.WARNING,
            )

    async def _describe_certificate(self, url: str) -> None:
        parts = urlsplit(url)
        if not parts.hostname:
            return
        try:
            summary = await describe_peer_certificate(
                parts.hostname,
                parts.port or 443,
                timeout=self._config.timeouts.plain,
            )
        except TLSInspectionError as exc:
            LOGGER.debug("Certificate inspection failed: %s", exc)
            return
        details = (
            f"Server certificate: subject {summary.subject}, issuer {summary.issuer}, "
            f"valid {summary.not_valid_before:%Y-%m-%d} to {summary.not_valid_after:%Y-%m-%d}, "
            f"SHA-256 {summary.fingerprint_sha256}"
        )
        if summary.self_signed:
            details += " (self-signed)"
        self._log(details, LogLevel.WARNING)

    def _commit_account(self) -> AccountState | None:
        from ..accounts import AccountError

        assert self._draft is not None
        try:
            return self._accounts.commit(self._draft)
        except AccountError as exc:
            self._abort(str(exc), ErrorCategory.LOCAL_FILESYSTEM)
            return None

    def _save_accounts(self) -> bool:
        from ..accounts import AccountError

        try:
            self._accounts.save()
        except AccountError as exc:
            self._accounts.discard()
            self._abort(str(exc), ErrorCategory.LOCAL_FILESYSTEM)
            return False
        return True

    def _unregister_folder(self, folder_id: str) -> None:
        from ..folders import FolderRegistryError

        try:
            self._folders.remove_folder(folder_id)
        except FolderRegistryError as exc:
            LOGGER.warning("Could not roll back folder %s: %s", folder_id, exc)

    def _fail(self, outcome: ProbeOutcome) -> None:
        category = outcome.category or ErrorCategory.NETWORK_TRANSPORT
        message = outcome.message or "Unknown error."
        if outcome.downgrade_advised:
            self._downgrade_advised = True
            message += " The secure connection failed; retrying with http:// may work."
        self._abort(message, category)

    def _abort(self, message: str, category: ErrorCategory) -> None:
        self._log(message, LogLevel.ERROR)
        if category is not ErrorCategory.USER_CANCELLED:
            self._log(
                f"Connection to {self._config.app_name} could not be established. "
                "Please check again.",
                LogLevel.ERROR,
            )
        self._transition(SagaState.ABORTED)
        self._result = ProvisioningResult(
            success=False,
            state=SagaState.ABORTED,
            log=list(self._log_entries),
            error=category,
            downgrade_advised=self._downgrade_advised,
        )

    def _finish(
        self,
        *,
        success: bool | None = None,
        account: AccountState | None = None,
        folder: FolderDefinition | None = None,
        error: ErrorCategory | None = None,
    ) -> ProvisioningResult:
        if success is not None:
            self._result = ProvisioningResult(
                success=success,
                state=self._state,
                log=list(self._log_entries),
                committed_folder=folder,
                account=account,
                error=error,
                downgrade_advised=self._downgrade_advised,
            )
        if self._result is None:
            # Torn down by close(): report without emitting.
            return ProvisioningResult(
                success=False,
                state=self._state,
                log=list(self._log_entries),
                error=ErrorCategory.USER_CANCELLED,
            )
        if not self._announced:
            self._announced = True
            self._emit(SagaEvent(kind="finished", state=self._state, result=self._result))
        return self._result


class SagaSlot:
    """Owned handle allowing at most one saga in flight.

    Starting a saga while another one occupies the slot is a no-op that
    returns ``None``.
    """

    def __init__(self) -> None:
        self._saga: ProvisioningSaga | None = None

    @property
    def active(self) -> ProvisioningSaga | None:
        """Return the saga in flight, if any."""
        if self._saga is not None and self._saga.finished:
            self._saga = None
        return self._saga

    def claim(self, saga: ProvisioningSaga) -> bool:
        """Occupy the slot with *saga*; ``False`` if another one is running."""
        current = self.active
        if current is not None and current is not saga:
            LOGGER.info("A provisioning saga is already running; ignoring new request")
            return False
        self._saga = saga
        return True

    def release(self, saga: ProvisioningSaga) -> None:
        """Free the slot if *saga* holds it."""
        if self._saga is saga:
            self._saga = None

    async def run(
        self,
        saga: ProvisioningSaga,
        url: str | None,
        folder: FolderRequest | None = None,
    ) -> ProvisioningResult | None:
        """Run *saga* unless another one is in flight."""
        if not self.claim(saga):
            return None
        try:
            return await saga.run(url, folder)
        finally:
            self.release(saga)

    def close(self) -> None:
        """Tear down the saga in flight, if any."""
        if self._saga is not None:
            self._saga.close()
            self._saga = None


def _optional_text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "FolderRequest",
    "ProvisioningSaga",
    "SagaError",
    "SagaListener",
    "SagaSlot",
    "normalize_user_url",
]
