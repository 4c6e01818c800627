"""Data models for the account provisioning workflow."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from ..errors import ErrorCategory, ErrorKind

if TYPE_CHECKING:
    from ..credentials import Credentials


class AuthKind(str, Enum):
    """Authentication scheme an endpoint expects."""

    HTTP_BASIC = "http-basic"
    FEDERATED_SSO = "federated-sso"


class OutcomeKind(str, Enum):
    """Tag of a :class:`ProbeOutcome`."""

    SUCCESS = "success"
    NOT_FOUND = "not-found"
    AUTH_REQUIRED = "auth-required"
    TRANSPORT_ERROR = "transport-error"
    TIMEOUT = "timeout"


@dataclass(slots=True, frozen=True)
class ProbeOutcome:
    """Classified result of a single probe."""

    kind: OutcomeKind
    message: str = ""
    version: str | None = None
    canonical_url: str | None = None
    status_code: int | None = None
    raw_body: str | None = None
    error: ErrorKind = ErrorKind.NONE
    category: ErrorCategory | None = None
    downgrade_advised: bool = False
    redirect_corrected: bool = False
    info: Mapping[str, Any] | None = None

    @property
    def is_success(self) -> bool:
        """Return ``True`` when the probe succeeded."""
        return self.kind is OutcomeKind.SUCCESS

    @classmethod
    def success(
        cls,
        *,
        version: str | None,
        canonical_url: str,
        info: Mapping[str, Any] | None = None,
        message: str = "",
        redirect_corrected: bool = False,
    ) -> ProbeOutcome:
        """Build a ``Success`` outcome."""
        return cls(
            kind=OutcomeKind.SUCCESS,
            message=message,
            version=version,
            canonical_url=canonical_url,
            info=info,
            redirect_corrected=redirect_corrected,
        )

    @classmethod
    def not_found(
        cls,
        message: str,
        *,
        status_code: int | None = None,
        raw_body: str | None = None,
        error: ErrorKind = ErrorKind.CONTENT_NOT_FOUND,
        downgrade_advised: bool = False,
    ) -> ProbeOutcome:
        """Build a ``NotFound`` outcome."""
        return cls(
            kind=OutcomeKind.NOT_FOUND,
            message=message,
            status_code=status_code,
            raw_body=raw_body,
            error=error,
            category=ErrorCategory.SERVER_NOT_FOUND,
            downgrade_advised=downgrade_advised,
        )

    @classmethod
    def auth_required(cls, message: str, *, status_code: int | None = None) -> ProbeOutcome:
        """Build an ``AuthRequired`` outcome."""
        return cls(
            kind=OutcomeKind.AUTH_REQUIRED,
            message=message,
            status_code=status_code,
            error=ErrorKind.AUTHENTICATION_REQUIRED,
            category=ErrorCategory.AUTHENTICATION_INVALID,
        )

    @classmethod
    def transport_error(
        cls,
        message: str,
        *,
        status_code: int | None = None,
        raw_body: str | None = None,
        error: ErrorKind = ErrorKind.NETWORK,
        category: ErrorCategory = ErrorCategory.NETWORK_TRANSPORT,
        downgrade_advised: bool = False,
    ) -> ProbeOutcome:
        """Build a ``TransportError`` outcome."""
        return cls(
            kind=OutcomeKind.TRANSPORT_ERROR,
            message=message,
            status_code=status_code,
            raw_body=raw_body,
            error=error,
            category=category,
            downgrade_advised=downgrade_advised,
        )

    @classmethod
    def timeout(cls, message: str) -> ProbeOutcome:
        """Build a ``Timeout`` outcome."""
        return cls(
            kind=OutcomeKind.TIMEOUT,
            message=message,
            error=ErrorKind.TIMEOUT,
            category=ErrorCategory.NETWORK_TRANSPORT,
        )


class RedirectLimitExceeded(RuntimeError):
    """Raised when a redirect chain would grow past its bound."""


@dataclass(slots=True)
class RedirectChain:
    """Ordered URLs visited by one logical probe, bounded by ``max_redirects``."""

    max_redirects: int
    visited: list[str] = field(default_factory=list)

    @property
    def hops(self) -> int:
        """Return the number of redirects taken so far."""
        return max(0, len(self.visited) - 1)

    def can_follow(self) -> bool:
        """Return ``True`` while another hop stays within the bound."""
        return self.hops < self.max_redirects

    def start(self, url: str) -> None:
        """Record the initial request URL."""
        self.visited = [url]

    def follow(self, url: str) -> None:
        """Record an additional hop, checking the bound first."""
        if not self.can_follow():
            raise RedirectLimitExceeded(
                f"Exceeded {self.max_redirects} redirects: {' -> '.join(self.visited)}"
            )
        self.visited.append(url)


def dav_url(base_url: str, dav_path: str, remote_path: str = "") -> str:
    """Return the WebDAV URL for *remote_path* below *base_url*."""
    root = base_url.rstrip("/") + "/" + dav_path.strip("/")
    remote = remote_path.strip("/")
    if not remote:
        return root + "/"
    return root + "/" + quote(remote, safe="/") + "/"


@dataclass(slots=True)
class AccountDescriptor:
    """Mutable account draft, owned by the provisioning saga until commit."""

    id: str
    base_url: str
    dav_path: str
    credentials: Credentials
    server_version: str | None = None
    server_product: str | None = None
    auth_kind: AuthKind | None = None
    proxy_mode: str = "system"
    proxy_url: str | None = None

    @property
    def dav_url(self) -> str:
        """Return the WebDAV root URL of the account."""
        return dav_url(self.base_url, self.dav_path)

    def detach(self) -> AccountState:
        """Return an immutable snapshot that later draft changes cannot affect."""
        return AccountState(
            id=self.id,
            url=self.base_url,
            dav_path=self.dav_path,
            server_version=self.server_version,
            server_product=self.server_product,
            auth_kind=self.auth_kind,
            proxy_mode=self.proxy_mode,
            user=getattr(self.credentials, "user", None),
            credentials=self.credentials,
        )


@dataclass(slots=True, frozen=True)
class AccountState:
    """Committed account; credentials are kept in memory only."""

    id: str
    url: str
    dav_path: str
    server_version: str | None
    server_product: str | None
    auth_kind: AuthKind | None
    proxy_mode: str
    user: str | None = None
    credentials: Credentials | None = field(default=None, compare=False, repr=False)

    @property
    def dav_url(self) -> str:
        """Return the WebDAV root URL of the account."""
        return dav_url(self.url, self.dav_path)

    def to_dict(self) -> dict[str, object]:
        """Return the persisted representation (no secrets)."""
        return {
            "id": self.id,
            "url": self.url,
            "dav_path": self.dav_path,
            "server_version": self.server_version,
            "server_product": self.server_product,
            "auth_kind": self.auth_kind.value if self.auth_kind is not None else None,
            "proxy_mode": self.proxy_mode,
            "user": self.user,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AccountState:
        """Rebuild an account from its persisted representation."""
        auth_raw = data.get("auth_kind")
        return cls(
            id=str(data["id"]),
            url=str(data.get("url", "")),
            dav_path=str(data.get("dav_path", "")),
            server_version=_optional_str(data.get("server_version")),
            server_product=_optional_str(data.get("server_product")),
            auth_kind=AuthKind(auth_raw) if auth_raw else None,
            proxy_mode=str(data.get("proxy_mode", "system")),
            user=_optional_str(data.get("user")),
        )


@dataclass(slots=True, frozen=True)
class FolderDefinition:
    """Local/remote folder pair registered for synchronization."""

    local_path: str
    remote_path: str
    ignore_hidden_files: bool = True
    selective_sync_blacklist: tuple[str, ...] = ()
    selective_sync_whitelist: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "local_path": self.local_path,
            "remote_path": self.remote_path,
            "ignore_hidden_files": self.ignore_hidden_files,
            "selective_sync_blacklist": list(self.selective_sync_blacklist),
            "selective_sync_whitelist": list(self.selective_sync_whitelist),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FolderDefinition:
        """Rebuild a definition from its serialised form."""
        return cls(
            local_path=str(data["local_path"]),
            remote_path=str(data.get("remote_path", "/")),
            ignore_hidden_files=bool(data.get("ignore_hidden_files", True)),
            selective_sync_blacklist=tuple(data.get("selective_sync_blacklist") or ()),
            selective_sync_whitelist=tuple(data.get("selective_sync_whitelist") or ()),
        )


class ProvisionStatus(str, Enum):
    """Terminal state of a folder provisioning step."""

    CREATED = "created"
    ALREADY_EXISTS = "already-exists"
    EXISTED = "existed"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class ProvisionResult:
    """Outcome of ``ensure_local`` or ``ensure_remote``."""

    status: ProvisionStatus
    path: str
    message: str = ""
    status_code: int | None = None
    category: ErrorCategory | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` unless the step failed."""
        return self.status is not ProvisionStatus.FAILED


class LogLevel(str, Enum):
    """Severity of a configuration log entry."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class LogEntry:
    """Single human-readable line of the configuration log."""

    message: str
    level: LogLevel = LogLevel.INFO


class SagaState(str, Enum):
    """States of the provisioning saga."""

    START = "start"
    SERVER_EXISTENCE_CHECK = "server-existence-check"
    AUTH_TYPE_NEGOTIATION = "auth-type-negotiation"
    AWAITING_CREDENTIALS = "awaiting-credentials"
    AUTHENTICATED_VERIFICATION = "authenticated-verification"
    FOLDER_PROVISIONING = "folder-provisioning"
    COMMIT = "commit"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` for :attr:`COMMIT` and :attr:`ABORTED`."""
        return self in (SagaState.COMMIT, SagaState.ABORTED)


@dataclass(slots=True, frozen=True)
class SagaEvent:
    """Notification emitted to saga subscribers."""

    kind: str
    state: SagaState
    entry: LogEntry | None = None
    result: ProvisioningResult | None = None


@dataclass(slots=True)
class ProvisioningResult:
    """Terminal report of a saga run."""

    success: bool
    state: SagaState
    log: Sequence[LogEntry] = ()
    committed_folder: FolderDefinition | None = None
    account: AccountState | None = None
    error: ErrorCategory | None = None
    downgrade_advised: bool = False

    @property
    def errors(self) -> list[LogEntry]:
        """Return the error entries of the log."""
        return [entry for entry in self.log if entry.level is LogLevel.ERROR]


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "AccountDescriptor",
    "AccountState",
    "AuthKind",
    "FolderDefinition",
    "LogEntry",
    "LogLevel",
    "OutcomeKind",
    "ProbeOutcome",
    "ProvisionResult",
    "ProvisionStatus",
    "ProvisioningResult",
    "RedirectChain",
    "RedirectLimitExceeded",
    "SagaEvent",
    "SagaState",
    "dav_url",
]
