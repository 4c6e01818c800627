"""Credential objects attached to provisioning requests.

The provisioning saga never looks inside a credential: it only asks a
:class:`CredentialSupplier` for an object matching the negotiated
:class:`~davsync.provisioning.models.AuthKind` and then calls
:meth:`Credentials.attach` and :meth:`Credentials.still_valid`. Storage of
secrets is outside the scope of davsync; nothing here is ever persisted.
"""
from __future__ import annotations

import base64
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

from .errors import ErrorKind

if TYPE_CHECKING:
    from .provisioning.client import ProbeResponse
    from .provisioning.models import AuthKind


@runtime_checkable
class Credentials(Protocol):
    """Minimal contract the saga relies on."""

    user: str | None

    def attach(self, request: httpx.Request) -> None:
        """Add authentication material to *request*."""

    def still_valid(self, response: ProbeResponse) -> bool:
        """Return ``False`` when *response* shows the credentials were rejected."""


@dataclass(frozen=True)
class PlaceholderCredentials:
    """Neutral credentials used before the auth kind is known."""

    user: str | None = None

    def attach(self, request: httpx.Request) -> None:
        """Leave the request anonymous."""

    def still_valid(self, response: ProbeResponse) -> bool:
        """Placeholders cannot be rejected."""
        return True


@dataclass(frozen=True)
class HttpBasicCredentials:
    """User name and password (or app token) sent as HTTP basic auth."""

    user: str
    password: str = field(repr=False)

    def attach(self, request: httpx.Request) -> None:
        """Set the ``Authorization`` header."""
        token = base64.b64encode(f"{self.user}:{self.password}".encode()).decode("ascii")
        request.headers["Authorization"] = f"Basic {token}"

    def still_valid(self, response: ProbeResponse) -> bool:
        """Basic credentials are invalid once the server answers 401."""
        return response.error is not ErrorKind.AUTHENTICATION_REQUIRED


@dataclass(frozen=True)
class SsoSessionCredentials:
    """Session cookie obtained from a federated identity provider."""

    user: str | None
    cookie: str = field(repr=False)

    def attach(self, request: httpx.Request) -> None:
        """Set the ``Cookie`` header."""
        request.headers["Cookie"] = self.cookie

    def still_valid(self, response: ProbeResponse) -> bool:
        """An expired session shows up as 401 or a redirect back to the IdP."""
        if response.error is ErrorKind.AUTHENTICATION_REQUIRED:
            return False
        return response.redirect_target is None


class CredentialSupplier(Protocol):
    """External collaborator that knows where secrets come from."""

    def credentials_for(
        self,
        auth_kind: AuthKind,
        account_url: str,
        *,
        rejected: bool = False,
    ) -> Credentials | None | Awaitable[Credentials | None]:
        """Return credentials for *auth_kind*, or ``None`` if the user gave up.

        ``rejected`` is ``True`` when the previous credentials were refused by
        the server and the user is being asked again.
        """


@dataclass
class StaticCredentialSupplier:
    """Supplier returning pre-built credentials, in order, one per request."""

    credentials: list[Credentials | None]
    requests: list[tuple[AuthKind, str, bool]] = field(default_factory=list)

    def credentials_for(
        self,
        auth_kind: AuthKind,
        account_url: str,
        *,
        rejected: bool = False,
    ) -> Credentials | None:
        """Pop the next credentials, ``None`` once the list is exhausted."""
        self.requests.append((auth_kind, account_url, rejected))
        if not self.credentials:
            return None
        return self.credentials.pop(0)


__all__ = [
    "CredentialSupplier",
    "Credentials",
    "HttpBasicCredentials",
    "PlaceholderCredentials",
    "SsoSessionCredentials",
    "StaticCredentialSupplier",
]
