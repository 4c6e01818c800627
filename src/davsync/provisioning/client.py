"""Cancellable single-request HTTP primitive used by every provisioning probe."""
from __future__ import annotations

import asyncio
import logging
import socket
import ssl
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import TracebackType
from typing import TYPE_CHECKING

import httpx

from ..errors import ErrorKind, error_kind_for_status

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..credentials import Credentials

LOGGER = logging.getLogger(__name__)

PEEK_LIMIT = 20 * 1024
USER_AGENT = "davsync"


class CancellationToken:
    """Flag shared by a saga and the probes it starts."""

    def __init__(self) -> None:
        """Create an uncancelled token."""
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` was called."""
        return self._cancelled

    def cancel(self) -> None:
        """Mark the token as cancelled; continuations must stop touching state."""
        self._cancelled = True


@dataclass
class Deadline:
    """Per-probe time budget spanning every request of the probe."""

    seconds: float
    started: float = field(default_factory=time.monotonic)

    def remaining(self) -> float:
        """Return the seconds left, never negative."""
        return max(0.0, self.seconds - (time.monotonic() - self.started))

    @property
    def expired(self) -> bool:
        """Return ``True`` when no time is left."""
        return self.remaining() <= 0.0


@dataclass(frozen=True)
class ProbeResponse:
    """Everything a probe needs to know about one request."""

    method: str
    url: str
    status_code: int | None = None
    headers: httpx.Headers = field(default_factory=httpx.Headers)
    body: bytes = b""
    redirect_target: str | None = None
    error: ErrorKind = ErrorKind.NONE
    error_string: str = ""
    elapsed_ms: int = 0

    @property
    def scheme(self) -> str:
        """Return the scheme of the requested URL."""
        return self.url.split(":", 1)[0].lower() if ":" in self.url else ""

    @property
    def hsts_present(self) -> bool:
        """Return ``True`` if the server sent ``Strict-Transport-Security``."""
        return "strict-transport-security" in self.headers

    @property
    def content_type(self) -> str:
        """Return the media type without parameters."""
        raw = self.headers.get("content-type", "")
        return raw.split(";", 1)[0].strip().lower()

    @property
    def text(self) -> str:
        """Return the body decoded as UTF-8, replacing invalid bytes."""
        return self.body.decode("utf-8", errors="replace")

    def peek(self, limit: int = PEEK_LIMIT) -> str:
        """Return at most *limit* bytes of the body as text."""
        return self.body[:limit].decode("utf-8", errors="replace")


class ProbeClient:
    """Thin wrapper around :class:`httpx.AsyncClient`.

    Automatic redirects are disabled so that probes can inspect each hop, and
    :meth:`send` never raises for network problems: failures are reported as
    an :class:`~davsync.errors.ErrorKind` on the returned response.
    """

    def __init__(
        self,
        *,
        timeout: float,
        proxy: str | None = None,
        verify: bool | ssl.SSLContext = True,
        transport: httpx.AsyncBaseTransport | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        """Create the underlying client; *transport* replaces the network in tests."""
        self._timeout = timeout
        self.token = token or CancellationToken()
        options: dict[str, object] = {}
        if transport is not None:
            options["transport"] = transport
        elif proxy:
            options["proxy"] = proxy
        self._client = httpx.AsyncClient(
            follow_redirects=False,
            trust_env=False,
            verify=verify,
            timeout=httpx.Timeout(timeout),
            headers={"User-Agent": USER_AGENT},
            **options,  # type: ignore[arg-type]
        )

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        proxy: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        token: CancellationToken | None = None,
    ) -> ProbeClient:
        """Build a client honouring the ``tls`` and ``timeouts`` sections."""
        verify: bool | ssl.SSLContext = config.tls.verify
        if config.tls.verify and config.tls.ca_bundle is not None:
            verify = ssl.create_default_context(cafile=str(config.tls.ca_bundle))
        return cls(
            timeout=config.timeouts.request,
            proxy=proxy,
            verify=verify,
            transport=transport,
            token=token,
        )

    @property
    def timeout(self) -> float:
        """Return the default per-request timeout."""
        return self._timeout

    async def send(
        self,
        method: str,
        url: str,
        *,
        credentials: Credentials | None = None,
        headers: Mapping[str, str] | None = None,
        content: bytes | str | None = None,
        timeout: float | None = None,
    ) -> ProbeResponse:
        """Issue one request and classify its result."""
        started = time.perf_counter()
        budget = self._timeout if timeout is None else timeout

        def elapsed() -> int:
            return int((time.perf_counter() - started) * 1000)

        if self.token.cancelled:
            return ProbeResponse(
                method=method,
                url=url,
                error=ErrorKind.CANCELLED,
                error_string="Operation canceled",
            )
        if budget <= 0:
            return ProbeResponse(
                method=method,
                url=url,
                error=ErrorKind.TIMEOUT,
                error_string="Connection timed out",
            )

        try:
            request = self._client.build_request(
                method,
                url,
                headers=dict(headers or {}),
                content=content,
                timeout=httpx.Timeout(budget),
            )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol, ValueError) as exc:
            return ProbeResponse(
                method=method,
                url=url,
                error=ErrorKind.INVALID_URL,
                error_string=f"Invalid URL: {exc}",
            )
        if credentials is not None:
            credentials.attach(request)

        LOGGER.debug("%s %s (timeout %.1fs)", method, url, budget)
        try:
            async with asyncio.timeout(budget):
                response = await self._client.send(request)
        except (TimeoutError, httpx.TimeoutException):
            LOGGER.debug("%s %s timed out after %dms", method, url, elapsed())
            return ProbeResponse(
                method=method,
                url=url,
                error=ErrorKind.TIMEOUT,
                error_string="Connection timed out",
                elapsed_ms=elapsed(),
            )
        except httpx.HTTPError as exc:
            kind = classify_exception(exc)
            LOGGER.debug("%s %s failed (%s): %s", method, url, kind.value, exc)
            return ProbeResponse(
                method=method,
                url=url,
                error=kind,
                error_string=_describe_exception(kind, url, exc),
                elapsed_ms=elapsed(),
            )

        status = response.status_code
        redirect_target: str | None = None
        location = response.headers.get("location")
        if 300 <= status < 400 and location:
            redirect_target = str(response.request.url.join(location))
        kind = error_kind_for_status(status)
        error_string = ""
        if kind.is_error:
            reason = response.reason_phrase or str(status)
            error_string = f"Error transferring {url} - server replied: {reason}"
        LOGGER.debug("%s %s -> %s in %dms", method, url, status, elapsed())
        return ProbeResponse(
            method=method,
            url=str(response.request.url),
            status_code=status,
            headers=response.headers,
            body=response.content,
            redirect_target=redirect_target,
            error=kind,
            error_string=error_string,
            elapsed_ms=elapsed(),
        )

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    async def __aenter__(self) -> ProbeClient:
        """Return the client for ``async with`` use."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        """Close the client."""
        await self.aclose()


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map an exception raised by httpx to an :class:`ErrorKind`."""
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        if isinstance(current, httpx.TimeoutException | TimeoutError):
            return ErrorKind.TIMEOUT
        if isinstance(current, httpx.ProxyError):
            return ErrorKind.PROXY_ERROR
        if isinstance(current, httpx.UnsupportedProtocol | httpx.InvalidURL):
            return ErrorKind.INVALID_URL
        if isinstance(current, ssl.SSLError):
            return ErrorKind.SSL_HANDSHAKE
        if isinstance(current, socket.gaierror):
            return ErrorKind.HOST_NOT_FOUND
        if isinstance(current, ConnectionRefusedError):
            return ErrorKind.CONNECTION_REFUSED
        current = current.__cause__ or current.__context__

    message = str(exc).lower()
    if "name or service not known" in message or "nodename nor servname" in message:
        return ErrorKind.HOST_NOT_FOUND
    if "certificate" in message or "ssl" in message:
        return ErrorKind.SSL_HANDSHAKE
    if "connection refused" in message:
        return ErrorKind.CONNECTION_REFUSED
    return ErrorKind.NETWORK


def _describe_exception(kind: ErrorKind, url: str, exc: BaseException) -> str:
    host = httpx.URL(url).host if kind is not ErrorKind.INVALID_URL else url
    if kind is ErrorKind.HOST_NOT_FOUND:
        return f"Host {host} not found"
    if kind is ErrorKind.CONNECTION_REFUSED:
        return "Connection refused"
    if kind is ErrorKind.SSL_HANDSHAKE:
        return f"SSL handshake failed: {exc}"
    if kind is ErrorKind.PROXY_ERROR:
        return f"Proxy error: {exc}"
    if kind is ErrorKind.INVALID_URL:
        return f"Invalid URL: {exc}"
    return str(exc) or exc.__class__.__name__


__all__ = [
    "CancellationToken",
    "Deadline",
    "PEEK_LIMIT",
    "ProbeClient",
    "ProbeResponse",
    "classify_exception",
]
