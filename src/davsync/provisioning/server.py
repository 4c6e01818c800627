"""Discovery probe confirming that a URL hosts a compatible server."""
from __future__ import annotations

import json
import logging
from urllib.parse import urlsplit, urlunsplit

from ..errors import ErrorCategory, ErrorKind
from ..tls import advise_for
from .client import Deadline, ProbeClient, ProbeResponse
from .models import ProbeOutcome, RedirectChain, RedirectLimitExceeded

LOGGER = logging.getLogger(__name__)


def status_url(base_url: str, status_path: str) -> str:
    """Return the discovery URL below *base_url*."""
    return base_url.rstrip("/") + "/" + status_path.strip("/")


def canonical_base_url(url: str, status_path: str) -> str | None:
    """Strip the discovery suffix from *url*.

    Returns ``None`` when the path does not end with the discovery resource,
    meaning the server answered somewhere unexpected.
    """
    parts = urlsplit(url)
    suffix = "/" + status_path.strip("/")
    if not parts.path.endswith(suffix):
        return None
    path = parts.path[: -len(suffix)]
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def is_valid_base_url(url: str) -> bool:
    """Return ``True`` if *url* has an http(s) scheme and a host."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in {"http", "https"} and bool(parts.hostname)


class ServerExistenceProbe:
    """GET the discovery resource, following redirects within a bound."""

    def __init__(
        self,
        client: ProbeClient,
        *,
        status_path: str = "status.php",
        max_redirects: int = 10,
    ) -> None:
        self._client = client
        self._status_path = status_path
        self._max_redirects = max_redirects

    async def probe(self, base_url: str, timeout: float) -> ProbeOutcome:
        """Return ``Success`` with the version and canonical URL, or a failure."""
        if not is_valid_base_url(base_url):
            return ProbeOutcome.transport_error(
                "Invalid URL",
                error=ErrorKind.INVALID_URL,
                category=ErrorCategory.SERVER_NOT_FOUND,
            )

        deadline = Deadline(timeout)
        url = status_url(base_url, self._status_path)
        chain = RedirectChain(self._max_redirects)
        chain.start(url)
        while True:
            response = await self._client.send("GET", url, timeout=deadline.remaining())
            if response.error is ErrorKind.TIMEOUT:
                return ProbeOutcome.timeout(f"Timeout while trying to connect to {base_url}.")
            if response.redirect_target is None:
                break
            try:
                chain.follow(response.redirect_target)
            except RedirectLimitExceeded as exc:
                LOGGER.debug("Discovery redirect chain exhausted: %s", chain.visited)
                return ProbeOutcome.transport_error(
                    str(exc),
                    status_code=response.status_code,
                    error=ErrorKind.PROTOCOL_ERROR,
                    category=ErrorCategory.REDIRECT_LOOP_OR_MISMATCH,
                )
            LOGGER.debug("Discovery redirected to %s", response.redirect_target)
            url = response.redirect_target

        return self._classify(base_url, response)

    def _classify(self, base_url: str, response: ProbeResponse) -> ProbeOutcome:
        if response.error is ErrorKind.CANCELLED:
            return ProbeOutcome.transport_error(
                response.error_string,
                error=ErrorKind.CANCELLED,
                category=ErrorCategory.USER_CANCELLED,
            )
        if response.error is ErrorKind.INVALID_URL:
            return ProbeOutcome.transport_error(
                "Invalid URL",
                error=ErrorKind.INVALID_URL,
                category=ErrorCategory.SERVER_NOT_FOUND,
            )

        raw_body: str | None = None
        if (
            response.status_code is not None
            and response.status_code != 200
            and response.content_type.startswith("text/")
        ):
            # Client-certificate and trusted-domain errors are only explained
            # in the server's own error page.
            raw_body = response.peek()

        downgrade = advise_for(response)
        if response.error.is_error:
            message = f"Failed to connect to {response.url}:\n{response.error_string}"
            if response.error is ErrorKind.CONTENT_NOT_FOUND:
                return ProbeOutcome.not_found(
                    message,
                    status_code=response.status_code,
                    raw_body=raw_body,
                    downgrade_advised=downgrade,
                )
            category = (
                ErrorCategory.NETWORK_TRANSPORT
                if response.status_code is None
                else ErrorCategory.SERVER_NOT_FOUND
            )
            return ProbeOutcome.transport_error(
                message,
                status_code=response.status_code,
                raw_body=raw_body,
                error=response.error,
                category=category,
                downgrade_advised=downgrade,
            )

        info = _parse_status(response.body)
        if info is None or response.status_code != 200:
            return ProbeOutcome.not_found(
                f"Failed to connect to {response.url}:\nThe reply was not a valid status document.",
                status_code=response.status_code,
                raw_body=raw_body,
                error=ErrorKind.PROTOCOL_ERROR,
            )
        if not _truthy(info.get("installed")):
            return ProbeOutcome.not_found(
                f"The server at {base_url} is not installed yet.",
                status_code=response.status_code,
                error=ErrorKind.PROTOCOL_ERROR,
            )

        canonical = canonical_base_url(response.url, self._status_path) or base_url.rstrip("/")
        if canonical.rstrip("/") != base_url.rstrip("/"):
            LOGGER.debug("Discovery answered at %s, canonical URL is %s", response.url, canonical)
        version = info.get("version")
        return ProbeOutcome.success(
            version=str(version) if version is not None else None,
            canonical_url=canonical,
            info=info,
        )


def _parse_status(body: bytes) -> dict[str, object] | None:
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(data, dict) or "installed" not in data or "version" not in data:
        return None
    return data


def _truthy(value: object) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


__all__ = [
    "ServerExistenceProbe",
    "canonical_base_url",
    "is_valid_base_url",
    "status_url",
]
