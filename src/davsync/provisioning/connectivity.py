"""Verify credentials against the authenticated WebDAV surface."""
from __future__ import annotations

import logging
import xml.etree.ElementTree as ET
from urllib.parse import urlsplit, urlunsplit

from ..errors import ErrorCategory, ErrorKind
from ..tls import advise_for
from .client import ProbeClient
from .models import AccountDescriptor, ProbeOutcome, dav_url

LOGGER = logging.getLogger(__name__)

PROPFIND_LASTMODIFIED = (
    '<?xml version="1.0" encoding="utf-8"?>\n'
    '<d:propfind xmlns:d="DAV:"><d:prop><d:getlastmodified/></d:prop></d:propfind>\n'
)
PROPFIND_HEADERS = {"Depth": "0", "Content-Type": "application/xml; charset=utf-8"}

_DAV_MULTISTATUS = "{DAV:}multistatus"
_SABRE_MESSAGE = "{http://sabredav.org/ns}message"


def strip_dav_suffix(url: str, dav_path: str) -> str | None:
    """Return *url* without the WebDAV root suffix, or ``None`` if it is absent."""
    parts = urlsplit(url)
    suffix = "/" + dav_path.strip("/")
    path = parts.path
    if path.endswith("/"):
        path = path[:-1]
    if not path.endswith(suffix):
        return None
    return urlunsplit((parts.scheme, parts.netloc, path[: -len(suffix)], "", ""))


def is_multistatus(body: bytes) -> bool:
    """Return ``True`` if *body* is a WebDAV ``multistatus`` document."""
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return False
    return root.tag == _DAV_MULTISTATUS


def extract_server_message(body: bytes) -> str | None:
    """Return the ``s:message`` text of a sabre/dav error document."""
    if not body:
        return None
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return None
    node = root.find(_SABRE_MESSAGE)
    if node is None or not (node.text or "").strip():
        return None
    return (node.text or "").strip()


def error_message(base_error: str, body: bytes) -> str:
    """Combine a transport error string with the server's own explanation."""
    extra = extract_server_message(body)
    if extra:
        return f"{base_error} ({extra})"
    return base_error


class AuthenticatedConnectivityProbe:
    """PROPFIND the WebDAV root with the draft account's credentials."""

    def __init__(self, client: ProbeClient, *, timeout: float | None = None) -> None:
        self._client = client
        self._timeout = timeout

    async def verify(self, account: AccountDescriptor, dav_path: str) -> ProbeOutcome:
        """Classify the authenticated response; may correct ``account.base_url`` once."""
        corrected = False
        while True:
            response = await self._client.send(
                "PROPFIND",
                dav_url(account.base_url, dav_path),
                credentials=account.credentials,
                headers=PROPFIND_HEADERS,
                content=PROPFIND_LASTMODIFIED,
                timeout=self._timeout,
            )
            if response.error is ErrorKind.TIMEOUT:
                return ProbeOutcome.timeout(
                    f"Timeout while verifying credentials at {account.base_url}."
                )
            if response.error is ErrorKind.CANCELLED:
                return ProbeOutcome.transport_error(
                    response.error_string,
                    error=ErrorKind.CANCELLED,
                    category=ErrorCategory.USER_CANCELLED,
                )

            target = response.redirect_target
            if target is not None:
                corrected_base = strip_dav_suffix(target, dav_path)
                if corrected_base is not None and not corrected:
                    if self._client.token.cancelled:
                        return ProbeOutcome.transport_error(
                            "Operation canceled",
                            error=ErrorKind.CANCELLED,
                            category=ErrorCategory.USER_CANCELLED,
                        )
                    LOGGER.debug("Authenticated redirect, base URL now %s", corrected_base)
                    account.base_url = corrected_base
                    corrected = True
                    continue
                return ProbeOutcome.transport_error(
                    f"The authenticated request to the server was redirected to '{target}'. "
                    "The URL is bad, the server is misconfigured.",
                    status_code=response.status_code,
                    error=ErrorKind.PROTOCOL_ERROR,
                    category=ErrorCategory.REDIRECT_LOOP_OR_MISMATCH,
                )

            if response.error is ErrorKind.CONTENT_NOT_FOUND:
                # Being told the root is missing proves the credentials work.
                return ProbeOutcome.success(
                    version=account.server_version,
                    canonical_url=account.base_url,
                    redirect_corrected=corrected,
                )

            if response.error.is_error:
                if not account.credentials.still_valid(response):
                    return ProbeOutcome.auth_required(
                        "Access forbidden by server. To verify that you have proper access, "
                        f"open {account.base_url} with your browser.",
                        status_code=response.status_code,
                    )
                return ProbeOutcome.transport_error(
                    error_message(response.error_string, response.body),
                    status_code=response.status_code,
                    error=response.error,
                    category=ErrorCategory.NETWORK_TRANSPORT,
                    downgrade_advised=advise_for(response),
                )

            if not is_multistatus(response.body):
                return ProbeOutcome.transport_error(
                    "There was an invalid response to an authenticated webdav request",
                    status_code=response.status_code,
                    error=ErrorKind.PROTOCOL_ERROR,
                    category=ErrorCategory.MALFORMED_RESPONSE,
                )
            return ProbeOutcome.success(
                version=account.server_version,
                canonical_url=account.base_url,
                redirect_corrected=corrected,
            )


__all__ = [
    "AuthenticatedConnectivityProbe",
    "error_message",
    "extract_server_message",
    "is_multistatus",
    "strip_dav_suffix",
]
