"""Error classifications shared by probes, the TLS advisor and the CLI."""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Transport-level failure reported for a single request."""

    NONE = "none"
    CONTENT_NOT_FOUND = "content-not-found"
    AUTHENTICATION_REQUIRED = "authentication-required"
    CONTENT_ACCESS_DENIED = "content-access-denied"
    OPERATION_NOT_PERMITTED = "operation-not-permitted"
    CONTENT_CONFLICT = "content-conflict"
    PROTOCOL_ERROR = "protocol-error"
    SERVER_ERROR = "server-error"
    HOST_NOT_FOUND = "host-not-found"
    CONNECTION_REFUSED = "connection-refused"
    SSL_HANDSHAKE = "ssl-handshake"
    PROXY_ERROR = "proxy-error"
    INVALID_URL = "invalid-url"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    NETWORK = "network"

    @property
    def is_error(self) -> bool:
        """Return ``True`` for every kind except :attr:`NONE`."""
        return self is not ErrorKind.NONE


class ErrorCategory(str, Enum):
    """User-facing failure taxonomy for a provisioning run."""

    NETWORK_TRANSPORT = "network-transport"
    SERVER_NOT_FOUND = "server-not-found"
    AUTHENTICATION_INVALID = "authentication-invalid"
    REDIRECT_LOOP_OR_MISMATCH = "redirect-loop-or-mismatch"
    MALFORMED_RESPONSE = "malformed-response"
    LOCAL_FILESYSTEM = "local-filesystem"
    REMOTE_FOLDER_CONFLICT = "remote-folder-conflict"
    USER_CANCELLED = "user-cancelled"


def error_kind_for_status(status_code: int) -> ErrorKind:
    """Map an HTTP status code to the matching :class:`ErrorKind`."""
    if status_code < 400:
        return ErrorKind.NONE
    if status_code == 401:
        return ErrorKind.AUTHENTICATION_REQUIRED
    if status_code == 403:
        return ErrorKind.CONTENT_ACCESS_DENIED
    if status_code == 404:
        return ErrorKind.CONTENT_NOT_FOUND
    if status_code == 405:
        return ErrorKind.OPERATION_NOT_PERMITTED
    if status_code == 409:
        return ErrorKind.CONTENT_CONFLICT
    if status_code >= 500:
        return ErrorKind.SERVER_ERROR
    return ErrorKind.PROTOCOL_ERROR


__all__ = ["ErrorCategory", "ErrorKind", "error_kind_for_status"]
