"""TLS helpers: downgrade advice and peer certificate summaries."""
from __future__ import annotations

import asyncio
import logging
import ssl
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from .errors import ErrorKind

if TYPE_CHECKING:
    from .provisioning.client import ProbeResponse

LOGGER = logging.getLogger(__name__)

# Failures that say nothing about the health of the secure endpoint.
BENIGN_SECURE_ERRORS = frozenset(
    {
        ErrorKind.NONE,
        ErrorKind.CONTENT_NOT_FOUND,
        ErrorKind.AUTHENTICATION_REQUIRED,
        ErrorKind.HOST_NOT_FOUND,
    }
)


class TLSInspectionError(RuntimeError):
    """Raised when a peer certificate cannot be fetched or parsed."""


def advise(scheme: str, error_kind: ErrorKind, hsts_present: bool) -> bool:
    """Return ``True`` when retrying over plain http is worth suggesting."""
    if scheme.lower() != "https":
        return False
    if error_kind in BENIGN_SECURE_ERRORS:
        return False
    if hsts_present:
        return False
    return True


def advise_for(response: ProbeResponse) -> bool:
    """Apply :func:`advise` to a probe response."""
    return advise(response.scheme, response.error, response.hsts_present)


@dataclass(frozen=True)
class CertificateSummary:
    """Human-oriented view of an X.509 certificate."""

    subject: str
    issuer: str
    not_valid_before: datetime
    not_valid_after: datetime
    fingerprint_sha256: str

    @property
    def self_signed(self) -> bool:
        """Return ``True`` when subject and issuer are identical."""
        return self.subject == self.issuer

    def is_expired(self, *, now: datetime | None = None) -> bool:
        """Return ``True`` when *now* lies outside the validity window."""
        moment = now or datetime.now(tz=UTC)
        return not (self.not_valid_before <= moment <= self.not_valid_after)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "subject": self.subject,
            "issuer": self.issuer,
            "not_valid_before": self.not_valid_before.isoformat(),
            "not_valid_after": self.not_valid_after.isoformat(),
            "fingerprint_sha256": self.fingerprint_sha256,
            "self_signed": self.self_signed,
            "expired": self.is_expired(),
        }


def summarize_certificate(pem: str | bytes) -> CertificateSummary:
    """Parse a PEM certificate and summarise it."""
    data = pem.encode("ascii") if isinstance(pem, str) else pem
    try:
        cert = x509.load_pem_x509_certificate(data)
    except ValueError as exc:
        raise TLSInspectionError(f"Unable to parse certificate: {exc}") from exc
    fingerprint = cert.fingerprint(hashes.SHA256()).hex(":").upper()
    return CertificateSummary(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        not_valid_before=_as_utc(cert.not_valid_before_utc),
        not_valid_after=_as_utc(cert.not_valid_after_utc),
        fingerprint_sha256=fingerprint,
    )


async def describe_peer_certificate(
    host: str,
    port: int = 443,
    *,
    timeout: float = 10.0,
) -> CertificateSummary:
    """Fetch the certificate presented by *host* without verifying it."""
    try:
        pem = await asyncio.wait_for(
            asyncio.to_thread(ssl.get_server_certificate, (host, port), timeout=timeout),
            timeout=timeout,
        )
    except (OSError, TimeoutError) as exc:
        raise TLSInspectionError(f"Unable to fetch certificate from {host}:{port}: {exc}") from exc
    LOGGER.debug("Fetched peer certificate from %s:%s", host, port)
    return summarize_certificate(pem)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


__all__ = [
    "BENIGN_SECURE_ERRORS",
    "CertificateSummary",
    "TLSInspectionError",
    "advise",
    "advise_for",
    "describe_peer_certificate",
    "summarize_certificate",
]
