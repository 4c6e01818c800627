"""Unit tests for TLS helper utilities."""
from __future__ import annotations

import asyncio
import ssl
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from davsync.errors import ErrorKind
from davsync.provisioning.client import ProbeResponse
from davsync.tls import (
    TLSInspectionError,
    advise,
    advise_for,
    describe_peer_certificate,
    summarize_certificate,
)


def _self_signed_pem(
    *,
    common_name: str = "cloud.example.test",
    issuer_name: str | None = None,
    valid_from: datetime | None = None,
    valid_to: datetime | None = None,
) -> bytes:
    now = datetime.now(UTC)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer_name or common_name)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from or (now - timedelta(days=1)))
        .not_valid_after(valid_to or (now + timedelta(days=90)))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM)


@pytest.mark.parametrize(
    ("scheme", "kind", "hsts", "expected"),
    [
        ("https", ErrorKind.SSL_HANDSHAKE, False, True),
        ("https", ErrorKind.CONNECTION_REFUSED, False, True),
        ("https", ErrorKind.SERVER_ERROR, False, True),
        ("https", ErrorKind.SSL_HANDSHAKE, True, False),
        ("https", ErrorKind.NONE, False, False),
        ("https", ErrorKind.CONTENT_NOT_FOUND, False, False),
        ("https", ErrorKind.AUTHENTICATION_REQUIRED, False, False),
        ("https", ErrorKind.HOST_NOT_FOUND, False, False),
        ("http", ErrorKind.SSL_HANDSHAKE, False, False),
        ("HTTPS", ErrorKind.TIMEOUT, False, True),
    ],
)
def test_advise_table(scheme: str, kind: ErrorKind, hsts: bool, expected: bool) -> None:
    """Downgrade advice only for unhealthy secure endpoints without HSTS."""
    assert advise(scheme, kind, hsts) is expected


def test_advise_for_reads_response_headers() -> None:
    """HSTS on a response suppresses the advice."""
    with_hsts = ProbeResponse(
        method="GET",
        url="https://cloud.example.test/status.php",
        status_code=500,
        headers=httpx.Headers({"Strict-Transport-Security": "max-age=31536000"}),
        error=ErrorKind.SERVER_ERROR,
    )
    without_hsts = ProbeResponse(
        method="GET",
        url="https://cloud.example.test/status.php",
        status_code=500,
        error=ErrorKind.SERVER_ERROR,
    )

    assert advise_for(with_hsts) is False
    assert advise_for(without_hsts) is True


def test_summarize_self_signed_certificate() -> None:
    """Summaries expose names, validity and a colon-separated fingerprint."""
    pem = _self_signed_pem()

    summary = summarize_certificate(pem)

    assert summary.subject == "CN=cloud.example.test"
    assert summary.issuer == "CN=cloud.example.test"
    assert summary.self_signed is True
    assert summary.is_expired() is False
    assert summary.not_valid_before.tzinfo is not None
    parts = summary.fingerprint_sha256.split(":")
    assert len(parts) == 32
    assert all(part == part.upper() and len(part) == 2 for part in parts)
    data = summary.to_dict()
    assert data["self_signed"] is True
    assert data["expired"] is False


def test_summarize_expired_certificate_from_other_issuer() -> None:
    """Expired certificates issued by someone else are reported as such."""
    now = datetime.now(UTC)
    pem = _self_signed_pem(
        issuer_name="Example CA",
        valid_from=now - timedelta(days=60),
        valid_to=now - timedelta(days=1),
    ).decode("ascii")

    summary = summarize_certificate(pem)

    assert summary.self_signed is False
    assert summary.issuer == "CN=Example CA"
    assert summary.is_expired() is True


def test_summarize_rejects_garbage() -> None:
    """Unparseable input raises TLSInspectionError."""
    with pytest.raises(TLSInspectionError):
        summarize_certificate("not a certificate")


def test_describe_peer_certificate_uses_fetched_pem(monkeypatch: pytest.MonkeyPatch) -> None:
    """The fetched PEM is summarised."""
    pem = _self_signed_pem(common_name="peer.example.test").decode("ascii")
    seen: list[tuple[str, int]] = []

    def fake_get_server_certificate(addr: tuple[str, int], **kwargs: object) -> str:
        seen.append(addr)
        return pem

    monkeypatch.setattr(ssl, "get_server_certificate", fake_get_server_certificate)

    summary = asyncio.run(describe_peer_certificate("peer.example.test", 8443, timeout=1.0))

    assert seen == [("peer.example.test", 8443)]
    assert summary.subject == "CN=peer.example.test"


def test_describe_peer_certificate_wraps_network_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    """Connection failures surface as TLSInspectionError."""

    def refuse(addr: tuple[str, int], **kwargs: object) -> str:
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr(ssl, "get_server_certificate", refuse)

    with pytest.raises(TLSInspectionError, match="peer.example.test:443"):
        asyncio.run(describe_peer_certificate("peer.example.test"))
