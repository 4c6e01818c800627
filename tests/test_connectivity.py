"""Tests for the authenticated connectivity probe."""
from __future__ import annotations

import asyncio

from fake_server import FakeDavServer, multistatus, redirect, respond

from davsync.credentials import Credentials, HttpBasicCredentials, SsoSessionCredentials
from davsync.errors import ErrorCategory
from davsync.provisioning import (
    AccountDescriptor,
    AuthenticatedConnectivityProbe,
    CancellationToken,
    OutcomeKind,
    ProbeClient,
    ProbeOutcome,
)
from davsync.provisioning.connectivity import (
    error_message,
    extract_server_message,
    is_multistatus,
    strip_dav_suffix,
)

BASE = "https://cloud.example.test"
DAV_PATH = "remote.php/webdav/"
DAV_ROOT = f"{BASE}/remote.php/webdav/"

SABRE_ERROR = (
    b'<?xml version="1.0" encoding="utf-8"?>\n'
    b'<d:error xmlns:d="DAV:" xmlns:s="http://sabredav.org/ns">'
    b"<s:exception>Sabre\\DAV\\Exception\\Forbidden</s:exception>"
    b"<s:message>Account disabled</s:message></d:error>"
)


def _account(credentials: Credentials | None = None) -> AccountDescriptor:
    return AccountDescriptor(
        id="draft",
        base_url=BASE,
        dav_path=DAV_PATH,
        credentials=credentials or HttpBasicCredentials("alice", "secret"),
        server_version="10.0",
    )


def _verify(
    server: FakeDavServer,
    account: AccountDescriptor,
    *,
    token: CancellationToken | None = None,
) -> ProbeOutcome:
    async def runner() -> ProbeOutcome:
        async with ProbeClient(timeout=5.0, transport=server.transport, token=token) as client:
            return await AuthenticatedConnectivityProbe(client).verify(account, DAV_PATH)

    return asyncio.run(runner())


def test_helpers() -> None:
    """URL and XML helpers behave as expected."""
    assert strip_dav_suffix(f"{BASE}/owncloud/remote.php/webdav/", DAV_PATH) == f"{BASE}/owncloud"
    assert strip_dav_suffix(f"{BASE}/login", DAV_PATH) is None
    assert is_multistatus(b'<d:multistatus xmlns:d="DAV:"/>') is True
    assert is_multistatus(b"<html/>") is False
    assert is_multistatus(b"{}") is False
    assert extract_server_message(SABRE_ERROR) == "Account disabled"
    assert extract_server_message(b"") is None
    assert error_message("Forbidden", SABRE_ERROR) == "Forbidden (Account disabled)"
    assert error_message("Forbidden", b"nope") == "Forbidden"


def test_multistatus_is_success(dav_server: FakeDavServer) -> None:
    """A multistatus reply confirms the credentials."""
    dav_server.route("PROPFIND", DAV_ROOT, multistatus())
    account = _account()

    outcome = _verify(dav_server, account)

    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.redirect_corrected is False
    (request,) = dav_server.requests
    assert request.headers["Depth"] == "0"
    assert request.headers["Authorization"].startswith("Basic ")
    assert b"getlastmodified" in request.content


def test_not_found_is_success(dav_server: FakeDavServer) -> None:
    """A 404 on the WebDAV root still proves the credentials work."""
    account = _account()

    outcome = _verify(dav_server, account)

    assert outcome.kind is OutcomeKind.SUCCESS


def test_single_base_url_correction(dav_server: FakeDavServer) -> None:
    """One redirect to another WebDAV root rewrites the account URL."""
    moved = f"{BASE}/owncloud/remote.php/webdav/"
    dav_server.route("PROPFIND", DAV_ROOT, redirect(moved, 301))
    dav_server.route("PROPFIND", moved, multistatus())
    account = _account()

    outcome = _verify(dav_server, account)

    assert outcome.kind is OutcomeKind.SUCCESS
    assert outcome.redirect_corrected is True
    assert account.base_url == f"{BASE}/owncloud"
    assert outcome.canonical_url == f"{BASE}/owncloud"


def test_second_redirect_is_an_error(dav_server: FakeDavServer) -> None:
    """Only one correction is allowed per verification."""
    moved = f"{BASE}/owncloud/remote.php/webdav/"
    again = f"{BASE}/elsewhere/remote.php/webdav/"
    dav_server.route("PROPFIND", DAV_ROOT, redirect(moved))
    dav_server.route("PROPFIND", moved, redirect(again))
    account = _account()

    outcome = _verify(dav_server, account)

    assert outcome.kind is OutcomeKind.TRANSPORT_ERROR
    assert outcome.category is ErrorCategory.REDIRECT_LOOP_OR_MISMATCH
    assert again in outcome.message
    assert account.base_url == f"{BASE}/owncloud"


def test_redirect_elsewhere_is_an_error(dav_server: FakeDavServer) -> None:
    """Redirects away from the WebDAV root leave the account untouched."""
    dav_server.route("PROPFIND", DAV_ROOT, redirect(f"{BASE}/login"))
    account = _account()

    outcome = _verify(dav_server, account)

    assert outcome.category is ErrorCategory.REDIRECT_LOOP_OR_MISMATCH
    assert account.base_url == BASE


def test_rejected_basic_credentials(dav_server: FakeDavServer) -> None:
    """A 401 invalidates basic credentials."""
    dav_server.route("PROPFIND", DAV_ROOT, respond(401))

    outcome = _verify(dav_server, _account())

    assert outcome.kind is OutcomeKind.AUTH_REQUIRED
    assert outcome.category is ErrorCategory.AUTHENTICATION_INVALID
    assert outcome.message.startswith("Access forbidden by server.")


def test_expired_sso_session_redirects(dav_server: FakeDavServer) -> None:
    """A session redirected to a non-WebDAV page is a hard error."""
    dav_server.route("PROPFIND", DAV_ROOT, redirect("https://idp.example.test/saml"))
    account = _account(SsoSessionCredentials(user="alice", cookie="oc_session=1"))

    outcome = _verify(dav_server, account)

    assert outcome.category is ErrorCategory.REDIRECT_LOOP_OR_MISMATCH
    (request,) = dav_server.requests
    assert request.headers["Cookie"] == "oc_session=1"


def test_forbidden_includes_server_message(dav_server: FakeDavServer) -> None:
    """Errors the credentials survive carry the server's own explanation."""
    dav_server.route(
        "PROPFIND",
        DAV_ROOT,
        respond(403, content=SABRE_ERROR, headers={"Content-Type": "application/xml"}),
    )

    outcome = _verify(dav_server, _account())

    assert outcome.kind is OutcomeKind.TRANSPORT_ERROR
    assert outcome.message.endswith("(Account disabled)")
    assert outcome.downgrade_advised is True


def test_invalid_body_is_malformed(dav_server: FakeDavServer) -> None:
    """A 2xx reply that is not multistatus is rejected."""
    dav_server.route("PROPFIND", DAV_ROOT, respond(200, text="<html>login</html>"))

    outcome = _verify(dav_server, _account())

    assert outcome.kind is OutcomeKind.TRANSPORT_ERROR
    assert outcome.category is ErrorCategory.MALFORMED_RESPONSE
    assert outcome.message == "There was an invalid response to an authenticated webdav request"


def test_cancelled_probe_does_not_touch_account(dav_server: FakeDavServer) -> None:
    """A cancelled token stops the probe before any mutation."""
    dav_server.route("PROPFIND", DAV_ROOT, redirect(f"{BASE}/owncloud/remote.php/webdav/"))
    token = CancellationToken()
    token.cancel()
    account = _account()

    outcome = _verify(dav_server, account, token=token)

    assert outcome.category is ErrorCategory.USER_CANCELLED
    assert account.base_url == BASE
    assert dav_server.requests == []
