"""In-memory WebDAV server used by the provisioning tests."""
from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field

import httpx

Responder = Callable[[httpx.Request], httpx.Response | Awaitable[httpx.Response]]

MULTISTATUS = (
    b'<?xml version="1.0"?>\n'
    b'<d:multistatus xmlns:d="DAV:"><d:response><d:href>/remote.php/webdav/</d:href>'
    b"<d:propstat><d:prop><d:getlastmodified>Mon, 01 Jan 2024 00:00:00 GMT"
    b"</d:getlastmodified></d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat>"
    b"</d:response></d:multistatus>"
)


def status_document(version: str = "10.0.3.2", **extra: object) -> dict[str, object]:
    """Return a discovery document for an installed server."""
    document: dict[str, object] = {
        "installed": True,
        "maintenance": False,
        "version": version,
        "versionstring": version.rsplit(".", 1)[0] if version.count(".") > 2 else version,
        "edition": "Community",
        "productname": "ownCloud",
    }
    document.update(extra)
    return document


def respond(
    status_code: int = 200,
    *,
    json_body: object | None = None,
    text: str | None = None,
    content: bytes | None = None,
    headers: Mapping[str, str] | None = None,
) -> Responder:
    """Return a responder producing a fresh response on every call."""

    def responder(request: httpx.Request) -> httpx.Response:
        response_headers = dict(headers or {})
        body = content
        if json_body is not None:
            body = json.dumps(json_body).encode("utf-8")
            response_headers.setdefault("Content-Type", "application/json")
        elif text is not None:
            body = text.encode("utf-8")
            response_headers.setdefault("Content-Type", "text/html; charset=utf-8")
        return httpx.Response(status_code, headers=response_headers, content=body or b"")

    return responder


def redirect(location: str, status_code: int = 302) -> Responder:
    """Return a responder redirecting to *location*."""
    return respond(status_code, headers={"Location": location})


def multistatus() -> Responder:
    """Return a responder answering a PROPFIND with a multistatus document."""
    return respond(
        207,
        content=MULTISTATUS,
        headers={"Content-Type": "application/xml; charset=utf-8"},
    )


def fail_with(exc_type: type[httpx.RequestError], message: str) -> Responder:
    """Return a responder raising a transport error."""

    def responder(request: httpx.Request) -> httpx.Response:
        raise exc_type(message, request=request)

    return responder


@dataclass
class FakeDavServer:
    """Route table keyed by method and absolute URL.

    Each route holds a queue of responders: they are consumed in order and
    the last one answers every further request. Unknown routes answer 404.
    """

    routes: dict[tuple[str, str], list[Responder]] = field(default_factory=dict)
    requests: list[httpx.Request] = field(default_factory=list)

    def route(self, method: str, url: str, *responders: Responder) -> None:
        """Register *responders* for ``method url``."""
        self.routes[(method.upper(), url)] = list(responders)

    def calls(self, method: str, url: str | None = None) -> list[httpx.Request]:
        """Return the recorded requests matching *method* (and *url*)."""
        return [
            request
            for request in self.requests
            if request.method == method.upper() and (url is None or str(request.url) == url)
        ]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, str(request.url)))
        if not queue:
            return httpx.Response(404)
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        response = responder(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        """Return an httpx transport routed to this server."""
        return httpx.MockTransport(self.handle)


__all__ = [
    "FakeDavServer",
    "MULTISTATUS",
    "fail_with",
    "multistatus",
    "redirect",
    "respond",
    "status_document",
]
