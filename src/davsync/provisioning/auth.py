"""Classify how a server wants clients to authenticate."""
from __future__ import annotations

import logging
from collections.abc import Iterable
from urllib.parse import urlsplit

from ..errors import ErrorKind
from .client import Deadline, ProbeClient
from .models import AuthKind, dav_url

LOGGER = logging.getLogger(__name__)

DEFAULT_SSO_INDICATORS: tuple[str, ...] = ("saml", "wayf")


def is_sso_redirect(url: str, indicators: Iterable[str] = DEFAULT_SSO_INDICATORS) -> bool:
    """Return ``True`` if *url* mentions an identity-provider token, ignoring case."""
    lowered = url.lower()
    return any(token.lower() in lowered for token in indicators if token)


def is_same_service_redirect(url: str, dav_path: str) -> bool:
    """Return ``True`` if *url* still points at the WebDAV root."""
    suffix = "/" + dav_path.strip("/")
    path = urlsplit(url).path.rstrip("/")
    return path.endswith(suffix)


class AuthTypeNegotiator:
    """Walk the redirects of an anonymous GET on the WebDAV root.

    A 401 challenge, or a final response without a redirect, means inline
    credentials. A redirect to a foreign path is checked for SSO indicator
    tokens. Same-service redirects are followed while the hop counter stays
    below ``max_redirects``; past that the negotiator settles on basic auth.
    ``timeout`` bounds the whole redirect walk, not each request.
    """

    def __init__(
        self,
        client: ProbeClient,
        *,
        sso_indicators: Iterable[str] = DEFAULT_SSO_INDICATORS,
        timeout: float | None = None,
    ) -> None:
        self._client = client
        self._indicators = tuple(sso_indicators)
        self._timeout = timeout

    async def negotiate(self, base_url: str, dav_path: str, max_redirects: int) -> AuthKind:
        """Return the :class:`AuthKind` the endpoint expects."""
        url = dav_url(base_url, dav_path)
        deadline = Deadline(self._client.timeout if self._timeout is None else self._timeout)
        hops = 0
        while True:
            response = await self._client.send("GET", url, timeout=deadline.remaining())
            if response.error is ErrorKind.TIMEOUT:
                LOGGER.debug("Auth negotiation timed out at %s; assuming basic auth", url)
                return AuthKind.HTTP_BASIC
            target = response.redirect_target
            if response.error is ErrorKind.AUTHENTICATION_REQUIRED or target is None:
                LOGGER.debug("Auth negotiation settled on basic auth at %s", url)
                return AuthKind.HTTP_BASIC
            if is_same_service_redirect(target, dav_path):
                hops += 1
                if hops < max_redirects:
                    LOGGER.debug("Auth negotiation following %s (hop %d)", target, hops)
                    url = target
                    continue
                LOGGER.debug("Auth negotiation stopped after %d redirects", hops)
                return AuthKind.HTTP_BASIC
            if is_sso_redirect(target, self._indicators):
                LOGGER.debug("Auth negotiation detected federated SSO via %s", target)
                return AuthKind.FEDERATED_SSO
            return AuthKind.HTTP_BASIC


__all__ = [
    "AuthTypeNegotiator",
    "DEFAULT_SSO_INDICATORS",
    "is_same_service_redirect",
    "is_sso_redirect",
]
