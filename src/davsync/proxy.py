"""Proxy selection for provisioning requests."""
from __future__ import annotations

import asyncio
import logging
import urllib.request
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from urllib.parse import urlsplit

from .config import ProxyConfig

LOGGER = logging.getLogger(__name__)


class ProxyResolutionError(RuntimeError):
    """Raised when the proxy configuration cannot be applied."""


@dataclass(frozen=True)
class ProxySelection:
    """Proxy chosen for one setup run."""

    mode: str
    url: str | None = None

    @property
    def uses_proxy(self) -> bool:
        """Return ``True`` when requests go through a proxy."""
        return self.url is not None


def lookup_system_proxy(
    url: str,
    *,
    getproxies: Callable[[], Mapping[str, str]] = urllib.request.getproxies,
    bypass: Callable[[str], bool] = urllib.request.proxy_bypass,
) -> str | None:
    """Return the system proxy for *url*, or ``None`` for a direct connection.

    This consults the environment and platform settings and may block, so it
    is meant to run on a worker thread.
    """
    parts = urlsplit(url)
    host = parts.hostname or ""
    if host and bypass(host):
        return None
    proxies = getproxies()
    return proxies.get(parts.scheme) or proxies.get("all")


async def resolve_proxy(config: ProxyConfig, url: str) -> ProxySelection:
    """Resolve the proxy to use for *url* according to *config*."""
    if config.mode == "none":
        return ProxySelection(mode="none")
    if config.mode == "manual":
        if not config.url:
            raise ProxyResolutionError("proxy.mode 'manual' requires proxy.url")
        return ProxySelection(mode="manual", url=config.url)
    if config.mode != "system":
        raise ProxyResolutionError(f"Unknown proxy mode '{config.mode}'")

    LOGGER.debug("Looking up system proxy for %s", url)
    try:
        proxy_url = await asyncio.to_thread(lookup_system_proxy, url)
    except OSError as exc:
        raise ProxyResolutionError(f"System proxy lookup failed: {exc}") from exc
    if proxy_url:
        LOGGER.debug("Using system proxy %s", proxy_url)
    else:
        LOGGER.debug("No system proxy set by OS")
    return ProxySelection(mode="system", url=proxy_url or None)


__all__ = ["ProxyResolutionError", "ProxySelection", "lookup_system_proxy", "resolve_proxy"]
