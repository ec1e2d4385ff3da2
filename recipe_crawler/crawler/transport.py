"""
Pluggable request transports.

The executor only needs an awaitable callable:

    await transport(url, headers, timeout_seconds) -> TransportResponse

that raises on network failure. HttpxTransport is the default; a
browser-backed loader can be dropped in as long as it honors the same call.
Transports that can switch egress proxies expose rotate_proxy().
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import httpx

from recipe_crawler.utils.logging import get_logger
from recipe_crawler.utils.site_policy import SitePolicy

logger = get_logger(__name__)


BROWSER_HEADERS: dict[str, str] = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
}


def build_request_headers(policy: SitePolicy, user_agent: str) -> dict[str, str]:
    """Browser-like headers, then the policy's extra headers, then the user agent."""
    headers = dict(BROWSER_HEADERS)
    headers.update(policy.extra_headers)
    headers["User-Agent"] = user_agent
    return headers


@dataclass
class TransportResponse:
    """Raw response handed back by a transport."""

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    url: str | None = None

    @property
    def ok(self) -> bool:
        return self.status < 400

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")


@runtime_checkable
class Transport(Protocol):
    """Performs one request attempt."""

    async def __call__(
        self,
        url: str,
        headers: dict[str, str],
        timeout_seconds: float,
    ) -> TransportResponse:
        ...


@runtime_checkable
class ProxyRotatingTransport(Transport, Protocol):
    """Transport that can move to a different egress proxy."""

    def rotate_proxy(self) -> None:
        ...


class HttpxTransport:
    """httpx-backed transport with lazy clients and optional proxy rotation.

    One AsyncClient is kept per proxy so rotation never closes a client with
    requests still in flight.

    Example:
        transport = HttpxTransport(proxies=["http://p1:8080", "http://p2:8080"])
        response = await transport(url, headers, 30.0)
        transport.rotate_proxy()
        await transport.close()
    """

    def __init__(
        self,
        *,
        follow_redirects: bool = True,
        proxies: list[str] | None = None,
        name: str = "httpx",
    ) -> None:
        self.name = name
        self._follow_redirects = follow_redirects
        self._proxies: list[str | None] = list(proxies) if proxies else [None]
        self._proxy_index = 0
        self._clients: dict[str | None, httpx.AsyncClient] = {}

    @property
    def current_proxy(self) -> str | None:
        return self._proxies[self._proxy_index]

    def _get_client(self) -> httpx.AsyncClient:
        """Get HTTP client for the current proxy (lazy initialization)."""
        proxy = self.current_proxy
        client = self._clients.get(proxy)
        if client is None:
            client = httpx.AsyncClient(follow_redirects=self._follow_redirects, proxy=proxy)
            self._clients[proxy] = client
        return client

    async def __call__(
        self,
        url: str,
        headers: dict[str, str],
        timeout_seconds: float,
    ) -> TransportResponse:
        client = self._get_client()
        response = await client.get(url, headers=headers, timeout=timeout_seconds)
        return TransportResponse(
            status=response.status_code,
            body=response.content,
            headers=dict(response.headers),
            url=str(response.url),
        )

    def rotate_proxy(self) -> None:
        """Switch to the next configured proxy (no-op without proxies)."""
        if len(self._proxies) < 2:
            return
        self._proxy_index = (self._proxy_index + 1) % len(self._proxies)
        logger.info("Rotated proxy", transport=self.name, proxy_index=self._proxy_index)

    async def close(self) -> None:
        """Close all clients."""
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()
        if clients:
            logger.debug("Transport closed", transport=self.name)
