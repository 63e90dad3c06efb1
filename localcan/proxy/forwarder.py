"""
Upstream forwarding with bounded timeouts.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp

logger = logging.getLogger("localcan.proxy.forwarder")

# Hop-by-hop headers are never forwarded in either direction
HOP_HEADERS = frozenset([
    "connection", "keep-alive", "proxy-authenticate",
    "proxy-authorization", "te", "trailers",
    "transfer-encoding", "upgrade", "host", "content-length",
])


@dataclass
class UpstreamResponse:
    status_code: int
    headers: List[Tuple[str, str]]
    body: bytes


def filter_headers(headers: List[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [(k, v) for k, v in headers if k.lower() not in HOP_HEADERS]


class UpstreamForwarder:
    """
    Forwards requests to local dev servers.

    Connection and read timeouts are bounded so a hung upstream only fails
    its own request. Raises asyncio.TimeoutError or aiohttp.ClientError.
    """

    def __init__(self, connect_timeout: float = 5.0, read_timeout: float = 30.0):
        self.timeout = aiohttp.ClientTimeout(
            total=None,
            sock_connect=connect_timeout,
            sock_read=read_timeout,
        )
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                auto_decompress=False,
                connector=aiohttp.TCPConnector(ssl=False),
            )
        return self._session

    async def forward(
        self,
        upstream: str,
        method: str,
        path: str,
        query_string: str,
        headers: List[Tuple[str, str]],
        body: bytes,
    ) -> UpstreamResponse:
        base = upstream.rstrip("/")
        url = f"{base}{path}"
        if query_string:
            url = f"{url}?{query_string}"

        out_headers = filter_headers(headers)
        out_headers.append(("Host", urlparse(base).netloc))

        session = self._get_session()
        async with session.request(
            method,
            url,
            headers=out_headers,
            data=body or None,
            allow_redirects=False,
        ) as resp:
            content = await resp.read()
            return UpstreamResponse(
                status_code=resp.status,
                headers=filter_headers(list(resp.headers.items())),
                body=content,
            )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
