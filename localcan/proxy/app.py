"""
Data-plane application: routes requests by Host header to local upstreams.
"""

import asyncio
import logging
from typing import Callable

import aiohttp
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from .forwarder import UpstreamForwarder
from .routing import RoutingTable

logger = logging.getLogger("localcan.proxy.app")

METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]


def create_proxy_app(
    get_table: Callable[[], RoutingTable],
    forwarder: UpstreamForwarder,
    tls_port: Callable[[], int] = lambda: 0,
) -> FastAPI:
    """
    Build the proxy app.

    `get_table` returns the current routing table; it is read once per
    request so a table swap never affects a request already accepted.
    """
    app = FastAPI(title="LocalCan Proxy", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=METHODS)
    async def proxy_request(request: Request, path: str):
        table = get_table()
        host = request.headers.get("host", "")
        route = table.match(host)

        if route is None:
            logger.debug(f"No route for host {host!r}")
            return JSONResponse(
                status_code=404,
                content={"detail": f"No such domain: {host.split(':')[0] or '(none)'}"},
                headers={"X-LocalCan": "no-route"},
            )

        port = tls_port()
        if route.tls_required and port and request.url.scheme == "http":
            suffix = "" if port == 443 else f":{port}"
            target = request.url.replace(scheme="https", netloc=f"{route.domain}{suffix}")
            return RedirectResponse(str(target), status_code=308)

        client_host = request.client.host if request.client else ""
        headers = list(request.headers.items())
        headers.extend([
            ("X-Forwarded-Host", host),
            ("X-Forwarded-Proto", request.url.scheme),
            ("X-Forwarded-For", client_host),
        ])
        body = await request.body()

        try:
            upstream = await forwarder.forward(
                upstream=route.upstream,
                method=request.method,
                path=f"/{path}",
                query_string=request.url.query,
                headers=headers,
                body=body,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Upstream timeout: {route.domain} -> {route.upstream}")
            return JSONResponse(
                status_code=504,
                content={"detail": f"Upstream {route.upstream} timed out"},
            )
        except aiohttp.ClientError as e:
            logger.warning(f"Upstream unavailable: {route.domain} -> {route.upstream}: {e}")
            return JSONResponse(
                status_code=502,
                content={"detail": f"Upstream {route.upstream} unavailable"},
            )

        response = Response(content=upstream.body, status_code=upstream.status_code)
        for key, value in upstream.headers:
            response.headers.append(key, value)
        return response

    return app
