"""
REST API for the proxy listener.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..errors import LocalCanError
from . import http_error

logger = logging.getLogger("localcan.api.proxy")

router = APIRouter(prefix="/api/proxy", tags=["proxy"])


class ProxyStartRequest(BaseModel):
    port: Optional[int] = Field(default=None, ge=0, le=65535)


@router.get("")
async def proxy_status(request: Request):
    """Listener status and the current routing table."""
    proxy = request.app.state.proxy
    return {
        **proxy.status().to_api_response(),
        "table": proxy.table.to_api_response(),
    }


@router.post("/start")
async def start_proxy(request: Request, body: Optional[ProxyStartRequest] = None):
    """Start the proxy on the requested port, or the configured one."""
    port = body.port if body and body.port is not None else request.app.state.settings.proxy_port
    try:
        status = await request.app.state.proxy.start(port)
    except LocalCanError as e:
        logger.error(f"Proxy start failed: {e}")
        raise http_error(e)
    return status.to_api_response()


@router.post("/stop")
async def stop_proxy(request: Request):
    status = await request.app.state.proxy.stop()
    return status.to_api_response()
