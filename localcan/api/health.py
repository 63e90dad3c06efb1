"""
Health check endpoint.
"""

from fastapi import APIRouter, Request

from .. import __version__

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint"""
    proxy = request.app.state.proxy
    return {
        "status": "ok",
        "version": __version__,
        "proxy_running": proxy.is_running,
        "routes": len(proxy.table),
    }
