"""
REST API for the background OS service.
"""

import logging

from fastapi import APIRouter, HTTPException, Request, Response

from ..errors import LocalCanError
from . import http_error

logger = logging.getLogger("localcan.api.service")

router = APIRouter(prefix="/api/service", tags=["service"])


@router.get("")
async def service_status(request: Request):
    """Service state as currently reported by the OS."""
    service = request.app.state.service
    state = await service.refresh()
    return {
        "name": service.name,
        **state.to_api_response(),
        "recent_logs": await service.recent_logs(),
    }


@router.get("/logs")
async def service_logs(request: Request):
    lines = await request.app.state.service.recent_logs()
    return {"count": len(lines), "lines": lines}


@router.get("/operations/{op_id}")
async def service_operation(op_id: str, request: Request):
    """Result of a previously submitted action."""
    operation = request.app.state.service.operation(op_id)
    if operation is None:
        raise HTTPException(status_code=404, detail=f"Operation {op_id} not found")
    return operation.to_api_response()


@router.post("/{action}")
async def service_action(action: str, request: Request, response: Response):
    """
    Install, uninstall, start or stop the service.

    Privileged actions run in the background and answer 202 with an
    operation id; actions needing elevation answer 200 with the script path.
    """
    try:
        operation = await request.app.state.service.submit(action)
    except LocalCanError as e:
        raise http_error(e)
    if operation.state == "running":
        response.status_code = 202
    return operation.to_api_response()
