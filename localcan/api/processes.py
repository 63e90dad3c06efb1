"""
REST API for the detected process snapshot.
"""

import logging
from typing import List

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from ..processes.observer import ProcessEntry

logger = logging.getLogger("localcan.api.processes")

router = APIRouter(prefix="/api/processes", tags=["processes"])


class ProcessReport(BaseModel):
    pid: int
    name: str
    framework: str
    port: int = Field(ge=1, le=65535)
    status: str = Field(default="running", pattern="^(running|stopped)$")


class ProcessesUpdateRequest(BaseModel):
    processes: List[ProcessReport]


@router.get("")
async def list_processes(request: Request):
    """List the last reported processes."""
    processes = await request.app.state.domain_registry.list_processes()
    return {
        "count": len(processes),
        "processes": [p.to_dict() for p in processes],
    }


@router.put("")
async def report_processes(body: ProcessesUpdateRequest, request: Request):
    """Replace the process snapshot with a scanner report."""
    registry = request.app.state.domain_registry
    entries = [ProcessEntry(**p.model_dump()) for p in body.processes]
    registry.observer.push(entries)
    changed = await registry.update_processes(entries)
    return {"count": len(entries), "changed": changed}
