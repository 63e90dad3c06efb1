"""
REST API for local domain management.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..domains.models import AUTO_DETECTED, CUSTOM, suggest_domain
from ..errors import LocalCanError
from . import http_error

logger = logging.getLogger("localcan.api.domains")

router = APIRouter(prefix="/api/domains", tags=["domains"])


# ── Request / Response models ────────────────────────────────────────

class DomainAddRequest(BaseModel):
    domain: str
    target: str
    ssl: bool = False


# ── Routes ───────────────────────────────────────────────────────────

@router.get("")
async def list_domains(request: Request, category: Optional[str] = None):
    """
    List all domain entries.

    `category` filters by `all`, `active`, `custom`, `auto-detected` or a
    framework key.
    """
    entries = await request.app.state.domain_registry.list_entries()

    if category and category != "all":
        if category == "active":
            entries = [
                e for e in entries
                if (e.source_kind == CUSTOM and e.published)
                or (e.source_kind == AUTO_DETECTED and e.status == "running")
            ]
        elif category == AUTO_DETECTED:
            entries = [e for e in entries if e.source_kind == AUTO_DETECTED]
        else:
            entries = [e for e in entries if e.category == category]

    return {
        "count": len(entries),
        "domains": [e.to_api_response() for e in entries],
    }


@router.get("/categories")
async def domain_categories(request: Request):
    """Counts per sidebar category."""
    return await request.app.state.domain_registry.categories()


@router.get("/suggest")
async def suggest(target: str):
    """Suggest a domain name for a local target URL."""
    return {"target": target, "domain": suggest_domain(target)}


@router.get("/hosts-permission")
async def hosts_permission(request: Request):
    """Whether the hosts file can be edited by this process."""
    return {"has_permission": request.app.state.domain_registry.has_hosts_permission()}


@router.post("", status_code=201)
async def add_domain(body: DomainAddRequest, request: Request):
    """Register a custom domain."""
    registry = request.app.state.domain_registry
    try:
        result = await registry.add_custom_domain(body.domain, body.target, body.ssl)
    except LocalCanError as e:
        raise http_error(e)
    return result.to_api_response()


@router.post("/{domain_id}/toggle")
async def toggle_domain(domain_id: str, request: Request):
    """Publish or unpublish a custom domain."""
    try:
        domain = await request.app.state.domain_registry.toggle_domain(domain_id)
    except LocalCanError as e:
        raise http_error(e)
    return domain.to_dict()


@router.post("/{domain_id}/ssl")
async def toggle_ssl(domain_id: str, request: Request):
    """Flip whether a custom domain should be served over https."""
    try:
        domain = await request.app.state.domain_registry.toggle_ssl(domain_id)
    except LocalCanError as e:
        raise http_error(e)
    return domain.to_dict()


@router.delete("/{domain_id}")
async def delete_domain(domain_id: str, request: Request):
    try:
        await request.app.state.domain_registry.delete_domain(domain_id)
    except LocalCanError as e:
        raise http_error(e)
    return {"status": "deleted", "id": domain_id}
