"""
REST API for certificates and the local root CA.
"""

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel

from ..errors import LocalCanError
from . import http_error

logger = logging.getLogger("localcan.api.certificates")

router = APIRouter(prefix="/api/certificates", tags=["certificates"])


class CertificateRequest(BaseModel):
    domain: str


@router.get("")
async def list_certificates(request: Request):
    """List certificates ordered by domain, with validity as of now."""
    store = request.app.state.certificate_store
    certs = await store.list_certificates()
    now = store.clock()
    return {
        "count": len(certs),
        "certificates": [c.to_api_response(now) for c in certs],
    }


@router.post("", status_code=201)
async def generate_certificate(body: CertificateRequest, request: Request):
    """Issue (or reissue) the certificate for a domain."""
    store = request.app.state.certificate_store
    try:
        cert = await store.generate(body.domain)
    except LocalCanError as e:
        raise http_error(e)
    return cert.to_api_response(store.clock())


@router.get("/root")
async def root_ca_status(request: Request):
    info = await request.app.state.certificate_store.root_ca_status()
    return info.to_api_response()


@router.post("/root/install")
async def install_root_ca(request: Request):
    """Install the root CA into the OS trust store."""
    store = request.app.state.certificate_store
    try:
        installed = await store.install_root_ca()
    except LocalCanError as e:
        logger.error(f"Root CA install failed: {e}")
        raise http_error(e)
    info = await store.root_ca_status()
    return {**info.to_api_response(), "installed": installed}


@router.delete("/{domain}")
async def delete_certificate(domain: str, request: Request):
    try:
        await request.app.state.certificate_store.delete(domain)
    except LocalCanError as e:
        raise http_error(e)
    return {"status": "deleted", "domain": domain}
