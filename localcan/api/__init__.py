"""Control-plane HTTP API."""

from fastapi import HTTPException

from ..errors import (
    BindError,
    CAError,
    ConflictError,
    InstallError,
    LocalCanError,
    NotFoundError,
    PermissionDeniedError,
    ServiceError,
    ValidationError,
)

_STATUS_CODES = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (BindError, 409),
    (PermissionDeniedError, 403),
    (CAError, 502),
    (InstallError, 500),
    (ServiceError, 500),
)


def http_error(error: LocalCanError) -> HTTPException:
    """Translate a core error into an HTTPException."""
    for cls, status_code in _STATUS_CODES:
        if isinstance(error, cls):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
