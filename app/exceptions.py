import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from services.exceptions import (
    GoldenTestDomainError,
    GoldenTestNotFoundError,
    PersistenceFailure,
    ValidationError,
)

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    ValidationError: 422,
    GoldenTestNotFoundError: 404,
    PersistenceFailure: 503,
}


def _status_for(exc: GoldenTestDomainError) -> int:
    for exc_type, status_code in _STATUS_CODES.items():
        if isinstance(exc, exc_type):
            return status_code
    return 500


async def domain_exception_handler(request: Request, exc: GoldenTestDomainError):
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.__class__.__name__,
            "message": str(exc),
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GoldenTestDomainError, domain_exception_handler)
