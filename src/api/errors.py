"""Translate ``EngineError`` subclasses into JSON error responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from src.domain.errors import (
    EngineError,
    InvalidTransition,
    NoCandidatesAvailable,
    NotFound,
    OfferExpired,
    PendingOfferExists,
    PromoError,
    StaleState,
    Unavailable,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_CODES: dict[type[EngineError], int] = {
    InvalidTransition: 409,
    StaleState: 409,
    PendingOfferExists: 409,
    PromoError: 422,
    ValidationError: 422,
    OfferExpired: 410,
    NotFound: 404,
    NoCandidatesAvailable: 503,
    Unavailable: 503,
}


def status_for(exc: EngineError) -> int:
    for cls in type(exc).__mro__:
        if cls in STATUS_CODES:
            return STATUS_CODES[cls]
    return 500


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    status_code = status_for(exc)
    body = {"detail": exc.message, "code": exc.code}
    if isinstance(exc, PromoError):
        body["kind"] = exc.kind.value
    if status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=body)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EngineError, engine_error_handler)
