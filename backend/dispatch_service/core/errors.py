"""Map dispatch domain errors onto HTTP responses."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from dispatch_engine.errors import (
    DispatchError,
    FailedPrecondition,
    Internal,
    InvalidArgument,
    NotFound,
    ResourceExhausted,
)

logger = logging.getLogger(__name__)

HTTP_STATUS: dict[type[DispatchError], int] = {
    InvalidArgument: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    FailedPrecondition: status.HTTP_412_PRECONDITION_FAILED,
    ResourceExhausted: status.HTTP_429_TOO_MANY_REQUESTS,
    Internal: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def http_status_for(exc: DispatchError) -> int:
    for cls in type(exc).__mro__:
        if cls in HTTP_STATUS:
            return HTTP_STATUS[cls]
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(exc: DispatchError) -> dict:
    return {"error": {"status": exc.code, "message": exc.message}}


async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    http_status = http_status_for(exc)
    if http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(error_body(exc), status_code=http_status)


def install_error_handlers(application: FastAPI) -> None:
    application.add_exception_handler(DispatchError, dispatch_error_handler)  # type: ignore[arg-type]
