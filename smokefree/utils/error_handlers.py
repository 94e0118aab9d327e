"""
Error Handler Utilities

Converts service exceptions into the `{"success": false, "error": ...}` body
every endpoint returns on failure.

Usage:
    from smokefree.utils.error_handlers import register_exception_handlers

    # In main.py
    register_exception_handlers(app)
"""

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from smokefree.utils.exceptions import EntitlementError
from smokefree.utils.security_validators import sanitize_for_logging
from smokefree.utils.sentry_context import capture_error

logger = logging.getLogger(__name__)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


async def entitlement_exception_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    """Render a taxonomy error with its public message only."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{type(exc).__name__} on {request.method} {sanitize_for_logging(request.url.path)}: "
        f"{sanitize_for_logging(exc.message)}"
    )
    return error_response(exc.status_code, exc.message)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": detail},
        headers=exc.headers or {},
    )


async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    fields = sorted({str(err.get("loc", ["body"])[-1]) for err in exc.errors()})
    message = f"Invalid request: {', '.join(fields)}" if fields else "Invalid request"
    return error_response(400, message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        f"Unhandled error on {request.method} {sanitize_for_logging(request.url.path)}: "
        f"{type(exc).__name__}",
        exc_info=exc,
    )
    capture_error(exc, context_type="request", context_data={"path": request.url.path})
    return error_response(500, "Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EntitlementError, entitlement_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
