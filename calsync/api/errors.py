"""Map core errors onto HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from calsync.exceptions import CalendarSyncError, ProviderAuthError, ProviderNotFoundError

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "validation": 400,
    "overlap": 409,
    "not_found": 404,
    "forbidden": 403,
    "invalid_state": 409,
    "concurrency": 409,
    "unavailable": 409,
    "provider": 502,
    "sync_token_invalid": 409,
    "sync_in_progress": 409,
}


def status_for(error: CalendarSyncError) -> int:
    if isinstance(error, ProviderAuthError):
        return 401
    if isinstance(error, ProviderNotFoundError):
        return 404
    return STATUS_BY_KIND.get(error.kind, 500)


def error_payload(kind: str, message: str, detail=None) -> dict:
    return {"success": False, "error": {"kind": kind, "message": message, "detail": detail or {}}}


async def calendar_sync_error_handler(request: Request, exc: CalendarSyncError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected ({exc.kind}): {exc.message}")
    return JSONResponse(status_code=status, content={"success": False, "error": exc.to_dict()})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": [str(part) for part in e.get("loc", ())], "msg": e.get("msg"), "type": e.get("type")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=error_payload("validation", "Request validation failed", {"errors": errors}),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CalendarSyncError, calendar_sync_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
