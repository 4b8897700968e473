"""Map domain exceptions onto the API error envelope."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from notarium.domain.exceptions import (
    AppendOnlyViolation,
    AuditWriteError,
    ConcurrencyError,
    DomainException,
    DuplicateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from notarium.infrastructure.logging import get_correlation_id

logger = structlog.get_logger(__name__)

# Most specific class first.
STATUS_BY_EXCEPTION: tuple[tuple[type[DomainException], int], ...] = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (DuplicateError, 409),
    (InvalidTransitionError, 409),
    (ConcurrencyError, 409),
    (AppendOnlyViolation, 405),
    (AuditWriteError, 500),
)


def status_for(exc: DomainException) -> int:
    for cls, status in STATUS_BY_EXCEPTION:
        if isinstance(exc, cls):
            return status
    return 400


def error_body(code: str, message: str, details: list[dict[str, Any]] | None = None) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "details": details or [],
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    request_id = get_correlation_id()
    if request_id:
        error["request_id"] = request_id
    return {"error": error}


def _details(exc: DomainException) -> list[dict[str, Any]]:
    if isinstance(exc, ValidationError) and exc.field:
        return [{"field": exc.field, "message": exc.message}]
    if isinstance(exc, DuplicateError):
        return [{"field": exc.field, "message": "already exists"}]
    return []


def register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(status_code=422, content=error_body("VALIDATION_ERROR", "Invalid request", details))

    @app.exception_handler(DomainException)
    async def domain_handler(request: Request, exc: DomainException) -> JSONResponse:
        status = status_for(exc)
        if isinstance(exc, AuditWriteError):
            # Audit store failures are never described to callers.
            logger.critical("audit_write_failed", path=request.url.path, error=exc.message)
            return JSONResponse(status_code=status, content=error_body(exc.code, "Internal server error"))
        return JSONResponse(status_code=status, content=error_body(exc.code, exc.message, _details(exc)))

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_exception", path=request.url.path, error=str(exc), type=type(exc).__name__)
        return JSONResponse(status_code=500, content=error_body("INTERNAL_ERROR", "An unexpected error occurred"))


__all__ = ["error_body", "register_exception_handlers", "status_for"]
