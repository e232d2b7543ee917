from __future__ import annotations

from typing import Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from promptvault.api.schemas import Envelope, ErrorBody, RateLimitBody
from promptvault.logging import get_logger
from promptvault.service.errors import RateLimitedError, ServiceError
from promptvault.storage.errors import ConstraintViolation

logger = get_logger(__name__)

# Stable error codes mapped to HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "validation_error",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope.model_dump()),
        headers=headers,
    )


def rate_limited_response(
    message: str, retry_after: int, headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    """429 with the ``{success, message, retryAfter}`` body clients expect."""
    merged = dict(headers or {})
    merged["Retry-After"] = str(retry_after)
    body = RateLimitBody(message=message, retryAfter=retry_after)
    return JSONResponse(status_code=429, content=body.model_dump(), headers=merged)


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(RateLimitedError)
    async def handle_rate_limited(request: Request, exc: RateLimitedError):
        logger.warning(
            "rate_limited",
            path=request.url.path,
            method=request.method,
            retry_after=exc.retry_after,
            message=exc.message,
        )
        headers: Dict[str, str] = {}
        if exc.limit is not None:
            headers["X-RateLimit-Limit"] = str(exc.limit)
            headers["X-RateLimit-Remaining"] = "0"
        if exc.reset is not None:
            headers["X-RateLimit-Reset"] = str(exc.reset)
        return rate_limited_response(exc.message, exc.retry_after, headers)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(exc.status_code, exc.message, exc.detail, code=error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = jsonable_encoder(exc.errors())
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "invalid request", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(
            exc.status_code, message, details, headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, "internal server error", code="server_error")


__all__ = ["register_exception_handlers", "rate_limited_response"]
