from __future__ import annotations

from typing import Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from trustcore.api.schemas import Envelope, ErrorBody
from trustcore.logging import get_correlation_id, get_logger
from trustcore.service.errors import (
    UNAVAILABLE_MESSAGE,
    RateLimitedError,
    ServiceError,
)
from trustcore.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    503: "unavailable",
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
    envelope = Envelope(
        status="error",
        error=ErrorBody(code=error_code, message=message, details=details or None),
    )
    if get_correlation_id():
        envelope.request_id = get_correlation_id()
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def _rate_limit_headers(exc: RateLimitedError) -> Dict[str, str]:
    detail = exc.detail or {}
    headers = {"X-RateLimit-Remaining": str(detail.get("remaining", 0))}
    if "limit" in detail:
        headers["X-RateLimit-Limit"] = str(detail["limit"])
    if "reset" in detail:
        headers["X-RateLimit-Reset"] = str(detail["reset"])
    if "retry_after" in detail:
        headers["Retry-After"] = str(detail["retry_after"])
    return headers


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an ``Envelope`` with a stable error code."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(409, exc.message, code="conflict")

    @app.exception_handler(StoreUnavailable)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailable):
        logger.error("store_unavailable", path=request.url.path, method=request.method)
        return _error_response(503, UNAVAILABLE_MESSAGE, code="unavailable")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            error_type=type(exc).__name__,
        )
        headers = _rate_limit_headers(exc) if isinstance(exc, RateLimitedError) else None
        details = None if exc.status_code >= 500 else exc.detail
        return _error_response(
            exc.status_code, exc.message, details, code=exc.error_code, headers=headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", [])), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        logger.info("request_validation_failed", path=request.url.path, count=len(errors))
        return _error_response(400, "request validation failed", errors, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error", path=request.url.path, method=request.method, status_code=exc.status_code
            )
        return _error_response(exc.status_code, message)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="server_error")
