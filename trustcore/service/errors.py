from __future__ import annotations

import functools
import inspect
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from trustcore.storage.errors import ConstraintViolation, StoreUnavailable

CREDENTIALS_MESSAGE = "Invalid email or password."
TOKEN_MESSAGE = "This link is invalid or has expired."
CODE_MESSAGE = "Invalid verification code."
RATE_LIMITED_MESSAGE = "Too many attempts. Please try again in a moment."
UNAVAILABLE_MESSAGE = "Service temporarily unavailable."


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Request could not be processed."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "Authentication required."


class InvalidCredentials(AuthenticationError):
    default_message = CREDENTIALS_MESSAGE


class UserNotFound(AuthenticationError):
    default_message = CREDENTIALS_MESSAGE


class AccountUnverified(AuthenticationError):
    default_message = CREDENTIALS_MESSAGE


class AccountScheduledForDeletion(AuthenticationError):
    default_message = CREDENTIALS_MESSAGE


class InvalidTokenError(AuthenticationError):
    default_message = TOKEN_MESSAGE


class TokenExpiredError(InvalidTokenError):
    pass


class ConsumedError(InvalidTokenError):
    pass


class InvalidCodeError(AuthenticationError):
    default_message = CODE_MESSAGE


class AuthorizationError(ServiceError):
    """Authenticated but not allowed to act on the resource (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "You do not have access to this resource."


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "Not found."


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "Conflict."


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = RATE_LIMITED_MESSAGE


class InfrastructureError(ServiceError):
    """Store or cache unreachable (503). Never converted into a result."""
    status_code = 503
    error_code = "unavailable"
    default_message = UNAVAILABLE_MESSAGE


__all__ = [
    "CREDENTIALS_MESSAGE",
    "TOKEN_MESSAGE",
    "CODE_MESSAGE",
    "RATE_LIMITED_MESSAGE",
    "UNAVAILABLE_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "UserNotFound",
    "AccountUnverified",
    "AccountScheduledForDeletion",
    "InvalidTokenError",
    "TokenExpiredError",
    "ConsumedError",
    "InvalidCodeError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "InfrastructureError",
    "storage_errors",
    "translates_storage_errors",
]


@contextmanager
def storage_errors() -> Iterator[None]:
    """Translate storage-layer exceptions into the service taxonomy."""
    try:
        yield
    except ConstraintViolation as exc:
        raise ConflictError(exc.message, detail=exc.detail) from exc
    except StoreUnavailable as exc:
        raise InfrastructureError() from exc


def translates_storage_errors(fn: Callable) -> Callable:
    if inspect.iscoroutinefunction(fn):

        @functools.wraps(fn)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            with storage_errors():
                return await fn(*args, **kwargs)

        return async_wrapper

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        with storage_errors():
            return fn(*args, **kwargs)

    return wrapper
