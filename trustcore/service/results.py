from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Literal, Optional, TypeVar

from trustcore.logging import get_logger
from trustcore.service.errors import InfrastructureError, ServiceError

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a facade operation: either ``data`` or a ``ServiceError``."""

    status: Literal["ok", "error"]
    data: Optional[T] = None
    error: Optional[ServiceError] = None

    @classmethod
    def ok(cls, data: T = None) -> "Result[T]":
        return cls(status="ok", data=data)

    @classmethod
    def fail(cls, error: ServiceError) -> "Result[T]":
        return cls(status="error", error=error)

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.data  # type: ignore[return-value]


def returns_result(
    fn: Callable[..., Awaitable[Any]]
) -> Callable[..., Awaitable[Result[Any]]]:
    """Wrap an async operation so domain failures become ``Result.fail``.

    ``InfrastructureError`` is re-raised: an unreachable store is not a
    business outcome.
    """

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Result[Any]:
        try:
            return Result.ok(await fn(*args, **kwargs))
        except InfrastructureError:
            raise
        except ServiceError as exc:
            logger.info(
                "operation_failed",
                operation=fn.__name__,
                error_code=exc.error_code,
                status_code=exc.status_code,
            )
            return Result.fail(exc)

    return wrapper
