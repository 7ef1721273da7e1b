from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from trustcore.config import Settings
from trustcore.logging import get_logger
from trustcore.service.errors import RateLimitedError
from trustcore.storage.base import CacheBackend
from trustcore.storage.errors import CacheUnavailable
from trustcore.storage.models import utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: datetime
    limit: int = 0

    def retry_after(self, now: datetime) -> int:
        return max(1, int((self.reset_at - now).total_seconds() + 0.999))


def ip_identity(address: str | None) -> str:
    return f"ip:{address or 'unknown'}"


def user_identity(user_id: str) -> str:
    return f"user:{user_id}"


class RateLimiter:
    """Fixed-window counters keyed by a hash of (action, identity).

    An unreachable backend denies the request.
    """

    def __init__(
        self,
        backend: CacheBackend,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self._clock = clock

    @staticmethod
    def _key(identity: str, action: str) -> str:
        return hashlib.sha256(f"{action}|{identity}".encode()).hexdigest()

    async def limit(self, identity: str, action: str) -> RateLimitDecision:
        limit, window = self.settings.rate_limit_policy(action)
        now = self._clock()
        try:
            count, ttl_ms = await self.backend.incr_window(
                self._key(identity, action), window
            )
        except CacheUnavailable:
            logger.error("rate_limit_backend_unavailable", action=action)
            return RateLimitDecision(
                allowed=False,
                remaining=0,
                reset_at=now + timedelta(seconds=window),
                limit=limit,
            )
        decision = RateLimitDecision(
            allowed=count <= limit,
            remaining=max(0, limit - count),
            reset_at=now + timedelta(milliseconds=max(0, ttl_ms)),
            limit=limit,
        )
        if not decision.allowed:
            logger.warning("rate_limit_exceeded", action=action, count=count, limit=limit)
        return decision

    async def enforce(self, identity: str, action: str) -> RateLimitDecision:
        decision = await self.limit(identity, action)
        if not decision.allowed:
            raise RateLimitedError(
                detail={
                    "retry_after": decision.retry_after(self._clock()),
                    "limit": decision.limit,
                    "remaining": decision.remaining,
                    "reset": int(decision.reset_at.timestamp()),
                }
            )
        return decision
