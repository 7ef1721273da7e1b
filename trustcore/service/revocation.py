from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, Optional

from trustcore.logging import get_logger
from trustcore.storage.base import CacheBackend
from trustcore.storage.errors import CacheUnavailable
from trustcore.storage.models import as_utc, utcnow

logger = get_logger(__name__)


class RevocationCache:
    """Mirror of revocation and consumption facts in the distributed cache.

    The cache is advisory. A hit means "revoked"; a miss or an outage means
    "ask the store", never "valid".
    """

    def __init__(
        self,
        backend: CacheBackend,
        *,
        clock: Callable[[], datetime] = utcnow,
        probe_timeout: float = 1.0,
    ) -> None:
        self.backend = backend
        self._clock = clock
        self.probe_timeout = probe_timeout

    @staticmethod
    def _key(kind: str, key: str) -> str:
        return f"{kind}:{key}"

    def ttl_for(self, expires_at: datetime) -> int:
        remaining = (as_utc(expires_at) - self._clock()).total_seconds()
        return max(0, int(remaining))

    async def publish(self, kind: str, key: str, expires_at: datetime) -> bool:
        """Record a revocation until ``expires_at``.

        Returns False when the entry had already expired and nothing was
        written. Raises ``CacheUnavailable`` when the backend is down.
        """
        ttl = self.ttl_for(expires_at)
        if ttl <= 0:
            logger.debug("revocation_publish_skipped", kind=kind, reason="expired")
            return False
        await self.backend.set_revoked(self._key(kind, key), ttl)
        return True

    async def is_revoked(self, kind: str, key: str) -> Optional[bool]:
        try:
            return await self.backend.is_revoked(self._key(kind, key))
        except CacheUnavailable:
            logger.warning("revocation_lookup_unavailable", kind=kind)
            return None

    async def health_check(self) -> bool:
        try:
            return bool(
                await asyncio.wait_for(self.backend.ping(), timeout=self.probe_timeout)
            )
        except (CacheUnavailable, asyncio.TimeoutError):
            return False

    async def revoked_count(self) -> Optional[int]:
        try:
            return await asyncio.wait_for(
                self.backend.revoked_count(), timeout=self.probe_timeout
            )
        except (CacheUnavailable, asyncio.TimeoutError):
            return None
