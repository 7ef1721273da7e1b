from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from trustcore.logging import get_logger, sanitize_error_message
from trustcore.storage.errors import CacheUnavailable

logger = get_logger(__name__)

_REVOKED_INDEX_KEY = "auth:revoked:index"


class RedisCache:
    """Redis wrapper for revocation markers and rate-limit windows.

    Every command is bounded by the socket timeout, retried once, and then
    surfaced as ``CacheUnavailable`` so callers never see driver exceptions.
    """

    # Fixed-window counter: the first hit in a window arms the expiry.
    _FIXED_WINDOW_SCRIPT = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0, retries: int = 1):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.retries = max(0, retries)
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        except RedisError as exc:
            raise CacheUnavailable(sanitize_error_message(str(exc))) from exc
        finally:
            sync_client.close()

    async def _call(self, op: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        last_exc: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                return await fn()
            except (RedisError, OSError) as exc:
                last_exc = exc
                logger.warning(
                    "redis_command_failed",
                    op=op,
                    attempt=attempt + 1,
                    error=sanitize_error_message(str(exc)),
                )
        raise CacheUnavailable(f"cache {op} failed") from last_exc

    @staticmethod
    def _revoked_key(key: str) -> str:
        return f"auth:revoked:{key}"

    @staticmethod
    def _rate_key(key: str) -> str:
        return f"rate:{key}"

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.client.ping))

    async def set_revoked(self, key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        marker = self._revoked_key(key)
        expires_at = time.time() + ttl_seconds

        async def _write() -> Any:
            pipe = self.client.pipeline()
            pipe.set(marker, "1", ex=ttl_seconds)
            pipe.zadd(_REVOKED_INDEX_KEY, {marker: expires_at})
            return await pipe.execute()

        await self._call("set_revoked", _write)

    async def is_revoked(self, key: str) -> bool:
        marker = self._revoked_key(key)
        return bool(await self._call("is_revoked", lambda: self.client.exists(marker)))

    async def revoked_count(self) -> int:
        async def _count() -> Any:
            pipe = self.client.pipeline()
            pipe.zremrangebyscore(_REVOKED_INDEX_KEY, "-inf", time.time())
            pipe.zcard(_REVOKED_INDEX_KEY)
            return await pipe.execute()

        _, count = await self._call("revoked_count", _count)
        return int(count)

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Count a hit in the current fixed window; returns (count, ms until reset)."""
        safe_key = self._rate_key(key)
        window_ms = max(1, int(window_seconds * 1000))
        count, ttl_ms = await self._call(
            "incr_window",
            lambda: self._fixed_window(keys=[safe_key], args=[window_ms]),
        )
        return int(count), int(ttl_ms)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
