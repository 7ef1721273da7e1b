from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Tuple


class MemoryCache:
    """Single-process stand-in for the distributed cache.

    Used when ``TEST_MODE`` is set or Redis is absent in development; it has
    no cross-process visibility, so revocations only reach this instance.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._revoked: Dict[str, float] = {}
        self._windows: Dict[str, Tuple[int, float]] = {}

    def verify_connection(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def set_revoked(self, key: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._revoked[key] = self._clock() + ttl_seconds

    async def is_revoked(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            expires = self._revoked.get(key)
            if expires is None:
                return False
            if expires <= now:
                self._revoked.pop(key, None)
                return False
            return True

    async def revoked_count(self) -> int:
        now = self._clock()
        with self._lock:
            for key in [k for k, exp in self._revoked.items() if exp <= now]:
                self._revoked.pop(key, None)
            return len(self._revoked)

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if reset_at <= now:
                count, reset_at = 0, now + window_seconds
            count += 1
            self._windows[key] = (count, reset_at)
        return count, max(0, int((reset_at - now) * 1000))

    async def close(self) -> None:
        with self._lock:
            self._revoked.clear()
            self._windows.clear()
