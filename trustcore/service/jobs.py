from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Set

from trustcore.logging import get_logger
from trustcore.storage.models import as_utc, utcnow

logger = get_logger(__name__)

JobHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class JobScheduler(Protocol):
    def register(self, name: str, handler: JobHandler) -> None: ...

    async def enqueue(
        self, name: str, payload: Dict[str, Any], *, run_at: Optional[datetime] = None
    ) -> None: ...

    async def close(self) -> None: ...


class LocalJobScheduler:
    """In-process scheduler running registered handlers on the event loop.

    Delayed jobs sleep until ``run_at``. Jobs are lost on restart; durable
    execution belongs to an external worker implementing ``JobScheduler``.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._handlers: Dict[str, JobHandler] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._clock = clock

    def register(self, name: str, handler: JobHandler) -> None:
        self._handlers[name] = handler

    async def enqueue(
        self, name: str, payload: Dict[str, Any], *, run_at: Optional[datetime] = None
    ) -> None:
        if name not in self._handlers:
            raise KeyError(f"no handler registered for job '{name}'")
        delay = 0.0
        if run_at is not None:
            delay = max(0.0, (as_utc(run_at) - self._clock()).total_seconds())
        task = asyncio.create_task(self._run(name, payload, delay))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("job_enqueued", job=name, delay_seconds=int(delay))

    async def _run(self, name: str, payload: Dict[str, Any], delay: float) -> None:
        if delay:
            await asyncio.sleep(delay)
        try:
            await self._handlers[name](payload)
        except Exception as exc:
            logger.error("job_failed", job=name, error_type=type(exc).__name__)
            return
        logger.info("job_completed", job=name)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float = 0.2) -> None:
        """Wait up to ``timeout`` for in-flight jobs; delayed jobs keep sleeping."""
        running = [t for t in self._tasks if not t.done()]
        if running:
            await asyncio.wait(running, timeout=timeout)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
