"""Collapse concurrent calls for the same key into one in-flight task."""

import asyncio
from typing import Any, Awaitable, Callable

from invoicemailer.common.logging import logger


class SingleFlight:
    """Key -> running task map; later callers for a busy key share its result."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._inflight: dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Run `fn` for `key`, or wait on the run already in progress."""

        async with self._lock:
            task = self._inflight.get(key)
            if task is None:
                task = asyncio.create_task(fn())
                self._inflight[key] = task
                task.add_done_callback(lambda done, k=key: self._evict(k, done))
            else:
                logger.info("single_flight_joined key=%s", key)
        # Shielded so one caller being cancelled does not cancel the shared work.
        return await asyncio.shield(task)

    def _evict(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Marks the exception retrieved even if every waiter was cancelled.
            task.exception()
