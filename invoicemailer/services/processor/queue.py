"""File-backed FIFO queue of pending webhook events.

Every operation is a read-modify-write of the whole file under one lock, so
concurrent callers (the webhook endpoint enqueuing, the worker removing)
observe a linear history and never lose each other's updates.
"""

import asyncio
from pathlib import Path

from pydantic import ValidationError

from invoicemailer.common.config import settings
from invoicemailer.common.events import WebhookEvent
from invoicemailer.common.logging import logger
from invoicemailer.common.metrics import duplicate_events_skipped_total, events_enqueued_total, queue_depth
from invoicemailer.common.snapshot import read_snapshot, write_snapshot


class DurableQueue:
    """Ordered, deduplicated event queue persisted as a JSON array."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def enqueue(self, event: WebhookEvent) -> bool:
        """Append `event` unless its identity key is already queued."""

        async with self._lock:
            queue = await self._read()
            if any(existing.identity == event.identity for existing in queue):
                duplicate_events_skipped_total.labels(service=settings.service_name).inc()
                logger.info(
                    "duplicate event ignored resource_id=%s event_date_utc=%s",
                    event.resource_id,
                    event.event_date_utc.isoformat(),
                )
                return False
            queue.append(event)
            await self._write(queue)
            events_enqueued_total.labels(service=settings.service_name).inc()
            return True

    async def get_all(self) -> list[WebhookEvent]:
        """Return the queue head-to-tail without changing it."""

        async with self._lock:
            return await self._read()

    async def remove(self, event: WebhookEvent) -> None:
        """Drop the first entry sharing `event`'s identity key, if any."""

        async with self._lock:
            queue = await self._read()
            for index, existing in enumerate(queue):
                if existing.identity == event.identity:
                    del queue[index]
                    await self._write(queue)
                    return

    async def _read(self) -> list[WebhookEvent]:
        raw = await asyncio.to_thread(read_snapshot, self.path, list, "queue")
        events = []
        for item in raw:
            try:
                events.append(WebhookEvent.model_validate(item))
            except ValidationError as exc:
                logger.warning("queue entry dropped: %s", exc)
        queue_depth.labels(service=settings.service_name).set(len(events))
        return events

    async def _write(self, queue: list[WebhookEvent]) -> None:
        written = await asyncio.to_thread(
            write_snapshot, self.path, [event.to_wire() for event in queue], "queue"
        )
        if written:
            logger.debug("queue written path=%s count=%s", self.path, len(queue))
        queue_depth.labels(service=settings.service_name).set(len(queue))
