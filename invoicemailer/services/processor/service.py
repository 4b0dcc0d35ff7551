"""Sequential webhook processor.

One worker drains the durable queue head-first, one event per cycle, pacing
itself below the Xero rate limit. An event leaves the queue only when it was
handled or can never succeed; anything else leaves it at the head for the
next cycle.

Email sending is keyed on the invoice's `SentToContact` flag:

- flag false: forget any local record and ask Xero to set the flag (when the
  invoice has someone to email). The resulting UPDATE webhook comes back
  through the queue with the flag true.
- flag true, not yet recorded locally: record it, then send the email.
- flag true, already recorded: duplicate, nothing to do.
"""

import asyncio
import time
from dataclasses import dataclass

from invoicemailer.common.config import settings
from invoicemailer.common.errors import ConfigurationError, UpstreamRateLimitedError
from invoicemailer.common.events import WebhookEvent
from invoicemailer.common.logging import event_log_context, invoice_id_ctx, logger
from invoicemailer.common.metrics import (
    duplicate_notifications_skipped_total,
    event_processing_seconds,
    events_processed_total,
)
from invoicemailer.common.state_machine import CycleState, validate_transition
from invoicemailer.common.tracing import event_span
from invoicemailer.services.mailer.models import InvoiceEmail, build_subject
from invoicemailer.services.processor.idempotency import IdempotencyTracker
from invoicemailer.services.processor.queue import DurableQueue
from invoicemailer.services.xero.models import (
    extract_contact_emails,
    extract_first_name,
    extract_invoice_id,
    split_recipients,
)


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one poll cycle and how long to wait before the next."""

    state: CycleState
    event: WebhookEvent | None
    delay: float
    detail: str = ""


def is_rate_limited(exc: BaseException) -> bool:
    if isinstance(exc, UpstreamRateLimitedError):
        return True
    message = str(exc)
    return "TooManyRequests" in message or "Too Many Requests" in message


class SequentialProcessor:
    """Drives the poll-cycle state machine over the durable queue."""

    def __init__(
        self,
        queue: DurableQueue,
        tracker: IdempotencyTracker,
        xero,
        mailer,
        tracked_category: str = "INVOICE",
        watched_event_types: tuple[str, ...] = ("CREATE", "UPDATE"),
        deliverable_statuses: tuple[str, ...] = ("AUTHORISED", "PAID"),
        min_interval: float = 1.1,
        idle_interval: float = 2.0,
        rate_limit_cooldown: float = 10.0,
        service_name: str = settings.service_name,
    ) -> None:
        self.queue = queue
        self.tracker = tracker
        self.xero = xero
        self.mailer = mailer
        self.tracked_category = tracked_category
        self.watched_event_types = frozenset(watched_event_types)
        self.deliverable_statuses = frozenset(status.upper() for status in deliverable_statuses)
        self.min_interval = min_interval
        self.idle_interval = idle_interval
        self.rate_limit_cooldown = rate_limit_cooldown
        self.service_name = service_name
        self._stop = asyncio.Event()

    def stop(self) -> None:
        """Ask the loop to exit at its next sleep boundary."""

        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> None:
        """Poll until stopped; per-event and loop errors never end the loop."""

        logger.info("processor started min_interval=%s idle_interval=%s", self.min_interval, self.idle_interval)
        while not self._stop.is_set():
            try:
                result = await self.run_cycle()
                delay = result.delay
            except Exception as exc:
                logger.exception("processor loop error: %s", exc)
                delay = self.idle_interval
            if await self._sleep(delay):
                break
        logger.info("processor stopped")

    async def _sleep(self, seconds: float) -> bool:
        """Wait up to `seconds`; True when a stop was requested meanwhile."""

        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def run_cycle(self) -> CycleResult:
        """Peek at the queue and process at most its head event."""

        validate_transition(CycleState.IDLE, CycleState.PEEK)
        queue = await self.queue.get_all()
        if not queue:
            validate_transition(CycleState.PEEK, CycleState.IDLE)
            return CycleResult(CycleState.IDLE, None, self.idle_interval)

        validate_transition(CycleState.PEEK, CycleState.PROCESS)
        event = queue[0]
        result = await self._process_head(event)
        validate_transition(CycleState.PROCESS, result.state)
        validate_transition(result.state, CycleState.IDLE)
        events_processed_total.labels(service=self.service_name, outcome=result.state.value).inc()
        return result

    async def _process_head(self, event: WebhookEvent) -> CycleResult:
        started = time.perf_counter()
        with event_log_context(event.resource_id, event.tenant_id):
            try:
                with event_span(event.resource_id, event.tenant_id, event.event_type):
                    detail = await self.process_event(event)
                await self.queue.remove(event)
                logger.info("event processed outcome=%s", detail)
                return CycleResult(CycleState.SUCCESS, event, self.min_interval, detail)
            except Exception as exc:
                if is_rate_limited(exc):
                    logger.warning("rate limit hit, event stays queued: %s", exc)
                    return CycleResult(
                        CycleState.RATE_LIMITED,
                        event,
                        self.rate_limit_cooldown + self.min_interval,
                        str(exc),
                    )
                if isinstance(exc, ConfigurationError):
                    logger.error("configuration error, event stays queued: %s", exc)
                else:
                    logger.error("event processing failed, event stays queued: %s", exc)
                return CycleResult(CycleState.RETRIABLE_FAILURE, event, self.min_interval, str(exc))
            finally:
                event_processing_seconds.labels(service=self.service_name).observe(time.perf_counter() - started)

    async def process_event(self, event: WebhookEvent) -> str:
        """Apply the decision procedure to one event.

        Returns a short outcome label when the event is finished with (sent,
        skipped or handed back to Xero); raises when it should be retried.
        """

        if event.event_category != self.tracked_category:
            logger.info("skipping event category=%s", event.event_category)
            return "skipped_category"
        if event.event_type not in self.watched_event_types:
            logger.info("skipping event type=%s", event.event_type)
            return "skipped_event_type"
        invoice_id = extract_invoice_id(event.resource_uri)
        if not invoice_id:
            logger.warning("could not extract invoice id from resource_uri=%s", event.resource_uri)
            return "skipped_bad_uri"
        invoice_id_ctx.set(invoice_id)

        invoice = await self.xero.get_invoice(event.tenant_id, invoice_id)
        status = str(invoice.get("Status") or "")
        sent_to_contact = bool(invoice.get("SentToContact"))
        logger.info("invoice fetched status=%s sent_to_contact=%s", status, sent_to_contact)
        if status.upper() not in self.deliverable_statuses:
            logger.info("invoice status %s not deliverable, skipping", status)
            return "skipped_status"

        if not sent_to_contact:
            self.tracker.record_state(invoice_id, False)
            if not extract_contact_emails(invoice):
                logger.warning("no contact email on invoice %s, not marking as sent", invoice_id)
                return "no_contacts"
            await self.xero.mark_sent_to_contact(event.tenant_id, invoice_id)
            return "sent_flag_requested"

        if self.tracker.get_last_sent(invoice_id):
            duplicate_notifications_skipped_total.labels(service=self.service_name).inc()
            logger.info("invoice %s already notified, not sending again", invoice_id)
            return "duplicate"

        if not extract_contact_emails(invoice):
            logger.warning("no contact email on invoice %s", invoice_id)
            return "no_contacts"

        # Recorded before sending: a crash mid-send loses one email rather than
        # sending it twice. An ordinary send failure rolls the record back.
        self.tracker.record_state(invoice_id, True)
        try:
            await self._dispatch(event.tenant_id, invoice_id, invoice)
        except Exception:
            self.tracker.record_state(invoice_id, False)
            raise
        return "sent"

    async def _dispatch(self, tenant_id: str, invoice_id: str, invoice: dict) -> None:
        invoice_number = invoice.get("InvoiceNumber") or invoice_id
        reference = invoice.get("Reference") or ""
        online_invoice_url = await self._optional(
            "online invoice url", self.xero.get_online_invoice_url(tenant_id, invoice_id)
        )
        pdf_bytes = await self._optional("invoice pdf", self.xero.get_invoice_pdf(tenant_id, invoice_id))
        organisation = await self._optional("organisation", self.xero.get_organisation(tenant_id))
        to, cc = split_recipients(invoice)
        email = InvoiceEmail(
            to=to,
            cc=cc,
            subject=build_subject(invoice_number, reference),
            invoice_number=invoice_number,
            reference=reference,
            first_name=extract_first_name(invoice),
            pdf_bytes=pdf_bytes,
            pdf_file_name=f"{invoice_number}.pdf",
            online_invoice_url=online_invoice_url,
            organisation=organisation,
        )
        await self.mailer.send_invoice_email(email)

    async def _optional(self, what: str, call):
        """Await an ancillary lookup; a failure degrades the email, never blocks it."""

        try:
            return await call
        except Exception as exc:
            logger.error("%s lookup failed, sending without it: %s", what, exc)
            return None
