"""Webhook ingestion: signature check, intent-to-receive checks, enqueueing."""

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass

from pydantic import ValidationError

from invoicemailer.common.config import settings
from invoicemailer.common.events import WebhookPayload
from invoicemailer.common.logging import logger
from invoicemailer.common.metrics import webhooks_received_total
from invoicemailer.services.processor.queue import DurableQueue


def verify_signature(payload: bytes, signature: str | None, webhook_key: str) -> bool:
    """Compare `X-Xero-Signature` with base64(HMAC-SHA256(key, raw body))."""

    if not payload or not signature or not webhook_key:
        return False
    digest = hmac.new(webhook_key.encode("utf-8"), payload, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("ascii")
    return hmac.compare_digest(expected, signature.strip())


def is_intent_to_receive(body: dict) -> bool:
    """Xero's subscription check: no events, zero sequences, string entropy."""

    events = body.get("events")
    return (
        isinstance(events, list)
        and len(events) == 0
        and body.get("firstEventSequence") == 0
        and body.get("lastEventSequence") == 0
        and isinstance(body.get("entropy"), str)
    )


@dataclass(frozen=True)
class IngestResult:
    """What the HTTP layer needs to build its response."""

    status_code: int
    intent_to_receive: bool
    signature_valid: bool
    enqueued: int = 0
    duplicates: int = 0


class WebhookIngestService:
    """Validates one webhook delivery and queues its events."""

    def __init__(self, queue: DurableQueue, webhook_key: str, service_name: str = settings.service_name) -> None:
        self.queue = queue
        self.webhook_key = webhook_key
        self.service_name = service_name

    async def ingest(self, body: bytes, signature: str | None) -> IngestResult:
        if not self.webhook_key:
            logger.warning("no webhook key configured, every delivery will be rejected")
        signature_valid = verify_signature(body, signature, self.webhook_key)

        try:
            parsed = json.loads(body or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("webhook body is not JSON: %s", exc)
            parsed = None

        if isinstance(parsed, dict) and is_intent_to_receive(parsed):
            webhooks_received_total.labels(
                service=self.service_name, kind="intent_to_receive", signature_valid=str(signature_valid)
            ).inc()
            if not signature_valid:
                logger.warning("intent-to-receive check with invalid signature")
            return IngestResult(200 if signature_valid else 401, True, signature_valid)

        webhooks_received_total.labels(
            service=self.service_name, kind="events", signature_valid=str(signature_valid)
        ).inc()
        if not signature_valid:
            logger.error("webhook signature invalid, delivery rejected")
            return IngestResult(401, False, False)
        if not isinstance(parsed, dict):
            return IngestResult(400, False, True)
        try:
            payload = WebhookPayload.model_validate(parsed)
        except ValidationError as exc:
            logger.warning("webhook payload rejected: %s", exc)
            return IngestResult(400, False, True)

        enqueued = 0
        for event in payload.events:
            logger.info(
                "enqueuing event category=%s type=%s resource_id=%s resource_uri=%s",
                event.event_category,
                event.event_type,
                event.resource_id,
                event.resource_uri,
            )
            if await self.queue.enqueue(event):
                enqueued += 1
        return IngestResult(200, False, True, enqueued, len(payload.events) - enqueued)
