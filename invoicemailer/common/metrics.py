"""Prometheus metric definitions for the ingest and processing paths."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


webhooks_received_total = Counter(
    "webhooks_received_total",
    "Webhook deliveries received",
    ["service", "kind", "signature_valid"],
)
events_enqueued_total = Counter("events_enqueued_total", "Events appended to the queue", ["service"])
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Events ignored because the identity key was already queued",
    ["service"],
)
queue_depth = Gauge("queue_depth", "Events waiting in the durable queue", ["service"])
events_processed_total = Counter(
    "events_processed_total",
    "Processing cycle outcomes",
    ["service", "outcome"],
)
event_processing_seconds = Histogram(
    "event_processing_seconds",
    "Time spent processing the head event",
    ["service"],
)
notifications_sent_total = Counter("notifications_sent_total", "Invoice emails dispatched", ["service"])
reminders_sent_total = Counter("reminders_sent_total", "Overdue reminder emails dispatched", ["service"])
duplicate_notifications_skipped_total = Counter(
    "duplicate_notifications_skipped_total",
    "Notifications suppressed by the idempotency tracker",
    ["service"],
)
token_refresh_total = Counter("token_refresh_total", "Credential refresh exchanges", ["service", "result"])
retries_total = Counter("retries_total", "Retry count", ["service", "dependency"])
persistence_failures_total = Counter(
    "persistence_failures_total",
    "Snapshot writes that failed",
    ["service", "store"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
