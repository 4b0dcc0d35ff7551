"""OpenTelemetry wiring: OTLP export, request spans, one span per queued event."""

from contextlib import contextmanager
from typing import Iterator

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from invoicemailer.common.config import settings

# Health checks and scrapes would otherwise dominate the trace backend.
_UNTRACED_PATHS = "health,metrics"


def setup_tracing(service_name: str) -> None:
    """Register the OTLP exporter unless tracing is switched off."""

    if not settings.tracing_enabled:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    trace.set_tracer_provider(provider)


def instrument_app(app: FastAPI) -> None:
    if not settings.tracing_enabled:
        return
    FastAPIInstrumentor.instrument_app(app, excluded_urls=_UNTRACED_PATHS)


tracer = trace.get_tracer("invoicemailer")


@contextmanager
def event_span(resource_id: str, tenant_id: str, event_type: str) -> Iterator[trace.Span]:
    """Span around one head-of-queue event; exceptions mark it as failed."""

    with tracer.start_as_current_span("process_webhook_event", record_exception=True) as span:
        span.set_attribute("xero.resource_id", resource_id)
        span.set_attribute("xero.tenant_id", tenant_id)
        span.set_attribute("xero.event_type", event_type)
        try:
            yield span
        except Exception as exc:
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise
