"""Structured JSON logging carrying the webhook and invoice being handled."""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from pythonjsonlogger.json import JsonFormatter

from invoicemailer.common.config import settings


resource_id_ctx: ContextVar[str] = ContextVar("resource_id", default="")
tenant_id_ctx: ContextVar[str] = ContextVar("tenant_id", default="")
invoice_id_ctx: ContextVar[str] = ContextVar("invoice_id", default="")

# httpx logs every request at INFO, including token exchanges.
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class WebhookContextFilter(logging.Filter):
    """Stamp each record with the service and the event currently in flight."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = settings.service_name
        record.resource_id = resource_id_ctx.get()
        record.tenant_id = tenant_id_ctx.get()
        record.invoice_id = invoice_id_ctx.get()
        return True


@contextmanager
def event_log_context(resource_id: str, tenant_id: str) -> Iterator[None]:
    """Bind an event's ids for the duration of its processing."""

    tokens = (
        resource_id_ctx.set(resource_id),
        tenant_id_ctx.set(tenant_id),
        invoice_id_ctx.set(""),
    )
    try:
        yield
    finally:
        invoice_id_ctx.reset(tokens[2])
        tenant_id_ctx.reset(tokens[1])
        resource_id_ctx.reset(tokens[0])


def configure_logging(level: str | None = None) -> None:
    """Send JSON lines to stdout; call once when the process starts."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = WebhookContextFilter()
    handler.addFilter(context_filter)
    handler.setFormatter(
        JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(service_name)s %(resource_id)s %(tenant_id)s %(invoice_id)s %(message)s",
            rename_fields={"levelname": "level", "asctime": "ts"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)
    root.addFilter(context_filter)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


logger = logging.getLogger("invoicemailer")
