"""Webhook receiver, OAuth connect flow and processor lifecycle.

One process hosts everything: the HTTP endpoints enqueue, and a single
background task drains the queue.
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import httpx
from fastapi import FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import PlainTextResponse, RedirectResponse

from invoicemailer.common.config import CommonSettings, settings
from invoicemailer.common.errors import ConfigurationError, TokenRefreshError
from invoicemailer.common.logging import configure_logging, logger
from invoicemailer.common.metrics import metrics_response
from invoicemailer.common.startup import log_startup_config, prepare_data_dir
from invoicemailer.common.tracing import instrument_app, setup_tracing
from invoicemailer.services.mailer.service import GraphMailer
from invoicemailer.services.processor.idempotency import IdempotencyTracker
from invoicemailer.services.processor.queue import DurableQueue
from invoicemailer.services.processor.service import SequentialProcessor
from invoicemailer.services.webhook.schemas import QueueStatus, WebhookAck
from invoicemailer.services.webhook.service import WebhookIngestService
from invoicemailer.services.xero.auth import CredentialLeaseManager
from invoicemailer.services.xero.client import XeroClient


def create_app(
    cfg: CommonSettings = settings,
    xero_transport: httpx.AsyncBaseTransport | None = None,
    mail_transport: httpx.AsyncBaseTransport | None = None,
    run_processor: bool = True,
) -> FastAPI:
    """Wire stores, clients and the processor from settings."""

    prepare_data_dir(cfg)
    log_startup_config(
        cfg,
        [
            "data_dir",
            "xero_client_id",
            "xero_client_secret",
            "xero_webhook_key",
            "entra_tenant_id",
            "entra_client_secret",
            "shared_mailbox",
            "min_interval_seconds",
            "state_retention_days",
        ],
    )
    queue = DurableQueue(cfg.queue_path)
    tracker = IdempotencyTracker(cfg.state_path, retention=timedelta(days=cfg.state_retention_days))
    credentials = CredentialLeaseManager.from_settings(cfg, xero_transport)
    xero = XeroClient.from_settings(cfg, credentials, xero_transport)
    mailer = GraphMailer.from_settings(cfg, mail_transport)
    processor = SequentialProcessor(
        queue,
        tracker,
        xero,
        mailer,
        tracked_category=cfg.tracked_category,
        watched_event_types=tuple(cfg.watched_event_types),
        deliverable_statuses=tuple(cfg.deliverable_statuses),
        min_interval=cfg.min_interval_seconds,
        idle_interval=cfg.idle_interval_seconds,
        rate_limit_cooldown=cfg.rate_limit_cooldown_seconds,
        service_name=cfg.service_name,
    )
    ingest = WebhookIngestService(queue, cfg.xero_webhook_key, service_name=cfg.service_name)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run the queue processor with the application lifecycle."""

        processor_task = asyncio.create_task(processor.run()) if run_processor else None
        app.state.processor_task = processor_task
        yield
        processor.stop()
        if processor_task is not None:
            try:
                await asyncio.wait_for(processor_task, timeout=cfg.rate_limit_cooldown_seconds + 5)
            except asyncio.TimeoutError:
                processor_task.cancel()

    app = FastAPI(title="Invoice Mailer", lifespan=lifespan)
    app.state.queue = queue
    app.state.tracker = tracker
    app.state.credentials = credentials
    app.state.processor = processor
    app.state.processor_task = None
    app.state.oauth_states = set()
    instrument_app(app)

    @app.post("/webhooks/xero", response_model=WebhookAck)
    async def receive_xero_webhook(request: Request, x_xero_signature: str | None = Header(default=None)):
        """Verify and enqueue; processing happens later on the worker."""

        body = await request.body()
        result = await ingest.ingest(body, x_xero_signature)
        if result.intent_to_receive or result.status_code == 401:
            # Xero expects these answers without a body.
            return Response(status_code=result.status_code)
        if result.status_code == 400:
            raise HTTPException(status_code=400, detail="malformed webhook payload")
        return WebhookAck(
            timestamp=datetime.now(timezone.utc),
            signature_valid=result.signature_valid,
            enqueued=result.enqueued,
            duplicates=result.duplicates,
        )

    @app.get("/xero/connect")
    def xero_connect(request: Request):
        """Start the OAuth handshake that creates the token lease file."""

        state = str(uuid4())
        app.state.oauth_states.add(state)
        try:
            url = credentials.authorize_url(
                cfg.xero_authorize_url,
                str(request.url_for("xero_callback")),
                state,
                cfg.xero_scopes,
            )
        except ConfigurationError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return RedirectResponse(url)

    @app.get("/xero/callback", name="xero_callback", response_class=PlainTextResponse)
    async def xero_callback(request: Request, code: str | None = None, state: str | None = None, error: str | None = None):
        """Exchange the authorization code and persist the first lease."""

        if error:
            return PlainTextResponse(f"Xero returned an error: {error}", status_code=400)
        if not code:
            return PlainTextResponse("No code returned from Xero.", status_code=400)
        if state not in app.state.oauth_states:
            return PlainTextResponse("Unknown OAuth state.", status_code=400)
        app.state.oauth_states.discard(state)
        try:
            await credentials.exchange_authorization_code(code, str(request.url_for("xero_callback")))
        except (ConfigurationError, TokenRefreshError) as exc:
            logger.error("xero authorization failed: %s", exc)
            return PlainTextResponse(f"Failed to get tokens from Xero: {exc}", status_code=502)
        return PlainTextResponse(f"Connected to Xero. Tokens saved to {cfg.token_path}.")

    @app.get("/queue", response_model=QueueStatus)
    async def queue_status():
        events = await queue.get_all()
        task = app.state.processor_task
        return QueueStatus(
            depth=len(events),
            head_resource_id=events[0].resource_id if events else None,
            processor_running=task is not None and not task.done(),
        )

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    return app


configure_logging()
setup_tracing(settings.service_name)
app = create_app()


def run() -> None:
    """Serve the app with uvicorn (console entry point)."""

    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)
