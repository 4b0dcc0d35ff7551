"""Console entry point for the overdue reminder job (run it from cron)."""

import asyncio

import httpx

from invoicemailer.common.config import CommonSettings, settings
from invoicemailer.common.logging import configure_logging, logger
from invoicemailer.common.startup import prepare_data_dir
from invoicemailer.services.mailer.service import GraphMailer
from invoicemailer.services.reminder.service import InvoiceReminderService
from invoicemailer.services.xero.auth import CredentialLeaseManager
from invoicemailer.services.xero.client import XeroClient


def create_reminder_service(
    cfg: CommonSettings = settings,
    xero_transport: httpx.AsyncBaseTransport | None = None,
    mail_transport: httpx.AsyncBaseTransport | None = None,
) -> InvoiceReminderService:
    prepare_data_dir(cfg)
    credentials = CredentialLeaseManager.from_settings(cfg, xero_transport)
    return InvoiceReminderService(
        XeroClient.from_settings(cfg, credentials, xero_transport),
        GraphMailer.from_settings(cfg, mail_transport),
        cfg.reminder_state_path,
        remind_after_days=cfg.remind_after_days,
        remind_repeat_every_days=cfg.remind_repeat_every_days,
        tenant_id=cfg.reminder_tenant_id,
        enabled=cfg.reminders_enabled,
        min_interval=cfg.min_interval_seconds,
    )


def run() -> None:
    configure_logging()
    result = asyncio.run(create_reminder_service().run())
    if result.failures:
        logger.warning("reminder job finished with failures=%s", result.failures)
        raise SystemExit(1)


if __name__ == "__main__":
    run()
