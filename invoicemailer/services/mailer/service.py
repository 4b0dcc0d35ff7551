"""Microsoft Graph mail transport for invoice notifications and reminders."""

import asyncio
import base64
import html
from datetime import datetime, timedelta, timezone

import httpx

from invoicemailer.common.config import CommonSettings, settings
from invoicemailer.common.errors import ConfigurationError, raise_for_upstream
from invoicemailer.common.logging import logger
from invoicemailer.common.metrics import notifications_sent_total, reminders_sent_total
from invoicemailer.services.mailer.models import InvoiceEmail, ReminderEmail, format_amount
from invoicemailer.services.xero.models import OrganisationDetails


def _footer(org: OrganisationDetails | None) -> str:
    if org is None:
        return ""
    footer = [org.display_name, org.address, org.phone_number, org.email, org.website]
    return "<p>" + "<br>".join(html.escape(part) for part in footer if part) + "</p>"


def _body(email: InvoiceEmail) -> str:
    """Minimal HTML body: greeting, where the invoice is, and who sent it."""

    greeting = f"Dear {html.escape(email.first_name)}," if email.first_name else "Hello,"
    lines = [f"<p>{greeting}</p>"]
    number = html.escape(email.invoice_number)
    if email.pdf_bytes is not None and email.online_invoice_url:
        lines.append(f"<p>Please find invoice {number} attached.</p>")
        lines.append(f'<p>You can also <a href="{html.escape(email.online_invoice_url)}">view it online</a>.</p>')
    elif email.pdf_bytes is not None:
        lines.append(f"<p>Please find invoice {number} attached.</p>")
    elif email.online_invoice_url:
        lines.append(f'<p>Invoice {number} is available <a href="{html.escape(email.online_invoice_url)}">online</a>.</p>')
    else:
        lines.append(f"<p>Invoice {number} has been issued to you.</p>")
    if email.organisation is not None:
        lines.append(_footer(email.organisation))
    return "\n".join(lines)


def _reminder_body(email: ReminderEmail) -> str:
    """Greeting, a table of the overdue invoices, the total and the footer."""

    greeting = f"Dear {html.escape(email.first_name)}," if email.first_name else "Hello,"
    lines = [
        f"<p>{greeting}</p>",
        "<p>The following invoices are overdue. Please bring your account up to date at your earliest convenience.</p>",
        '<table border="1" cellpadding="6" cellspacing="0" style="border-collapse:collapse;">',
        "<thead><tr><th>Invoice</th><th>Reference</th><th>Due Date</th><th>Amount Due</th></tr></thead>",
        "<tbody>",
    ]
    for line in email.lines:
        number = html.escape(line.invoice_number)
        if line.online_invoice_url:
            number = f'<a href="{html.escape(line.online_invoice_url)}">{number}</a>'
        lines.append(
            f"<tr><td>{number}</td><td>{html.escape(line.reference)}</td>"
            f"<td>{line.due_date.isoformat()}</td>"
            f'<td style="text-align:right;">{html.escape(format_amount(line.amount_due, email.currency_code))}</td></tr>'
        )
    lines.append("</tbody></table>")
    lines.append(f"<p><strong>Total Overdue: {html.escape(format_amount(email.total_due, email.currency_code))}</strong></p>")
    lines.append("<p>If you have already made payment, please disregard this reminder.</p>")
    if email.organisation is not None:
        lines.append(_footer(email.organisation))
    return "\n".join(lines)


class GraphMailer:
    """Sends mail as the shared mailbox using an app-only Entra token."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        mailbox: str,
        graph_url: str = "https://graph.microsoft.com/v1.0",
        login_url: str = "https://login.microsoftonline.com",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.mailbox = mailbox
        self.graph_url = graph_url.rstrip("/")
        self.login_url = login_url.rstrip("/")
        self._transport = transport
        self._timeout = timeout
        self._token: str | None = None
        self._token_expires_at = datetime.min.replace(tzinfo=timezone.utc)
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, cfg: CommonSettings, transport: httpx.AsyncBaseTransport | None = None) -> "GraphMailer":
        return cls(
            tenant_id=cfg.entra_tenant_id,
            client_id=cfg.entra_client_id,
            client_secret=cfg.entra_client_secret,
            mailbox=cfg.shared_mailbox,
            graph_url=cfg.graph_url,
            login_url=cfg.entra_login_url,
            transport=transport,
            timeout=cfg.http_timeout_seconds,
        )

    def _require_config(self) -> None:
        missing = [
            name
            for name, value in (
                ("ENTRA_TENANT_ID", self.tenant_id),
                ("ENTRA_CLIENT_ID", self.client_id),
                ("ENTRA_CLIENT_SECRET", self.client_secret),
                ("SHARED_MAILBOX", self.mailbox),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(f"mail transport not configured: missing {', '.join(missing)}")

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        async with self._token_lock:
            if self._token and datetime.now(timezone.utc) < self._token_expires_at:
                return self._token
            response = await client.post(
                f"{self.login_url}/{self.tenant_id}/oauth2/v2.0/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": "https://graph.microsoft.com/.default",
                },
            )
            raise_for_upstream(response, "graph token")
            body = response.json()
            self._token = body["access_token"]
            self._token_expires_at = datetime.now(timezone.utc) + timedelta(
                seconds=int(body.get("expires_in", 3600)) - 60
            )
            return self._token

    async def send_invoice_email(self, email: InvoiceEmail) -> None:
        message = self._message(email.subject, _body(email), email.to, email.cc)
        if email.pdf_bytes is not None:
            message["attachments"] = [
                {
                    "@odata.type": "#microsoft.graph.fileAttachment",
                    "name": email.pdf_file_name or f"{email.invoice_number}.pdf",
                    "contentType": "application/pdf",
                    "contentBytes": base64.b64encode(email.pdf_bytes).decode("ascii"),
                }
            ]
        await self._send(message)
        notifications_sent_total.labels(service=settings.service_name).inc()
        logger.info(
            "invoice email sent invoice_number=%s to=%s cc=%s pdf_attached=%s",
            email.invoice_number,
            email.to,
            email.cc,
            email.pdf_bytes is not None,
        )

    async def send_reminder_email(self, email: ReminderEmail) -> None:
        await self._send(self._message(email.subject, _reminder_body(email), email.to, email.cc))
        reminders_sent_total.labels(service=settings.service_name).inc()
        logger.info(
            "reminder email sent contact=%s to=%s cc=%s invoices=%s total=%s",
            email.contact_name,
            email.to,
            email.cc,
            len(email.lines),
            format_amount(email.total_due, email.currency_code),
        )

    @staticmethod
    def _message(subject: str, content: str, to: list[str], cc: list[str]) -> dict:
        return {
            "subject": subject,
            "body": {"contentType": "HTML", "content": content},
            "toRecipients": [{"emailAddress": {"address": address}} for address in to],
            "ccRecipients": [{"emailAddress": {"address": address}} for address in cc],
        }

    async def _send(self, message: dict) -> None:
        self._require_config()
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            token = await self._access_token(client)
            response = await client.post(
                f"{self.graph_url}/users/{self.mailbox}/sendMail",
                headers={"Authorization": f"Bearer {token}"},
                json={"message": message, "saveToSentItems": True},
            )
        raise_for_upstream(response, "graph sendMail")
