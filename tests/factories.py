"""Builders and in-memory fakes shared by the test modules."""

from datetime import datetime, timezone

from invoicemailer.common.events import WebhookEvent
from invoicemailer.services.xero.models import OrganisationDetails

T0 = datetime(2025, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2025, 3, 1, 9, 5, 0, tzinfo=timezone.utc)


def make_event(
    resource_id: str = "INV-1",
    event_date: datetime = T0,
    category: str = "INVOICE",
    event_type: str = "UPDATE",
    resource_uri: str | None = None,
    tenant_id: str = "tenant-1",
) -> WebhookEvent:
    if resource_uri is None:
        resource_uri = f"https://api.xero.com/api.xro/2.0/Invoices/{resource_id}"
    return WebhookEvent(
        resource_id=resource_id,
        resource_uri=resource_uri,
        tenant_id=tenant_id,
        event_category=category,
        event_type=event_type,
        event_date_utc=event_date,
    )


def make_invoice(
    sent_to_contact: bool,
    status: str = "AUTHORISED",
    emails: tuple[str, ...] = ("ap@customer.example",),
    number: str = "INV-0001",
    reference: str = "",
) -> dict:
    contact: dict = {"FirstName": "Dana", "ContactPersons": []}
    if emails:
        contact["EmailAddress"] = emails[0]
        contact["ContactPersons"] = [
            {"FirstName": f"Person{i}", "EmailAddress": email, "IncludeInEmails": True}
            for i, email in enumerate(emails[1:])
        ]
    return {
        "InvoiceNumber": number,
        "Reference": reference,
        "Status": status,
        "SentToContact": sent_to_contact,
        "Contact": contact,
    }


class FakeXero:
    """In-memory stand-in for XeroClient."""

    def __init__(self) -> None:
        self.invoices: dict[str, object] = {}
        self.marked: list[str] = []
        self.pdf_error: Exception | None = None
        self.organisation_error: Exception | None = None
        self.outstanding: list[dict] = []
        self.tenant_lookups = 0

    async def get_invoice(self, tenant_id: str, invoice_id: str) -> dict:
        value = self.invoices[invoice_id]
        if isinstance(value, Exception):
            raise value
        return value

    async def get_tenant_id(self) -> str:
        self.tenant_lookups += 1
        return "tenant-1"

    async def get_outstanding_invoices(self, tenant_id: str) -> list[dict]:
        return list(self.outstanding)

    async def mark_sent_to_contact(self, tenant_id: str, invoice_id: str) -> bool:
        self.marked.append(invoice_id)
        return True

    async def get_online_invoice_url(self, tenant_id: str, invoice_id: str) -> str | None:
        return f"https://in.xero.com/{invoice_id}"

    async def get_invoice_pdf(self, tenant_id: str, invoice_id: str) -> bytes:
        if self.pdf_error is not None:
            raise self.pdf_error
        return b"%PDF-1.4 fake"

    async def get_organisation(self, tenant_id: str) -> OrganisationDetails:
        if self.organisation_error is not None:
            raise self.organisation_error
        return OrganisationDetails(name="Acme Ltd", city="Wellington")


class FakeMailer:
    """Records emails instead of sending them."""

    def __init__(self) -> None:
        self.sent = []
        self.reminders = []
        self.fail_with: BaseException | None = None

    async def send_invoice_email(self, email) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(email)

    async def send_reminder_email(self, email) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.reminders.append(email)
