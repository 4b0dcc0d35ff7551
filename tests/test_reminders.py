"""Overdue reminder selection, grouping and last-reminded bookkeeping."""

import json
from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from invoicemailer.common.config import CommonSettings
from invoicemailer.common.errors import UpstreamError
from invoicemailer.services.reminder.main import create_reminder_service
from invoicemailer.services.reminder.service import InvoiceReminderService
from tests.factories import make_invoice

TODAY = date(2025, 3, 15)


def xero_date(day: date) -> str:
    millis = int(datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp() * 1000)
    return f"/Date({millis}+0000)/"


def outstanding(invoice_id: str, contact_id: str = "C-1", days_overdue: int = 30, amount_due="120.00") -> dict:
    return {
        "InvoiceID": invoice_id,
        "InvoiceNumber": f"INV-{invoice_id}",
        "Reference": f"PO-{invoice_id}",
        "DueDate": xero_date(TODAY - timedelta(days=days_overdue)),
        "AmountDue": amount_due,
        "CurrencyCode": "NZD",
        "Contact": {"ContactID": contact_id, "Name": f"Customer {contact_id}"},
    }


def with_contact(invoice_id: str, contact_id: str, emails=("ap@customer.example",)) -> dict:
    invoice = make_invoice(False, emails=emails, number=f"INV-{invoice_id}")
    invoice["Contact"].update({"ContactID": contact_id, "Name": f"Customer {contact_id}"})
    return invoice


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "reminders.json"


@pytest.fixture
def reminders(xero, mailer, state_path) -> InvoiceReminderService:
    return InvoiceReminderService(xero, mailer, state_path, min_interval=0, clock=lambda: TODAY)


def stored(state_path) -> dict:
    return json.loads(state_path.read_text())


async def test_invoice_is_reminded_from_the_seventh_day_overdue(reminders, xero, mailer, state_path):
    xero.outstanding = [outstanding("A", "C-1", days_overdue=6), outstanding("B", "C-2", days_overdue=7)]
    xero.invoices["A"] = with_contact("A", "C-1")
    xero.invoices["B"] = with_contact("B", "C-2")

    result = await reminders.run()

    [email] = mailer.reminders
    assert email.contact_name == "Customer C-2"
    assert [line.invoice_id for line in email.lines] == ["B"]
    assert result.contacts_reminded == 1
    assert stored(state_path) == {"B": "2025-03-15"}


async def test_repeat_window_holds_back_recently_reminded_invoices(reminders, xero, mailer, state_path):
    state_path.write_text(json.dumps({"A": "2025-03-12", "B": "2025-03-08T00:00:00Z"}))
    xero.outstanding = [outstanding("A"), outstanding("B")]
    xero.invoices["B"] = with_contact("B", "C-1")

    await reminders.run()

    [email] = mailer.reminders
    assert [line.invoice_id for line in email.lines] == ["B"]
    assert stored(state_path) == {"A": "2025-03-12", "B": "2025-03-15"}


async def test_nothing_is_sent_while_every_invoice_is_inside_the_window(reminders, xero, mailer, state_path):
    state_path.write_text(json.dumps({"A": "2025-03-14"}))
    xero.outstanding = [outstanding("A")]

    result = await reminders.run()

    assert mailer.reminders == []
    assert result.contacts_reminded == 0
    assert stored(state_path) == {"A": "2025-03-14"}


async def test_one_email_per_contact_and_paid_invoices_are_left_out(reminders, xero, mailer):
    xero.outstanding = [
        outstanding("A", "C-1", amount_due="100.00"),
        outstanding("B", "C-2", amount_due="50"),
        outstanding("C", "C-1", amount_due="25.50"),
        outstanding("D", "C-1", amount_due="0.00"),
    ]
    xero.invoices["A"] = with_contact("A", "C-1", emails=("ap@one.example", "cfo@one.example"))
    xero.invoices["B"] = with_contact("B", "C-2", emails=("ap@two.example",))

    result = await reminders.run()

    first, second = mailer.reminders
    assert first.to == ["ap@one.example"]
    assert first.cc == ["cfo@one.example"]
    assert [line.invoice_id for line in first.lines] == ["A", "C"]
    assert str(first.total_due) == "125.50"
    assert first.currency_code == "NZD"
    assert first.lines[0].online_invoice_url == "https://in.xero.com/A"
    assert first.lines[0].due_date == TODAY - timedelta(days=30)
    assert first.organisation.display_name == "Acme Ltd"
    assert [line.invoice_id for line in second.lines] == ["B"]
    assert result.invoices_reminded == 3


async def test_contact_without_email_keeps_previous_dates(reminders, xero, mailer, state_path):
    state_path.write_text(json.dumps({"A": "2025-03-01"}))
    xero.outstanding = [outstanding("A"), outstanding("B")]
    xero.invoices["A"] = with_contact("A", "C-1", emails=())

    result = await reminders.run()

    assert mailer.reminders == []
    assert result.contacts_skipped == 1
    assert stored(state_path) == {"A": "2025-03-01"}


async def test_send_failure_moves_on_to_the_next_contact(reminders, xero, mailer, state_path):
    xero.outstanding = [outstanding("A", "C-1"), outstanding("B", "C-2")]
    xero.invoices["A"] = UpstreamError("get invoice A failed: status=500", 500)
    xero.invoices["B"] = with_contact("B", "C-2")

    result = await reminders.run()

    assert result.failures == 1
    assert [email.contact_name for email in mailer.reminders] == ["Customer C-2"]
    assert stored(state_path) == {"B": "2025-03-15"}


async def test_paid_invoices_drop_out_of_the_state_file(reminders, xero, state_path):
    state_path.write_text(json.dumps({"PAID-LONG-AGO": "2025-01-01"}))
    xero.outstanding = []

    await reminders.run()

    assert stored(state_path) == {}


async def test_configured_tenant_skips_the_connections_lookup(xero, mailer, state_path):
    service = InvoiceReminderService(
        xero, mailer, state_path, tenant_id="tenant-7", min_interval=0, clock=lambda: TODAY
    )

    await service.run()

    assert xero.tenant_lookups == 0


async def test_disabled_job_does_nothing(xero, mailer, state_path):
    service = InvoiceReminderService(xero, mailer, state_path, enabled=False, clock=lambda: TODAY)

    result = await service.run()

    assert result.contacts_reminded == 0
    assert xero.tenant_lookups == 0
    assert not state_path.exists()


async def test_job_wired_from_settings_emails_through_graph(tmp_path):
    cfg = CommonSettings(
        data_dir=tmp_path,
        xero_client_id="client",
        xero_client_secret="secret",
        entra_tenant_id="entra",
        entra_client_id="mail-client",
        entra_client_secret="mail-secret",
        shared_mailbox="billing@acme.example",
        min_interval_seconds=0,
        tracing_enabled=False,
    )
    cfg.token_path.write_text(
        json.dumps(
            {
                "access_token": "access-0",
                "refresh_token": "refresh-0",
                "expires_in": 1800,
                "obtained_at": datetime.now(timezone.utc).isoformat(),
            }
        )
    )

    def xero_handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/connections":
            return httpx.Response(200, json=[{"tenantId": "tenant-1"}])
        assert request.headers["xero-tenant-id"] == "tenant-1"
        if path.endswith("/Invoices"):
            return httpx.Response(200, json={"Invoices": [outstanding("A")]})
        if path.endswith("/Invoices/A/OnlineInvoice"):
            return httpx.Response(200, json={"OnlineInvoices": [{"OnlineInvoiceUrl": "https://in.xero.com/A"}]})
        if path.endswith("/Invoices/A"):
            return httpx.Response(200, json={"Invoices": [with_contact("A", "C-1")]})
        assert path.endswith("/Organisation")
        return httpx.Response(200, json={"Organisations": [{"Name": "Acme Ltd"}]})

    messages = []

    def mail_handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/oauth2/v2.0/token"):
            return httpx.Response(200, json={"access_token": "graph-token", "expires_in": 3600})
        assert request.url.path.endswith("/sendMail")
        messages.append(json.loads(request.content)["message"])
        return httpx.Response(202)

    service = create_reminder_service(cfg, httpx.MockTransport(xero_handler), httpx.MockTransport(mail_handler))
    result = await service.run()

    assert result.contacts_reminded == 1
    [message] = messages
    assert message["subject"] == "Overdue Invoice Reminder for Customer C-1"
    assert "NZ$120.00" in message["body"]["content"]
    assert list(json.loads(cfg.reminder_state_path.read_text())) == ["A"]
