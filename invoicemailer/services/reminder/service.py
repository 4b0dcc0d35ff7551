"""Overdue invoice reminders.

A one-shot job, run on a schedule next to the webhook process. Every run
looks at all outstanding invoices, groups the overdue ones by contact and
sends each contact one summary email. An invoice is included when it is at
least `remind_after_days` past due and was not reminded within the last
`remind_repeat_every_days`.

The last-reminded date per invoice lives in its own JSON snapshot, rebuilt
on every run so invoices that were paid or voided fall out of it.
"""

import asyncio
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable

from invoicemailer.common.logging import logger
from invoicemailer.common.snapshot import read_snapshot, write_snapshot
from invoicemailer.services.mailer.models import ReminderEmail, ReminderLine
from invoicemailer.services.xero.models import extract_first_name, parse_xero_date, split_recipients


def _today() -> date:
    return datetime.now(timezone.utc).date()


def amount_due(invoice: dict[str, Any]) -> Decimal:
    try:
        return Decimal(str(invoice.get("AmountDue") or 0))
    except InvalidOperation:
        return Decimal("0")


@dataclass(frozen=True)
class ReminderRunResult:
    contacts_reminded: int = 0
    invoices_reminded: int = 0
    contacts_skipped: int = 0
    failures: int = 0


class ReminderState:
    """Invoice id -> date of its last reminder."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> dict[str, date]:
        state: dict[str, date] = {}
        for invoice_id, value in read_snapshot(self.path, dict, "reminders").items():
            try:
                state[invoice_id] = date.fromisoformat(str(value)[:10])
            except ValueError:
                logger.warning("unreadable reminder date invoice_id=%s value=%s", invoice_id, value)
        return state

    def save(self, state: dict[str, date]) -> bool:
        return write_snapshot(self.path, {key: value.isoformat() for key, value in sorted(state.items())}, "reminders")


class InvoiceReminderService:
    """Sends one overdue summary per contact and remembers when it did."""

    def __init__(
        self,
        xero,
        mailer,
        state_path: Path,
        remind_after_days: int = 7,
        remind_repeat_every_days: int = 7,
        tenant_id: str = "",
        enabled: bool = True,
        min_interval: float = 1.1,
        clock: Callable[[], date] = _today,
    ) -> None:
        self.xero = xero
        self.mailer = mailer
        self.state = ReminderState(state_path)
        self.remind_after_days = remind_after_days
        self.remind_repeat_every_days = remind_repeat_every_days
        self.tenant_id = tenant_id
        self.enabled = enabled
        self.min_interval = min_interval
        self._clock = clock

    async def run(self) -> ReminderRunResult:
        """One pass over the outstanding invoices; Xero listing failures raise."""

        if not self.enabled:
            logger.info("invoice reminders disabled")
            return ReminderRunResult()

        today = self._clock()
        previous = self.state.load()
        tenant_id = self.tenant_id or await self.xero.get_tenant_id()
        invoices = await self.xero.get_outstanding_invoices(tenant_id)
        groups: dict[str, list[dict[str, Any]]] = {}
        for invoice in invoices:
            if amount_due(invoice) > 0:
                contact_id = (invoice.get("Contact") or {}).get("ContactID") or ""
                groups.setdefault(contact_id, []).append(invoice)
        logger.info(
            "reminder run started tenant_id=%s outstanding=%s contacts=%s", tenant_id, len(invoices), len(groups)
        )

        next_state: dict[str, date] = {}
        organisation = None
        organisation_loaded = False
        reminded = invoiced = skipped = failures = 0
        for contact_id, group in groups.items():
            due = self._select_due(group, previous, today, next_state)
            if not due:
                continue
            if not organisation_loaded:
                organisation = await self._optional("organisation", self.xero.get_organisation(tenant_id))
                organisation_loaded = True
            try:
                sent = await self._remind_contact(tenant_id, contact_id, group, due, organisation)
            except Exception as exc:
                failures += 1
                logger.error("reminder failed contact_id=%s error=%s", contact_id, exc)
                self._carry_over(due, previous, next_state)
            else:
                if sent:
                    reminded += 1
                    invoiced += len(due)
                    for invoice, _ in due:
                        next_state[invoice["InvoiceID"]] = today
                else:
                    skipped += 1
                    self._carry_over(due, previous, next_state)
            await asyncio.sleep(self.min_interval)

        self.state.save(next_state)
        result = ReminderRunResult(reminded, invoiced, skipped, failures)
        logger.info(
            "reminder run finished contacts_reminded=%s invoices_reminded=%s skipped=%s failures=%s",
            result.contacts_reminded,
            result.invoices_reminded,
            result.contacts_skipped,
            result.failures,
        )
        return result

    def _select_due(
        self,
        group: list[dict[str, Any]],
        previous: dict[str, date],
        today: date,
        next_state: dict[str, date],
    ) -> list[tuple[dict[str, Any], date]]:
        """Overdue invoices outside the repeat window, with their due dates.

        Overdue invoices still inside the window keep their last date in
        `next_state`.
        """

        due: list[tuple[dict[str, Any], date]] = []
        for invoice in group:
            invoice_id = invoice.get("InvoiceID")
            due_at = parse_xero_date(invoice.get("DueDate"))
            if not invoice_id or due_at is None:
                continue
            days_overdue = (today - due_at.date()).days
            if days_overdue < self.remind_after_days:
                continue
            last = previous.get(invoice_id)
            if last is not None and (today - last).days < self.remind_repeat_every_days:
                logger.info("reminder not due invoice_id=%s overdue_days=%s last=%s", invoice_id, days_overdue, last)
                next_state[invoice_id] = last
                continue
            due.append((invoice, due_at.date()))
        return due

    async def _remind_contact(
        self,
        tenant_id: str,
        contact_id: str,
        group: list[dict[str, Any]],
        due: list[tuple[dict[str, Any], date]],
        organisation,
    ) -> bool:
        # The listing's contact block is partial; recipients come from the full invoice.
        details = await self.xero.get_invoice(tenant_id, due[0][0]["InvoiceID"])
        contact = details.get("Contact") or {}
        contact_name = contact.get("Name") or contact_id
        to, cc = split_recipients(details)
        if not to:
            logger.warning("no contact email for reminder contact=%s contact_id=%s", contact_name, contact_id)
            return False

        lines = []
        for invoice, due_date in due:
            online_invoice_url = await self._optional(
                "online invoice url", self.xero.get_online_invoice_url(tenant_id, invoice["InvoiceID"])
            )
            lines.append(
                ReminderLine(
                    invoice_id=invoice["InvoiceID"],
                    invoice_number=invoice.get("InvoiceNumber") or invoice["InvoiceID"],
                    reference=invoice.get("Reference") or "",
                    due_date=due_date,
                    amount_due=amount_due(invoice),
                    online_invoice_url=online_invoice_url,
                )
            )
        email = ReminderEmail(
            to=to,
            cc=cc,
            contact_name=contact_name,
            first_name=extract_first_name(details),
            currency_code=group[0].get("CurrencyCode") or "GBP",
            lines=lines,
            organisation=organisation,
        )
        await self.mailer.send_reminder_email(email)
        return True

    @staticmethod
    def _carry_over(
        due: list[tuple[dict[str, Any], date]], previous: dict[str, date], next_state: dict[str, date]
    ) -> None:
        for invoice, _ in due:
            last = previous.get(invoice["InvoiceID"])
            if last is not None:
                next_state[invoice["InvoiceID"]] = last

    async def _optional(self, what: str, call):
        try:
            return await call
        except Exception as exc:
            logger.error("%s lookup failed, reminding without it: %s", what, exc)
            return None
