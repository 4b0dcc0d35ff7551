"""Outbound emails as handed to the mail transport."""

from datetime import date
from decimal import Decimal

from pydantic import BaseModel, Field

from invoicemailer.services.xero.models import OrganisationDetails

CURRENCY_SYMBOLS = {
    "GBP": "£",
    "USD": "$",
    "EUR": "€",
    "AUD": "A$",
    "NZD": "NZ$",
    "CAD": "C$",
    "JPY": "¥",
    "CHF": "Fr.",
    "ZAR": "R",
    "SGD": "S$",
    "HKD": "HK$",
    "CNY": "¥",
    "INR": "₹",
}


class InvoiceEmail(BaseModel):
    """Everything the transport needs to deliver one invoice notification."""

    to: list[str]
    cc: list[str] = Field(default_factory=list)
    subject: str
    invoice_number: str
    reference: str = ""
    first_name: str = ""
    pdf_bytes: bytes | None = None
    pdf_file_name: str = ""
    online_invoice_url: str | None = None
    organisation: OrganisationDetails | None = None


class ReminderLine(BaseModel):
    """One overdue invoice row in a reminder."""

    invoice_id: str
    invoice_number: str
    reference: str = ""
    due_date: date
    amount_due: Decimal
    online_invoice_url: str | None = None


class ReminderEmail(BaseModel):
    """One overdue summary for one contact."""

    to: list[str]
    cc: list[str] = Field(default_factory=list)
    contact_name: str
    first_name: str = ""
    currency_code: str = "GBP"
    lines: list[ReminderLine]
    organisation: OrganisationDetails | None = None

    @property
    def subject(self) -> str:
        return f"Overdue Invoice Reminder for {self.contact_name}"

    @property
    def total_due(self) -> Decimal:
        return sum((line.amount_due for line in self.lines), Decimal("0"))


def build_subject(invoice_number: str, reference: str) -> str:
    if reference:
        return f"{reference} - ({invoice_number})"
    return f"Invoice {invoice_number}"


def format_amount(amount: Decimal, currency_code: str) -> str:
    """`£1,234.50`; unknown currencies are prefixed with their code."""

    code = (currency_code or "").upper()
    return f"{CURRENCY_SYMBOLS.get(code, code)}{amount:,.2f}"
