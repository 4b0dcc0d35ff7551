"""Helpers that read the pieces of Xero API documents the mailer needs."""

import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel

# Xero JSON dates look like /Date(1740787200000+0000)/, sometimes with escaped slashes.
_MS_DATE = re.compile(r"\\?/Date\((-?\d+)")


class OrganisationDetails(BaseModel):
    """Organisation fields shown in the email footer."""

    name: str | None = None
    legal_name: str | None = None
    address_line1: str | None = None
    address_line2: str | None = None
    city: str | None = None
    region: str | None = None
    postal_code: str | None = None
    country: str | None = None
    phone_number: str | None = None
    email: str | None = None
    website: str | None = None

    @property
    def display_name(self) -> str | None:
        return self.name or self.legal_name

    @property
    def address(self) -> str:
        parts = [
            self.address_line1,
            self.address_line2,
            self.city,
            self.region,
            self.postal_code,
            self.country,
        ]
        return ", ".join(part for part in parts if part and part.strip())

    @classmethod
    def from_api(cls, org: dict[str, Any], fallback_email: str | None = None) -> "OrganisationDetails":
        """Build from one entry of the `/Organisation` response.

        POBOX addresses win over STREET, OFFICE phones win over the first phone
        listed, and the website comes from `ExternalLinks`. The API has no
        email field, so the shared mailbox stands in.
        """

        address: dict[str, Any] = {}
        for candidate in org.get("Addresses") or []:
            kind = candidate.get("AddressType")
            if kind == "POBOX":
                address = candidate
                break
            if not address and kind == "STREET":
                address = candidate

        phone_number = None
        for phone in org.get("Phones") or []:
            if phone.get("PhoneType") == "OFFICE":
                phone_number = phone.get("PhoneNumber")
                break
            if phone_number is None:
                phone_number = phone.get("PhoneNumber")

        website = None
        for link in org.get("ExternalLinks") or []:
            if link.get("LinkType") == "Website":
                website = link.get("Url")
                break

        return cls(
            name=org.get("Name"),
            legal_name=org.get("LegalName"),
            address_line1=address.get("AddressLine1"),
            address_line2=address.get("AddressLine2"),
            city=address.get("City"),
            region=address.get("Region"),
            postal_code=address.get("PostalCode"),
            country=address.get("Country"),
            phone_number=phone_number,
            email=fallback_email or None,
            website=website,
        )


def extract_invoice_id(resource_uri: str | None) -> str | None:
    """Last path segment of a resource URI, or None when there is none."""

    if not resource_uri:
        return None
    segment = resource_uri.rstrip("/").rsplit("/", 1)[-1].strip()
    if not segment or segment.lower().startswith("http"):
        return None
    return segment


def extract_contact_emails(invoice: dict[str, Any]) -> list[str]:
    """Deliverable addresses: the contact's own plus persons flagged for email."""

    emails: list[str] = []
    contact = invoice.get("Contact") or {}
    primary = contact.get("EmailAddress")
    if isinstance(primary, str) and primary.strip():
        emails.append(primary.strip())
    for person in contact.get("ContactPersons") or []:
        if not person.get("IncludeInEmails"):
            continue
        email = person.get("EmailAddress")
        if isinstance(email, str) and email.strip():
            emails.append(email.strip())
    return list(dict.fromkeys(emails))


def extract_first_name(invoice: dict[str, Any]) -> str:
    contact = invoice.get("Contact") or {}
    first_name = contact.get("FirstName") or ""
    if first_name.strip():
        return first_name
    for person in contact.get("ContactPersons") or []:
        if person.get("IncludeInEmails") and (person.get("FirstName") or "").strip():
            return person["FirstName"]
    return ""


def split_recipients(invoice: dict[str, Any]) -> tuple[list[str], list[str]]:
    """Primary address in `to`, every other deliverable address in `cc`."""

    emails = extract_contact_emails(invoice)
    if not emails:
        return [], []
    primary = ((invoice.get("Contact") or {}).get("EmailAddress") or "").strip() or emails[0]
    return [primary], [email for email in emails if email != primary]


def find_online_invoice_url(element: Any) -> str | None:
    """Depth-first search for the first string `OnlineInvoiceUrl` value."""

    if isinstance(element, dict):
        for key, value in element.items():
            if key == "OnlineInvoiceUrl" and isinstance(value, str):
                return value
            found = find_online_invoice_url(value)
            if found is not None:
                return found
    elif isinstance(element, list):
        for item in element:
            found = find_online_invoice_url(item)
            if found is not None:
                return found
    return None


def parse_xero_date(value: Any) -> datetime | None:
    """UTC datetime from a Xero `/Date(ms)/` string or an ISO date; None if neither."""

    if not isinstance(value, str) or not value.strip():
        return None
    match = _MS_DATE.match(value.strip())
    if match:
        return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
