"""Xero accounting API calls used by the processor and the reminder job."""

import asyncio
from typing import Any

import httpx

from invoicemailer.common.config import CommonSettings, settings
from invoicemailer.common.errors import UpstreamError, raise_for_upstream
from invoicemailer.common.logging import logger
from invoicemailer.common.metrics import retries_total
from invoicemailer.common.singleflight import SingleFlight
from invoicemailer.services.xero.auth import CredentialLeaseManager
from invoicemailer.services.xero.models import OrganisationDetails, find_online_invoice_url

# Xero returns at most this many invoices per page when `page` is given.
INVOICE_PAGE_SIZE = 100


class XeroClient:
    """Thin async wrapper over the Xero endpoints the mailer touches."""

    def __init__(
        self,
        credentials: CredentialLeaseManager,
        api_url: str = "https://api.xero.com/api.xro/2.0",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
        pdf_max_attempts: int = 2,
        pdf_retry_delay: float = 1.0,
        shared_mailbox: str = "",
        connections_url: str = "https://api.xero.com/connections",
    ) -> None:
        self.credentials = credentials
        self.api_url = api_url.rstrip("/")
        self.connections_url = connections_url
        self._transport = transport
        self._timeout = timeout
        self.pdf_max_attempts = pdf_max_attempts
        self.pdf_retry_delay = pdf_retry_delay
        self.shared_mailbox = shared_mailbox
        self._pdf_fetches = SingleFlight()

    @classmethod
    def from_settings(
        cls,
        cfg: CommonSettings,
        credentials: CredentialLeaseManager,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "XeroClient":
        return cls(
            credentials,
            api_url=cfg.xero_api_url,
            transport=transport,
            timeout=cfg.http_timeout_seconds,
            pdf_max_attempts=cfg.pdf_max_attempts,
            pdf_retry_delay=cfg.pdf_retry_delay_seconds,
            shared_mailbox=cfg.shared_mailbox,
            connections_url=cfg.xero_connections_url,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=self._timeout)

    async def _headers(self, tenant_id: str | None, accept: str = "application/json") -> dict[str, str]:
        token = await self.credentials.get_valid_access()
        headers = {"Authorization": f"Bearer {token}", "Accept": accept}
        if tenant_id:
            headers["xero-tenant-id"] = tenant_id
        return headers

    async def _check(self, response: httpx.Response, what: str) -> None:
        """Raise for a failed call; a 401 first replaces the rejected token.

        The lease can look unexpired while Xero has already revoked it, so the
        refresh makes the next attempt use a new token instead of the same one.
        """

        if response.status_code == 401:
            logger.warning("%s unauthorized, forcing token refresh", what)
            await self.credentials.force_refresh()
        raise_for_upstream(response, what)

    async def _get_json(
        self, url: str, tenant_id: str | None, what: str, params: dict[str, Any] | None = None
    ) -> Any:
        async with self._client() as client:
            response = await client.get(url, headers=await self._headers(tenant_id), params=params)
        await self._check(response, what)
        return response.json()

    async def get_tenant_id(self) -> str:
        """First organisation connected to the app (the reminder job has no webhook tenant)."""

        connections = await self._get_json(self.connections_url, None, "get connections")
        for connection in connections or []:
            tenant_id = connection.get("tenantId")
            if tenant_id:
                return tenant_id
        raise UpstreamError("get connections returned no tenant", 200, str(connections))

    async def get_invoice(self, tenant_id: str, invoice_id: str) -> dict[str, Any]:
        """Fetch one invoice document; any failure raises."""

        body = await self._get_json(f"{self.api_url}/Invoices/{invoice_id}", tenant_id, f"get invoice {invoice_id}")
        invoices = body.get("Invoices") or []
        if not invoices:
            raise UpstreamError(f"get invoice {invoice_id} returned no invoice", 200, str(body))
        return invoices[0]

    async def get_outstanding_invoices(self, tenant_id: str) -> list[dict[str, Any]]:
        """Every AUTHORISED (approved, unpaid or part paid) invoice, all pages."""

        invoices: list[dict[str, Any]] = []
        page = 1
        while True:
            body = await self._get_json(
                f"{self.api_url}/Invoices",
                tenant_id,
                f"get outstanding invoices page {page}",
                params={"Statuses": "AUTHORISED", "page": page},
            )
            batch = body.get("Invoices") or []
            invoices.extend(batch)
            if len(batch) < INVOICE_PAGE_SIZE:
                return invoices
            page += 1

    async def get_invoice_pdf(self, tenant_id: str, invoice_id: str) -> bytes:
        """Rendered PDF; concurrent requests for one invoice share a fetch."""

        return await self._pdf_fetches.do(invoice_id, lambda: self._fetch_pdf_with_retry(tenant_id, invoice_id))

    async def _fetch_pdf_with_retry(self, tenant_id: str, invoice_id: str) -> bytes:
        url = f"{self.api_url}/Invoices/{invoice_id}"
        token = await self.credentials.get_valid_access()
        response: httpx.Response | None = None
        async with self._client() as client:
            for attempt in range(1, self.pdf_max_attempts + 1):
                response = await client.get(
                    url,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "xero-tenant-id": tenant_id,
                        "Accept": "application/pdf",
                    },
                )
                if response.is_success:
                    return response.content
                if response.status_code == 401:
                    logger.info("pdf fetch unauthorized invoice_id=%s attempt=%s, refreshing token", invoice_id, attempt)
                    token = await self.credentials.force_refresh()
                    continue
                if attempt < self.pdf_max_attempts:
                    retries_total.labels(service=settings.service_name, dependency="xero_pdf").inc()
                    logger.warning(
                        "pdf fetch failed invoice_id=%s attempt=%s status=%s, retrying",
                        invoice_id,
                        attempt,
                        response.status_code,
                    )
                    await asyncio.sleep(self.pdf_retry_delay)
        status = response.status_code if response is not None else None
        body = response.text if response is not None else ""
        raise UpstreamError(
            f"Failed to get invoice PDF (attempt {self.pdf_max_attempts}): status={status} body={body}",
            status,
            body,
        )

    async def get_online_invoice_url(self, tenant_id: str, invoice_id: str) -> str | None:
        body = await self._get_json(
            f"{self.api_url}/Invoices/{invoice_id}/OnlineInvoice",
            tenant_id,
            f"get online invoice url {invoice_id}",
        )
        return find_online_invoice_url(body)

    async def get_organisation(self, tenant_id: str) -> OrganisationDetails:
        body = await self._get_json(f"{self.api_url}/Organisation", tenant_id, "get organisation")
        organisations = body.get("Organisations") or []
        if not organisations:
            raise UpstreamError("get organisation returned no organisation", 200, str(body))
        return OrganisationDetails.from_api(organisations[0], fallback_email=self.shared_mailbox)

    async def mark_sent_to_contact(self, tenant_id: str, invoice_id: str) -> bool:
        """Set `SentToContact=true` upstream; failures are logged, not raised."""

        payload = {"Invoices": [{"InvoiceID": invoice_id, "SentToContact": True}]}
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.api_url}/Invoices/{invoice_id}",
                    headers=await self._headers(tenant_id),
                    json=payload,
                )
            await self._check(response, f"mark invoice {invoice_id} sent")
        except (UpstreamError, httpx.HTTPError) as exc:
            logger.warning("mark sent_to_contact failed invoice_id=%s error=%s", invoice_id, exc)
            return False
        logger.info("sent_to_contact set invoice_id=%s", invoice_id)
        return True
