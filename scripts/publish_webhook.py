"""Post a signed Xero-style webhook to a running receiver.

Useful for manual duplicate-delivery and end-to-end testing without Xero.
"""

import argparse
import asyncio
import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from pathlib import Path

import httpx


def sample_payload(invoice_id: str, tenant_id: str, event_type: str, event_date: str) -> dict:
    """One INVOICE event wrapped the way Xero delivers it."""

    return {
        "events": [
            {
                "resourceUrl": f"https://api.xero.com/api.xro/2.0/Invoices/{invoice_id}",
                "resourceId": invoice_id,
                "eventDateUtc": event_date,
                "eventType": event_type,
                "eventCategory": "INVOICE",
                "tenantId": tenant_id,
                "tenantType": "ORGANISATION",
            }
        ],
        "firstEventSequence": 1,
        "lastEventSequence": 1,
        "entropy": "MANUALTEST",
    }


async def publish(url: str, webhook_key: str, payload: dict, repeat: int) -> None:
    """Sign the body once and post it `repeat` times."""

    body = json.dumps(payload).encode("utf-8")
    signature = base64.b64encode(hmac.new(webhook_key.encode("utf-8"), body, hashlib.sha256).digest()).decode()
    async with httpx.AsyncClient(timeout=10.0) as client:
        for attempt in range(1, repeat + 1):
            resp = await client.post(
                url,
                content=body,
                headers={"x-xero-signature": signature, "content-type": "application/json"},
            )
            print(f"attempt={attempt} status={resp.status_code} body={resp.text}")


def main() -> None:
    """Parse CLI args and post one webhook payload."""

    parser = argparse.ArgumentParser(description="Post a signed webhook to the receiver.")
    parser.add_argument("--url", default="http://localhost:8000/webhooks/xero")
    parser.add_argument("--webhook-key", required=True)
    parser.add_argument("--invoice-id", default=None)
    parser.add_argument("--tenant-id", default="00000000-0000-0000-0000-000000000000")
    parser.add_argument("--event-type", default="UPDATE")
    parser.add_argument("--event-date", default=None, help="ISO timestamp, defaults to now (UTC)")
    parser.add_argument("--file", dest="json_file", default=None, help="Send this JSON payload instead")
    parser.add_argument("--repeat", type=int, default=1, help="Deliver the same body N times")
    args = parser.parse_args()

    if bool(args.invoice_id) == bool(args.json_file):
        raise SystemExit("Provide exactly one of --invoice-id or --file")

    if args.json_file:
        payload = json.loads(Path(args.json_file).read_text())
    else:
        event_date = args.event_date or datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3]
        payload = sample_payload(args.invoice_id, args.tenant_id, args.event_type, event_date)

    asyncio.run(publish(args.url, args.webhook_key, payload, args.repeat))


if __name__ == "__main__":
    main()
