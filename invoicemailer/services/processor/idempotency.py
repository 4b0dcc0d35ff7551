"""Local memory of which invoices already had their email sent.

The tracker mirrors the last observed `SentToContact` value per invoice. Only
`True` is stored: `False` is the same as "not tracked". The only transition
that may fire an email is untracked -> True.
"""

import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from invoicemailer.common.logging import logger
from invoicemailer.common.snapshot import read_snapshot, write_snapshot


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class IdempotencyTracker:
    """Invoice id -> (sent_flag, last_updated), persisted on every change."""

    def __init__(
        self,
        path: Path,
        retention: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.path = Path(path)
        self.retention = retention
        self._clock = clock
        self._lock = threading.Lock()
        self._state: dict[str, tuple[bool, datetime]] = {}
        self._load_and_prune()

    def _load_and_prune(self) -> None:
        """Load the snapshot, drop expired records, and write the result back."""

        with self._lock:
            now = self._clock()
            raw = read_snapshot(self.path, dict, "idempotency")
            dropped = 0
            for invoice_id, entry in raw.items():
                # A false record means "untracked"; it is never kept.
                if not isinstance(entry, dict) or not entry.get("sentToContact"):
                    dropped += 1
                    continue
                last_updated = _parse_timestamp(entry.get("lastUpdated"))
                if last_updated is None or now - last_updated >= self.retention:
                    dropped += 1
                    continue
                self._state[invoice_id] = (True, last_updated)
            if dropped:
                logger.info("idempotency records pruned count=%s kept=%s", dropped, len(self._state))
            self._persist()

    def get_last_sent(self, invoice_id: str) -> bool:
        with self._lock:
            entry = self._state.get(invoice_id)
            return entry is not None and entry[0]

    def record_state(self, invoice_id: str, sent_flag: bool) -> None:
        """Remember the latest flag; False forgets the invoice entirely."""

        with self._lock:
            if sent_flag:
                self._state[invoice_id] = (True, self._clock())
            else:
                self._state.pop(invoice_id, None)
            self._persist()

    def snapshot(self) -> dict[str, tuple[bool, datetime]]:
        with self._lock:
            return dict(self._state)

    def _persist(self) -> None:
        data = {
            invoice_id: {"sentToContact": sent, "lastUpdated": updated.isoformat()}
            for invoice_id, (sent, updated) in self._state.items()
        }
        write_snapshot(self.path, data, "idempotency")
