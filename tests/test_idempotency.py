import json
from datetime import datetime, timedelta, timezone

from invoicemailer.services.processor.idempotency import IdempotencyTracker

NOW = datetime(2025, 3, 10, 12, 0, 0, tzinfo=timezone.utc)


def test_untracked_invoice_reads_false(tracker):
    assert tracker.get_last_sent("INV-1") is False


def test_true_is_recorded_and_false_forgets(tracker):
    tracker.record_state("INV-1", True)
    assert tracker.get_last_sent("INV-1") is True

    tracker.record_state("INV-1", False)
    assert tracker.get_last_sent("INV-1") is False
    assert "INV-1" not in tracker.snapshot()


def test_every_change_is_persisted(tmp_path):
    path = tmp_path / "state.json"
    tracker = IdempotencyTracker(path, clock=lambda: NOW)

    tracker.record_state("INV-1", True)
    stored = json.loads(path.read_text())
    assert stored == {"INV-1": {"sentToContact": True, "lastUpdated": NOW.isoformat()}}

    tracker.record_state("INV-1", False)
    assert json.loads(path.read_text()) == {}


def test_state_survives_restart(tmp_path):
    path = tmp_path / "state.json"
    IdempotencyTracker(path).record_state("INV-1", True)

    assert IdempotencyTracker(path).get_last_sent("INV-1") is True


def test_startup_prunes_records_past_retention(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(
        json.dumps(
            {
                "fresh": {"sentToContact": True, "lastUpdated": (NOW - timedelta(days=1)).isoformat()},
                "stale-true": {"sentToContact": True, "lastUpdated": (NOW - timedelta(days=8)).isoformat()},
                "stale-false": {"sentToContact": False, "lastUpdated": (NOW - timedelta(days=30)).isoformat()},
                "no-date": {"sentToContact": True},
            }
        )
    )

    tracker = IdempotencyTracker(path, retention=timedelta(days=7), clock=lambda: NOW)

    assert set(tracker.snapshot()) == {"fresh"}
    assert set(json.loads(path.read_text())) == {"fresh"}


def test_malformed_state_file_starts_empty(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{oops")

    tracker = IdempotencyTracker(path)

    assert tracker.snapshot() == {}
    assert json.loads(path.read_text()) == {}


def test_false_records_on_disk_are_treated_as_untracked(tmp_path):
    path = tmp_path / "state.json"
    recent = (NOW - timedelta(hours=1)).isoformat()
    path.write_text(
        json.dumps(
            {
                "sent": {"sentToContact": True, "lastUpdated": recent},
                "reset": {"sentToContact": False, "lastUpdated": recent},
            }
        )
    )

    tracker = IdempotencyTracker(path, clock=lambda: NOW)

    assert tracker.snapshot() == {"sent": (True, NOW - timedelta(hours=1))}
    assert set(json.loads(path.read_text())) == {"sent"}
