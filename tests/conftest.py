"""
Pytest configuration and fixtures.

Environment is set before any package import so module-level settings pick up
a throwaway data directory and tracing stays off.
"""
import os
import tempfile

os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="invoicemailer-test-"))

import pytest

from invoicemailer.services.processor.idempotency import IdempotencyTracker
from invoicemailer.services.processor.queue import DurableQueue
from invoicemailer.services.processor.service import SequentialProcessor
from tests.factories import FakeMailer, FakeXero


@pytest.fixture
def queue(tmp_path) -> DurableQueue:
    return DurableQueue(tmp_path / "queue.json")


@pytest.fixture
def tracker(tmp_path) -> IdempotencyTracker:
    return IdempotencyTracker(tmp_path / "state.json")


@pytest.fixture
def xero() -> FakeXero:
    return FakeXero()


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def processor(queue, tracker, xero, mailer) -> SequentialProcessor:
    return SequentialProcessor(
        queue,
        tracker,
        xero,
        mailer,
        min_interval=1.1,
        idle_interval=2.0,
        rate_limit_cooldown=10.0,
    )
