"""Reusable helpers for whole-file JSON snapshots.

The queue, the idempotency map and the token lease are each persisted as one
JSON document that is read fully and rewritten fully. These helpers are
store-agnostic so every owner shares the same tolerant read and atomic write.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

from invoicemailer.common.config import settings
from invoicemailer.common.logging import logger
from invoicemailer.common.metrics import persistence_failures_total


def read_snapshot(path: Path, default_factory: Callable[[], Any], store: str) -> Any:
    """Load one snapshot; absent, blank or malformed content yields the default."""

    if not path.exists():
        return default_factory()
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("snapshot_read_failed store=%s path=%s error=%s", store, path, exc)
        return default_factory()
    if not raw.strip():
        return default_factory()
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("snapshot_malformed store=%s path=%s error=%s", store, path, exc)
        return default_factory()
    expected = type(default_factory())
    if not isinstance(data, expected):
        logger.warning("snapshot_wrong_shape store=%s path=%s type=%s", store, path, type(data).__name__)
        return default_factory()
    return data


def dump_snapshot(path: Path, data: Any) -> None:
    """Write atomically: readers see the old file or the new one, never a mix."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, default=str)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


def write_snapshot(path: Path, data: Any, store: str) -> bool:
    """Persist one snapshot, logging (not raising) on failure.

    Callers have already applied the change in memory; a False return means
    the change is live but not durable until the next successful write.
    """

    try:
        dump_snapshot(path, data)
    except (OSError, TypeError, ValueError) as exc:
        logger.error("snapshot_write_failed store=%s path=%s error=%s", store, path, exc)
        persistence_failures_total.labels(service=settings.service_name, store=store).inc()
        return False
    return True
