# pagewatch/service/runner.py
from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any

from pagewatch import engine
from pagewatch.config import Settings
from pagewatch.db import RecordStore, SqliteRecordStore
from pagewatch.extractor import PageExtractor, PlaywrightExtractor
from pagewatch.models import CycleReport
from pagewatch.notifier import Notifier, PushbulletNotifier
from pagewatch.utils import now_iso

from .logging_utils import write_activity_log

log = logging.getLogger(__name__)

# One cycle at a time per process: overlapping triggers wait their turn.
_CYCLE_LOCK = threading.Lock()


# -----------------------------------------------------------------------------
# Context
# -----------------------------------------------------------------------------
def build_context(
    settings: Settings,
    *,
    dry_run: bool = False,
    extractor: PageExtractor | None = None,
    store: RecordStore | None = None,
    notifier: Notifier | None = None,
) -> engine.CycleContext:
    """
    Construct the immutable CycleContext from Settings.

    Collaborators may be injected (tests, alternative backends); otherwise the
    production Playwright / SQLite / Pushbullet implementations are used.
    Raises StorageError if the store cannot be opened.
    """
    return engine.CycleContext(
        watches=settings.watches,
        extractor=extractor or PlaywrightExtractor(settings.chromium_path),
        store=store or SqliteRecordStore(settings.storage_path),
        notifier=notifier or PushbulletNotifier(settings.pushbullet_token, settings.pushbullet_base_url),
        watch_timeout_sec=settings.watch_timeout_sec,
        dry_run=dry_run,
    )


def close_context(context: engine.CycleContext) -> None:
    """Release collaborator resources (the notifier's HTTP session) at shutdown."""
    context.notifier.close()


# -----------------------------------------------------------------------------
# Public API
# -----------------------------------------------------------------------------
def run_cycle_once(
    context: engine.CycleContext,
    *,
    trigger_type: str = "adhoc",
    job_context: dict[str, object] | None = None,  # e.g., {"job_id": "...", "now_iso": "..."}
) -> tuple[CycleReport, str]:
    """
    Execute one reconciliation cycle, serialized against any other cycle in this process.

    Returns:
        (report, run_id)
    Raises:
        FatalCycleError (and anything unexpected) after the activity record is written.
    """
    run_id = uuid.uuid4().hex
    started_at = now_iso()

    context_meta: dict[str, Any] = {
        "run_id": run_id,
        "trigger_type": trigger_type,
        "started_at": started_at,
    }
    if job_context:
        context_meta.update({k: v for k, v in job_context.items() if k not in context_meta})

    report: CycleReport | None = None
    exc: Exception | None = None

    t_wait = time.monotonic()
    with _CYCLE_LOCK:
        waited_ms = int((time.monotonic() - t_wait) * 1000)
        if waited_ms:
            log.info("Cycle %s waited %d ms for a running cycle to finish.", run_id, waited_ms)
        t0 = time.monotonic()
        try:
            report = engine.run_cycle(context)
        except Exception as e:
            exc = e
        finally:
            duration_ms = int((time.monotonic() - t0) * 1000)

    record: dict[str, Any] = {
        "ts": now_iso(),
        "event": "cycle",
        "run_id": run_id,
        "trigger_type": trigger_type,
        "ok": exc is None,
        "message": "OK" if exc is None else str(exc),
        "exception_type": type(exc).__name__ if exc else None,
        "duration_ms": duration_ms,
        "waited_ms": waited_ms,
        "dry_run": context.dry_run,
        "context": context_meta,
        "report": report.as_dict() if report else None,
    }
    try:
        write_activity_log(record)
    except OSError as e:
        log.error("Failed to write activity JSONL: %s", e)

    if exc:
        raise exc

    assert report is not None
    return report, run_id
