"""
Reconciler: one cycle over every configured watch.

Per watch, strictly in configuration order and under one shared deadline:
  extract -> load existing row keys -> diff -> notify (if new) -> persist (if notified)

Failure policy:
  - extraction failure          -> this watch ABORTED_CYCLE, remaining watches NOT_RUN
  - page read failure           -> RECOVERED, diff against the partial set
  - notify failure / non-200    -> SKIPPED_PERSIST, next watch proceeds
  - create-table / persist fail -> FatalCycleError (process must stop)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass

from . import logging_bridge
from .config import DEFAULT_WATCH_TIMEOUT_SEC, WatchConfig
from .db import RecordStore, StorageError
from .extractor import ExtractionError, PageExtractor
from .models import CycleReport, SeenRecord, Severity, WatchOutcome, WatchResult
from .notifier import Notifier, NotifyError
from .utils import Deadline

LOG = logging.getLogger(__name__)

BODY_DELIMITER = ", "


class FatalCycleError(RuntimeError):
    """A failure the process must not continue past (e.g. notified but not recorded)."""

    severity = Severity.FATAL

    def __init__(self, message: str, *, table: str) -> None:
        super().__init__(message)
        self.table = table


@dataclass(frozen=True)
class CycleContext:
    """
    Everything one cycle needs, built once at startup and shared read-only.
    The collaborators own their own concurrency contracts.
    """

    watches: tuple[WatchConfig, ...]
    extractor: PageExtractor
    store: RecordStore
    notifier: Notifier
    watch_timeout_sec: float = DEFAULT_WATCH_TIMEOUT_SEC
    dry_run: bool = False
    page_size: int = 1000
    clock: Callable[[], float] = time.monotonic


# =============================================================================
# DIFF
# =============================================================================
def compute_new_items(extracted: Iterable[str], existing: set[str] | frozenset[str]) -> list[str]:
    """
    Identifiers in `extracted` that are not in `existing`, by exact string equality.
    Order follows first appearance; repeats within `extracted` are collapsed.
    """
    out: list[str] = []
    emitted: set[str] = set()
    for item in extracted:
        if item in existing or item in emitted:
            continue
        emitted.add(item)
        out.append(item)
    return out


# =============================================================================
# MAIN ORCHESTRATOR
# =============================================================================
def run_cycle(context: CycleContext) -> CycleReport:
    """
    Reconcile every watch once, sequentially.

    Returns a CycleReport for logging/tests. Raises FatalCycleError for
    failures the process must not survive.
    """
    start_ns = time.perf_counter_ns()
    report = CycleReport()
    LOG.info("Enter cycle (%d watch(es)).", len(context.watches))

    for i, watch in enumerate(context.watches):
        LOG.info("Reconciling watch %d (table=%s)...", watch.index, watch.table_name)
        result = reconcile_watch(watch, context)
        report.results.append(result)

        if result.outcome is WatchOutcome.ABORTED_CYCLE:
            for rest in context.watches[i + 1 :]:
                report.results.append(
                    WatchResult(table_name=rest.table_name, target_url=rest.target_url, outcome=WatchOutcome.NOT_RUN)
                )
            LOG.warning("Cycle aborted at watch %d; %d watch(es) not run.", watch.index, len(context.watches) - i - 1)
            break

    total_us = int((time.perf_counter_ns() - start_ns) // 1000)
    logging_bridge.activity({
        "component": "pagewatch.engine",
        "op": "summary",
        "aborted": report.aborted,
        "outcomes": {r.table_name: r.outcome.value for r in report.results},
        "notified": report.notified_count,
        "total_us": total_us,
    })
    LOG.info("Exit cycle.")
    return report


def reconcile_watch(watch: WatchConfig, context: CycleContext) -> WatchResult:
    """Run the full procedure for one watch under a single deadline."""
    deadline = Deadline(context.watch_timeout_sec, clock=context.clock)
    result = WatchResult(table_name=watch.table_name, target_url=watch.target_url, outcome=WatchOutcome.NO_NEW_ITEMS)

    # -------------------------------------------------------------------------
    # 1. EXTRACT (failure halts the whole cycle)
    # -------------------------------------------------------------------------
    try:
        extracted = _extract_with_deadline(context.extractor, watch, deadline)
    except ExtractionError as e:
        LOG.error(
            "Could not query TargetUrl %s using StringArrayJs %s: %s",
            watch.target_url,
            watch.extraction_script,
            e,
        )
        logging_bridge.error({
            "component": "pagewatch.engine",
            "op": "extract",
            "table": watch.table_name,
            "url": watch.target_url,
            "script": watch.extraction_script,
            "error": str(e),
        })
        result.outcome = WatchOutcome.ABORTED_CYCLE
        result.severity = Severity.ABORT_CYCLE
        result.error = str(e)
        return result
    result.extracted_count = len(extracted)

    # -------------------------------------------------------------------------
    # 2. LOAD EXISTING STATE
    # -------------------------------------------------------------------------
    try:
        context.store.ensure_table(watch.table_name, timeout_sec=deadline.remaining())
    except StorageError as e:
        logging_bridge.error({
            "component": "pagewatch.engine",
            "op": "ensure_table",
            "table": watch.table_name,
            "error": str(e),
        })
        raise FatalCycleError(f"Could not create table {watch.table_name}: {e}", table=watch.table_name) from e

    existing = _load_existing(context.store, watch, deadline, context.page_size, result)
    result.existing_count = len(existing)

    # -------------------------------------------------------------------------
    # 3. DIFF
    # -------------------------------------------------------------------------
    new_items = compute_new_items(extracted, existing)
    result.new_items = new_items
    if not new_items:
        LOG.info("Nothing to notify for table %s.", watch.table_name)
        result.outcome = WatchOutcome.NO_NEW_ITEMS
        return result

    if context.dry_run:
        LOG.info("Dry run: %d new item(s) for table %s: %s", len(new_items), watch.table_name, new_items)
        result.outcome = WatchOutcome.DRY_RUN
        return result

    # -------------------------------------------------------------------------
    # 4. NOTIFY (failure skips persistence for this watch only)
    # -------------------------------------------------------------------------
    LOG.info("Notifying for %d items...", len(new_items))
    try:
        if deadline.expired():
            raise NotifyError(f"Watch deadline of {context.watch_timeout_sec}s elapsed before notification.")
        context.notifier.notify(
            watch.notification_title,
            BODY_DELIMITER.join(new_items),
            timeout_sec=deadline.remaining(),
        )
    except NotifyError as e:
        LOG.warning("Notification failed for table %s: %s", watch.table_name, e)
        logging_bridge.error({
            "component": "pagewatch.engine",
            "op": "notify",
            "table": watch.table_name,
            "status_code": e.status_code,
            "new_items": new_items,
            "error": str(e),
        })
        result.outcome = WatchOutcome.SKIPPED_PERSIST
        result.severity = Severity.SKIP_WATCH
        result.error = str(e)
        return result

    # -------------------------------------------------------------------------
    # 5. PERSIST (notified but not recorded is unrecoverable)
    # -------------------------------------------------------------------------
    LOG.info("Adding %d items...", len(new_items))
    for item in new_items:
        try:
            context.store.add(
                watch.table_name, SeenRecord.for_identifier(item), timeout_sec=deadline.remaining()
            )
        except StorageError as e:
            logging_bridge.error({
                "component": "pagewatch.engine",
                "op": "persist",
                "table": watch.table_name,
                "row_key": item,
                "error": str(e),
            })
            raise FatalCycleError(
                f"Notified but could not record {item!r} in table {watch.table_name}: {e}",
                table=watch.table_name,
            ) from e

    result.outcome = WatchOutcome.NOTIFIED
    logging_bridge.activity({
        "component": "pagewatch.engine",
        "op": "notified",
        "table": watch.table_name,
        "new_items": new_items,
        "degraded": result.degraded,
    })
    return result


# =============================================================================
# HELPERS
# =============================================================================
def _extract_with_deadline(extractor: PageExtractor, watch: WatchConfig, deadline: Deadline) -> list[str]:
    """
    Run the extractor on a worker thread and stop waiting once the deadline passes.
    A timed-out worker is abandoned; it ends when its own timeouts fire.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="extract")
    try:
        fut = pool.submit(
            extractor.extract,
            watch.target_url,
            watch.wait_seconds,
            watch.extraction_script,
            timeout_sec=deadline.remaining(),
        )
        return fut.result(timeout=deadline.remaining())
    except FutureTimeout as e:
        raise ExtractionError(f"Timed out after {deadline.seconds:g}s") from e
    except ExtractionError:
        raise
    except Exception as e:
        raise ExtractionError(repr(e)) from e
    finally:
        pool.shutdown(wait=False, cancel_futures=True)


def _load_existing(
    store: RecordStore,
    watch: WatchConfig,
    deadline: Deadline,
    page_size: int,
    result: WatchResult,
) -> set[str]:
    """
    Materialize every row key of the watch's table. A failing page (or the deadline)
    stops the scan; what was read so far is returned and the result marked degraded.
    """
    existing: set[str] = set()
    pages = None
    try:
        pages = iter(store.iter_row_keys(watch.table_name, page_size=page_size, timeout_sec=deadline.remaining()))
        while True:
            if deadline.expired():
                raise StorageError(f"Watch deadline elapsed after reading {len(existing)} row(s).")
            try:
                page = next(pages)
            except StopIteration:
                break
            existing.update(page)
    except StorageError as e:
        LOG.warning("Could not query entities from table %s: %s", watch.table_name, e)
        logging_bridge.error({
            "component": "pagewatch.engine",
            "op": "load_existing",
            "table": watch.table_name,
            "rows_read": len(existing),
            "error": str(e),
        })
        result.degraded = True
        result.severity = Severity.RECOVERED
        result.error = str(e)
    finally:
        close = getattr(pages, "close", None)
        if callable(close):
            close()
    return existing
