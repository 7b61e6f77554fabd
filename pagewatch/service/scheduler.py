# pagewatch/service/scheduler.py
"""
In-process timer for hosts without an external trigger.

One APScheduler job fires run_cycle_once() on APP_TIMERCRON (crontab, 5 fields)
or, when that is unset, every APP_TIMERINTERVALSECONDS seconds. A fire that lands
while a cycle is still running is coalesced into the next one.
"""

from __future__ import annotations

import logging
import os
import threading
import time as _time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import pytz
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from pagewatch.config import Settings
from pagewatch.engine import CycleContext, FatalCycleError

from . import runner
from .logging_utils import write_activity_log

LOG = logging.getLogger(__name__)

JOB_ID = "pagewatch-cycle"


class SchedulerController:
    """Handle returned by start(): stop the timer, wait for it, peek at the next fire."""

    def __init__(self, scheduler: BackgroundScheduler) -> None:
        self._scheduler = scheduler
        self._done = threading.Event()

    def stop(self) -> None:
        # wait=False: a cycle already in flight finishes on its own thread
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            LOG.info("Timer stopped.")
        self._done.set()

    def join(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout=timeout)

    def next_run_time(self) -> datetime | None:
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None


def start(
    settings: Settings,
    context: CycleContext,
    *,
    on_fatal: Callable[[BaseException], None] | None = None,
) -> SchedulerController:
    """
    Start a background scheduler with a single cycle job and return its controller.

    A FatalCycleError stops the timer and is handed to `on_fatal`; any other
    exception is logged and the timer keeps going.
    """
    tz = _resolve_timezone()
    trigger = build_trigger(settings, tz)

    scheduler = BackgroundScheduler(
        timezone=tz,
        job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
        executors={"default": ThreadPoolExecutor(1)},
        jobstores={"default": MemoryJobStore()},
    )
    controller = SchedulerController(scheduler)

    def _fire() -> None:
        t0 = _time.monotonic()
        try:
            _, run_id = runner.run_cycle_once(
                context,
                trigger_type="scheduled",
                job_context={"job_id": JOB_ID, "fired_at": datetime.now(timezone.utc).isoformat()},
            )
        except FatalCycleError as e:
            LOG.critical("Scheduled cycle hit a fatal error on table %s: %s", e.table, e)
            _record_fire("fatal", t0)
            controller.stop()
            if on_fatal:
                on_fatal(e)
            return
        except Exception:
            LOG.exception("Scheduled cycle failed.")
            _record_fire("error", t0)
            return
        _record_fire("ok", t0, run_id=run_id)

    scheduler.add_job(func=_fire, trigger=trigger, id=JOB_ID, replace_existing=True)
    scheduler.start()
    LOG.info("Timer started (%s); first cycle at %s.", trigger, controller.next_run_time())
    return controller


def build_trigger(settings: Settings, tz: Any) -> BaseTrigger:
    """CronTrigger for settings.timer_cron, else an IntervalTrigger of timer_interval_sec."""
    if settings.timer_cron:
        fields = settings.timer_cron.split()
        if len(fields) != 5:
            raise ValueError(f"APP_TIMERCRON must have 5 fields (got {len(fields)}): {settings.timer_cron!r}")
        return CronTrigger.from_crontab(settings.timer_cron, timezone=tz)
    if settings.timer_interval_sec < 1:
        raise ValueError(f"APP_TIMERINTERVALSECONDS must be >= 1 (got {settings.timer_interval_sec})")
    return IntervalTrigger(seconds=settings.timer_interval_sec, timezone=tz)


def _resolve_timezone():
    # APScheduler 3.x wants a pytz zone; TZ from the environment, else UTC.
    name = os.getenv("TZ") or "UTC"
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        LOG.warning("Unknown TZ %r; using UTC.", name)
        return pytz.UTC


def _record_fire(status: str, started: float, *, run_id: str | None = None) -> None:
    try:
        write_activity_log({
            "ts": datetime.now(timezone.utc).isoformat(),
            "event": "timer_fire",
            "job_id": JOB_ID,
            "status": status,
            "run_id": run_id,
            "duration_ms": int((_time.monotonic() - started) * 1000),
        })
    except OSError:
        LOG.debug("Could not record timer fire.", exc_info=True)
