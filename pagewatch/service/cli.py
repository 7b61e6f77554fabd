"""
pagewatch command line.

    pagewatch serve [--host H] [--port P]   HTTP trigger listener (POST /timer)
    pagewatch schedule                      in-process timer until SIGINT/SIGTERM
    pagewatch run [--dry-run]               one cycle now, then print a summary
    pagewatch list-watches                  configured watches
    pagewatch validate-config               exit 1 when the environment is invalid

Configuration always comes from the environment (see pagewatch.config).
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from collections.abc import Iterable, Sequence
from types import SimpleNamespace

from pagewatch.config import ConfigError, Settings
from pagewatch.db import StorageError
from pagewatch.engine import CycleContext, FatalCycleError
from pagewatch.models import CycleReport
from pagewatch.utils import now_iso

from . import logging_utils as L
from . import runner as _runner
from . import scheduler as _scheduler
from . import server as _server

LOG = logging.getLogger("pagewatch.cli")


def _configure_logging() -> None:
    # Leave an existing setup (pytest, embedding host) alone.
    if logging.getLogger().handlers:
        return
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _print_rows(headers: Sequence[str], rows: Iterable[Sequence[str]]) -> None:
    rows = [tuple(map(str, r)) for r in rows]
    widths = [max([len(h)] + [len(r[i]) for r in rows]) for i, h in enumerate(headers)]
    line = "  ".join("{:<%d}" % w for w in widths)
    print(line.format(*headers).rstrip())
    print(line.format(*("-" * w for w in widths)))
    for r in rows:
        print(line.format(*r).rstrip())


def _print_report(report: CycleReport) -> None:
    rows = []
    for r in report.results:
        outcome = r.outcome.value
        if r.new_items:
            outcome += f" ({len(r.new_items)} new: {', '.join(r.new_items)})"
        rows.append((r.table_name, outcome, r.error or ""))
    _print_rows(("TABLE", "OUTCOME", "ERROR"), rows)


def _log_activity(record: dict) -> None:
    try:
        L.write_activity_log(record)
    except OSError as e:
        LOG.error("Failed to write activity JSONL: %s", e)


def _log_error(record: dict) -> None:
    try:
        L.write_error_log(record)
    except OSError as e:
        LOG.error("Failed to write error JSONL: %s", e)


def _context_or_none(*, dry_run: bool = False) -> tuple[Settings, CycleContext] | None:
    try:
        settings = Settings.from_env()
        return settings, _runner.build_context(settings, dry_run=dry_run)
    except (ConfigError, StorageError) as e:
        LOG.error("Cannot start: %s", e)
        print(f"ERROR: {e}", file=sys.stderr)
        return None


# ---- subcommands ---------------------------------------------------------------


def cmd_validate_config(args: argparse.Namespace) -> int:
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
        return 1
    print(f"OK: configuration is valid ({len(settings.watches)} watch(es)).")
    return 0


def cmd_list_watches(args: argparse.Namespace) -> int:
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        print(f"ERROR: configuration invalid: {e}", file=sys.stderr)
        return 1
    _print_rows(
        ("#", "TABLE", "URL", "DETAILS"),
        (
            (w.index, w.table_name, w.target_url, f"wait {w.wait_seconds}s, title {w.notification_title!r}")
            for w in settings.watches
        ),
    )
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    loaded = _context_or_none(dry_run=args.dry_run)
    if loaded is None:
        return 1
    _, context = loaded

    try:
        report, run_id = _runner.run_cycle_once(context, trigger_type="adhoc")
    except KeyboardInterrupt:
        return 130
    except FatalCycleError as e:
        print(f"FATAL: {e}", file=sys.stderr)
        _log_error({"ts": now_iso(), "where": "cli.run", "table": e.table, "error": repr(e)})
        return 1
    finally:
        _runner.close_context(context)

    _print_report(report)
    if report.aborted:
        print(f"ABORTED: cycle {run_id} stopped at an extraction failure.")
    else:
        print(f"DONE: cycle {run_id} completed.")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    loaded = _context_or_none()
    if loaded is None:
        return 1
    settings, context = loaded

    port = args.port or settings.port
    _log_activity({"ts": now_iso(), "event": "serve_start", "host": args.host, "port": port})
    try:
        _server.serve(context, port=port, host=args.host)
    finally:
        _runner.close_context(context)
        _log_activity({"ts": now_iso(), "event": "serve_stop"})
    return 0


def cmd_schedule(args: argparse.Namespace) -> int:
    """Block on the timer until a signal arrives or a cycle fails fatally."""
    loaded = _context_or_none()
    if loaded is None:
        return 1
    settings, context = loaded

    wake = threading.Event()
    state = SimpleNamespace(fatal=None)

    def _on_signal(signum, frame):
        LOG.info("Received signal %s; stopping.", signum)
        wake.set()

    def _on_fatal(exc: BaseException) -> None:
        state.fatal = exc
        wake.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    _log_activity({"ts": now_iso(), "event": "schedule_start"})
    controller = _scheduler.start(settings, context, on_fatal=_on_fatal)
    try:
        while not wake.wait(timeout=1.0):
            pass
    finally:
        controller.stop()
        controller.join(timeout=10.0)
        _runner.close_context(context)
        _log_activity({"ts": now_iso(), "event": "schedule_stop", "fatal": repr(state.fatal)})

    return 1 if state.fatal else 0


# ---- argparse --------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pagewatch",
        description="Render pages, diff extracted items against the seen ledger, push new ones.",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("serve", help="Listen for POST /timer and run one cycle per request.")
    sp.add_argument("--host", default="0.0.0.0", help="Bind address (default 0.0.0.0).")
    sp.add_argument("--port", type=int, default=None, help="Override FUNCTIONS_CUSTOMHANDLER_PORT.")
    sp.set_defaults(func=cmd_serve)

    sp = sub.add_parser("schedule", help="Run cycles from an in-process timer.")
    sp.set_defaults(func=cmd_schedule)

    sp = sub.add_parser("run", help="Execute one cycle now.")
    sp.add_argument("--dry-run", action="store_true", help="Extract and diff only; no push, no writes.")
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("list-watches", help="Print the configured watches.")
    sp.set_defaults(func=cmd_list_watches)

    sp = sub.add_parser("validate-config", help="Check the environment and exit nonzero if invalid.")
    sp.set_defaults(func=cmd_validate_config)

    return p


def main(argv: Iterable[str] | None = None) -> int:
    _configure_logging()
    args = _build_parser().parse_args(args=list(argv) if argv is not None else None)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
