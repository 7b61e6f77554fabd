"""
Engine-side entry point for structured records.

Records go to the service JSONL channels; when the log directory is unwritable
they are emitted through stdlib logging instead, so a cycle never fails on logging.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from .service import logging_utils as _jsonl

_activity_log = logging.getLogger("pagewatch.activity")
_error_log = logging.getLogger("pagewatch.error")


def activity(record: dict[str, Any]) -> None:
    _emit(_jsonl.write_activity_log, _activity_log, logging.INFO, record)


def error(record: dict[str, Any]) -> None:
    _emit(_jsonl.write_error_log, _error_log, logging.ERROR, record)


def _emit(
    writer: Callable[[dict[str, Any]], None],
    fallback: logging.Logger,
    level: int,
    record: dict[str, Any],
) -> None:
    safe = _jsonl.redact(record)
    try:
        writer(safe)
    except OSError:
        fallback.warning("%s log write failed", fallback.name.rsplit(".", 1)[-1], exc_info=True)
        fallback.log(level, "%s", safe)
