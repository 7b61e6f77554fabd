# pagewatch/service/logging_utils.py
"""
Append-only JSONL logs for cycle activity and failures.

Two channels share one writer:

    activity  <LOG_DIR>/<ACTIVITY_LOG_PREFIX>-YYYY-MM-DD.jsonl
    error     <LOG_DIR>/<ERROR_LOG_PREFIX>-YYYY-MM-DD.jsonl

Environment is read on every write so tests (and operators) can redirect output:

    LOG_DIR                  default /app/local/logs
    ACTIVITY_LOG_PREFIX      default "activity"
    ERROR_LOG_PREFIX         default "error"
    ACTIVITY_LOG_MAX_BYTES   size rotation threshold for both channels; <=0 disables it
"""

from __future__ import annotations

import contextlib
import datetime as _dt
import json
import os
import socket
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

REDACTED = "***REDACTED***"

# Substrings matched case-insensitively against every key at any depth.
SECRET_KEY_PATTERNS = frozenset({
    "token",
    "password",
    "secret",
    "apikey",
    "api_key",
    "authorization",
    "connection_string",
    "connectionstring",
    "cookie",
})

_PROCESS_META = {"host": socket.gethostname(), "pid": os.getpid()}


@dataclass(frozen=True)
class _Channel:
    prefix_env: str
    default_prefix: str

    def path(self, day: _dt.date | None = None) -> str:
        prefix = os.getenv(self.prefix_env, self.default_prefix)
        stamp = (day or _dt.date.today()).isoformat()
        return os.path.join(os.getenv("LOG_DIR", "/app/local/logs"), f"{prefix}-{stamp}.jsonl")

    def write(self, record: Mapping[str, Any]) -> None:
        line = _encode(record)
        path = self.path()
        try:
            _append(path, line)
        except OSError:
            # one retry covers a rotation racing with another writer
            _append(path, line)


_ACTIVITY = _Channel("ACTIVITY_LOG_PREFIX", "activity")
_ERROR = _Channel("ERROR_LOG_PREFIX", "error")


# ---- Public API --------------------------------------------------------------


def write_activity_log(record: Mapping[str, Any]) -> None:
    """
    Append one activity record. The caller's mapping is not mutated.
    Raises OSError if the line cannot be written after one retry.
    """
    _ACTIVITY.write(record)


def write_error_log(record: Mapping[str, Any]) -> None:
    """Append one error record; same contract as write_activity_log()."""
    _ERROR.write(record)


def get_activity_log_path() -> str:
    return _ACTIVITY.path()


def get_error_log_path() -> str:
    return _ERROR.path()


def redact(record: Mapping[str, Any], patterns: Iterable[str] | None = None) -> dict[str, Any]:
    """Deep copy of `record` with secret-looking keys replaced by REDACTED."""
    pats = tuple(p.lower() for p in (patterns or SECRET_KEY_PATTERNS))
    return _scrub(dict(record), pats)


# ---- Internals ---------------------------------------------------------------


def _scrub(value: Any, patterns: tuple[str, ...]) -> Any:
    if isinstance(value, Mapping):
        return {
            k: REDACTED if isinstance(k, str) and any(p in k.lower() for p in patterns) else _scrub(v, patterns)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_scrub(v, patterns) for v in value]
    return value


def _encode(record: Mapping[str, Any]) -> bytes:
    payload = redact(record)
    payload["_meta"] = dict(_PROCESS_META)
    text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"), default=str)
    return (text + "\n").encode("utf-8")


def _rotation_limit() -> int:
    try:
        return int(os.getenv("ACTIVITY_LOG_MAX_BYTES", "0"))
    except ValueError:
        return 0


def _rotate_if_full(path: str) -> None:
    limit = _rotation_limit()
    if limit <= 0:
        return
    try:
        full = os.path.getsize(path) >= limit
    except FileNotFoundError:
        return
    if full:
        suffix = _dt.datetime.now().strftime("%Y%m%d-%H%M%S")
        with contextlib.suppress(FileNotFoundError):
            os.replace(path, f"{path}.{suffix}")


def _append(path: str, line: bytes) -> None:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    _rotate_if_full(path)
    fd = os.open(path, os.O_CREAT | os.O_APPEND | os.O_WRONLY, 0o644)
    try:
        os.write(fd, line)
    finally:
        os.close(fd)
