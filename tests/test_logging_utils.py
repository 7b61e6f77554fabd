import json
import os

from freezegun import freeze_time

from pagewatch import logging_bridge
from pagewatch.service import logging_utils as L
from pagewatch.utils import Deadline, now_iso


def _lines(path):
    with open(path, encoding="utf-8") as f:
        return [json.loads(x) for x in f if x.strip()]


@freeze_time("2026-03-01 12:00:00")
def test_daily_file_names_use_prefix_and_date():
    assert L.get_activity_log_path().endswith("activity-test-2026-03-01.jsonl")
    assert L.get_error_log_path().endswith("error-test-2026-03-01.jsonl")
    assert now_iso() == "2026-03-01T12:00:00Z"


def test_write_activity_log_appends_with_meta():
    L.write_activity_log({"event": "one"})
    L.write_activity_log({"event": "two"})

    recs = _lines(L.get_activity_log_path())
    assert [r["event"] for r in recs] == ["one", "two"]
    assert recs[0]["_meta"]["pid"] == os.getpid()


def test_secrets_are_redacted_deeply():
    L.write_error_log({"headers": {"Access-Token": "o.secret"}, "items": [{"password": "p"}], "ok": 1})

    rec = _lines(L.get_error_log_path())[0]
    assert rec["headers"]["Access-Token"] == "***REDACTED***"
    assert rec["items"][0]["password"] == "***REDACTED***"
    assert rec["ok"] == 1


def test_redact_does_not_mutate_input():
    src = {"pushbullet_token": "x", "nested": {"secret": "y"}}
    out = L.redact(src)
    assert src["nested"]["secret"] == "y"
    assert out["pushbullet_token"] == "***REDACTED***"


def test_size_rotation(monkeypatch):
    monkeypatch.setenv("ACTIVITY_LOG_MAX_BYTES", "10")
    L.write_activity_log({"event": "first", "pad": "x" * 20})
    L.write_activity_log({"event": "second"})

    path = L.get_activity_log_path()
    rotated = [n for n in os.listdir(os.path.dirname(path)) if n.startswith(os.path.basename(path) + ".")]
    assert rotated
    assert [r["event"] for r in _lines(path)] == ["second"]


def test_bridge_falls_back_to_stdlib_logging(monkeypatch, caplog):
    def _boom(record):
        raise OSError("read-only file system")

    monkeypatch.setattr(L, "write_error_log", _boom)
    logging_bridge.error({"op": "notify", "access_token": "o.abc"})

    assert "error log write failed" in caplog.text
    assert "o.abc" not in caplog.text


def test_deadline_counts_down_and_clamps_at_zero():
    now = [100.0]
    d = Deadline(5, clock=lambda: now[0])
    assert d.remaining() == 5.0 and not d.expired()

    now[0] = 104.0
    assert d.remaining() == 1.0

    now[0] = 200.0
    assert d.remaining() == 0.0
    assert d.expired()
