# tests/conftest.py
import os
import tempfile

import pytest

from pagewatch.config import WatchConfig
from pagewatch.db import SqliteRecordStore, StorageError
from pagewatch.engine import CycleContext
from pagewatch.extractor import PageExtractor
from pagewatch.models import SeenRecord
from pagewatch.notifier import Notifier, NotifyError


# ---------------------------------------------------------------------
# Live tests are opt-in: use --live or RUN_LIVE_TESTS=1
# ---------------------------------------------------------------------
def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--live",
        action="store_true",
        default=False,
        help="Run tests marked as 'live' (real browser or external services).",
    )


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "live: marks tests that launch a real browser or hit external services (skipped by default).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_live = config.getoption("--live") or os.getenv("RUN_LIVE_TESTS") == "1"
    if run_live:
        return
    skip_live = pytest.mark.skip(reason="live tests disabled (use --live or RUN_LIVE_TESTS=1)")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------
# Test-wide env defaults (autouse, function-scoped)
# ---------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _env_defaults(monkeypatch):
    # Write logs to a throwaway dir so real logs stay clean (per test)
    tmp_logs = tempfile.mkdtemp(prefix="pw-pytest-logs-")
    monkeypatch.setenv("LOG_DIR", tmp_logs)
    monkeypatch.setenv("ACTIVITY_LOG_PREFIX", "activity-test")
    monkeypatch.setenv("ERROR_LOG_PREFIX", "error-test")

    # Never pick up a developer's real configuration
    for name in list(os.environ):
        if name.startswith("APP_") or name in ("AzureWebJobsStorage", "FUNCTIONS_CUSTOMHANDLER_PORT"):
            monkeypatch.delenv(name, raising=False)
    yield


# ---------------------------------------------------------------------
# Fakes for the three collaborators
# ---------------------------------------------------------------------
class FakeExtractor(PageExtractor):
    """Returns canned lists per URL; an Exception value is raised instead."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.calls = []

    def extract(self, url, wait_seconds, script, *, timeout_sec):
        self.calls.append(url)
        value = self.pages.get(url, [])
        if isinstance(value, Exception):
            raise value
        return list(value)


class FakeNotifier(Notifier):
    """Records every push; fails with the given status code (or transport error) when set."""

    def __init__(self, fail_status=None, transport_error=False):
        self.fail_status = fail_status
        self.transport_error = transport_error
        self.sent = []
        self.closed = False

    def notify(self, title, body, *, timeout_sec):
        if self.transport_error:
            raise NotifyError("Push Bullet request failed: connection refused")
        if self.fail_status is not None:
            raise NotifyError(
                f"Push Bullet returned an unexpected status code {self.fail_status}.",
                status_code=self.fail_status,
            )
        self.sent.append({"title": title, "body": body})

    def close(self):
        self.closed = True


class RecordingStore(SqliteRecordStore):
    """SQLite store that remembers which tables were touched and can fail on demand."""

    def __init__(self, path, *, fail_add=False, fail_page_after=None, fail_create=False):
        super().__init__(path)
        self.fail_add = fail_add
        self.fail_page_after = fail_page_after
        self.fail_create = fail_create
        self.touched = []
        self.adds = []
        self.timeouts = []

    def ensure_table(self, table, *, timeout_sec=None):
        self.touched.append(("ensure_table", table))
        self.timeouts.append(("ensure_table", timeout_sec))
        if self.fail_create:
            raise StorageError(f"Could not create table {table}: disk I/O error")
        super().ensure_table(table, timeout_sec=timeout_sec)

    def iter_row_keys(self, table, *, page_size=1000, timeout_sec=None):
        self.touched.append(("iter_row_keys", table))
        self.timeouts.append(("iter_row_keys", timeout_sec))
        for n, page in enumerate(super().iter_row_keys(table, page_size=page_size, timeout_sec=timeout_sec)):
            if self.fail_page_after is not None and n >= self.fail_page_after:
                raise StorageError("Could not query entities: connection reset")
            yield page

    def add(self, table, record, *, timeout_sec=None):
        self.touched.append(("add", table))
        self.timeouts.append(("add", timeout_sec))
        if self.fail_add:
            raise StorageError("Could not add entity: disk full")
        self.adds.append((table, record.row_key))
        super().add(table, record, timeout_sec=timeout_sec)


# ---------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------
@pytest.fixture
def make_watch():
    def _make(table="watchA", url=None, index=0, title=None, wait_seconds=0):
        return WatchConfig(
            table_name=table,
            target_url=url or f"https://example.com/{table}",
            extraction_script="Array.from(document.querySelectorAll('li')).map(e => e.textContent)",
            wait_seconds=wait_seconds,
            notification_title=title or f"New on {table}",
            index=index,
        )

    return _make


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "pagewatch.db")


@pytest.fixture
def make_store(db_path):
    """Build a RecordingStore over the per-test SQLite file (failure knobs as kwargs)."""

    def _make(**kwargs):
        return RecordingStore(db_path, **kwargs)

    return _make


@pytest.fixture
def store(make_store):
    return make_store()


@pytest.fixture
def recording_store():
    """The RecordingStore class itself, for tests that subclass it."""
    return RecordingStore


@pytest.fixture
def seed(db_path):
    """Seed row keys into a table without going through the RecordingStore bookkeeping."""

    def _seed(table, keys):
        plain = SqliteRecordStore(db_path)
        plain.ensure_table(table)
        for k in keys:
            plain.add(table, SeenRecord.for_identifier(k))

    return _seed


@pytest.fixture
def fake_extractor():
    return FakeExtractor


@pytest.fixture
def fake_notifier():
    return FakeNotifier


@pytest.fixture
def make_context():
    def _make(watches, extractor, store, notifier, **kwargs):
        return CycleContext(
            watches=tuple(watches),
            extractor=extractor,
            store=store,
            notifier=notifier,
            **kwargs,
        )

    return _make


@pytest.fixture
def app_env(tmp_path, monkeypatch):
    """A minimal valid environment with two watches."""
    env = {
        "APP_STORAGECONNECTIONSTRING": f"sqlite:///{tmp_path / 'state' / 'pagewatch.db'}",
        "APP_PUSHBULLETACCESSTOKEN": "o.test-token",
        "APP_0_TABLENAME": "shows",
        "APP_0_TARGETURL": "https://example.com/shows",
        "APP_0_STRINGARRAYJS": "[...document.querySelectorAll('h2')].map(e => e.innerText)",
        "APP_0_WAITSECONDS": "2",
        "APP_0_NOTIFICATIONTITLE": "New shows",
        "APP_1_TABLENAME": "offers",
        "APP_1_TARGETURL": "https://example.com/offers",
        "APP_1_STRINGARRAYJS": "[]",
        "APP_1_WAITSECONDS": "0",
        "APP_1_NOTIFICATIONTITLE": "New offers",
    }
    for k, v in env.items():
        monkeypatch.setenv(k, v)
    return env
