from __future__ import annotations

import os
import re
import sqlite3
from abc import ABC, abstractmethod
from collections.abc import Iterator

from .models import SeenRecord
from .utils import now_iso

_TABLE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9]{2,62}$")


class StorageError(Exception):
    """Raised when the record store cannot complete an operation."""


class RecordStore(ABC):
    """
    Durable per-watch dedup ledger: one table per watch, one row per seen identifier.

    Contract:
      - ensure_table() is idempotent; an existing table is success.
      - iter_row_keys() yields PAGES (lists of row keys); a failing page raises
        StorageError from the generator, after earlier pages were already yielded.
      - add() writes one SeenRecord; writing an existing key is a no-op.
      - Operations on one table never touch another.
      - timeout_sec, when given, caps how long one call may wait on the backend.
    """

    @abstractmethod
    def ensure_table(self, table: str, *, timeout_sec: float | None = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def iter_row_keys(
        self, table: str, *, page_size: int = 1000, timeout_sec: float | None = None
    ) -> Iterator[list[str]]:
        raise NotImplementedError

    @abstractmethod
    def add(self, table: str, record: SeenRecord, *, timeout_sec: float | None = None) -> None:
        raise NotImplementedError


class SqliteRecordStore(RecordStore):
    """
    SQLite-backed RecordStore. Each watch table is a real SQLite table:

        (partition_key TEXT, row_key TEXT, first_seen_utc TEXT,
         PRIMARY KEY (partition_key, row_key))
    """

    def __init__(self, sqlite_path: str, *, timeout: float = 30.0) -> None:
        self.sqlite_path = sqlite_path
        self.timeout = float(timeout)
        try:
            _ensure_dir(sqlite_path)
            conn = self._connect()
            conn.close()
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Could not open SQLite store {sqlite_path}: {e}") from e

    # ---- RecordStore ----------------------------------------------------------

    def ensure_table(self, table: str, *, timeout_sec: float | None = None) -> None:
        name = _quote(table)
        try:
            conn = self._connect(timeout_sec)
            try:
                conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {name} (
                      partition_key  TEXT NOT NULL,
                      row_key        TEXT NOT NULL,
                      first_seen_utc TEXT NOT NULL,
                      PRIMARY KEY (partition_key, row_key)
                    );
                    """
                )
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Could not create table {table}: {e}") from e

    def iter_row_keys(
        self, table: str, *, page_size: int = 1000, timeout_sec: float | None = None
    ) -> Iterator[list[str]]:
        if page_size <= 0:
            raise ValueError("page_size must be >= 1")
        name = _quote(table)
        last_rowid = 0
        while True:
            try:
                conn = self._connect(timeout_sec)
                try:
                    rows = conn.execute(
                        f"SELECT rowid, row_key FROM {name} WHERE rowid > ? ORDER BY rowid LIMIT ?",
                        (last_rowid, page_size),
                    ).fetchall()
                finally:
                    conn.close()
            except sqlite3.Error as e:
                raise StorageError(f"Could not query entities from table {table}: {e}") from e

            if not rows:
                return
            last_rowid = rows[-1][0]
            yield [row_key for _, row_key in rows]
            if len(rows) < page_size:
                return

    def add(self, table: str, record: SeenRecord, *, timeout_sec: float | None = None) -> None:
        name = _quote(table)
        try:
            conn = self._connect(timeout_sec)
            try:
                conn.execute(
                    f"INSERT OR IGNORE INTO {name} (partition_key, row_key, first_seen_utc) VALUES (?, ?, ?)",
                    (record.partition_key, record.row_key, now_iso()),
                )
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageError(f"Could not add entity {record.row_key!r} to table {table}: {e}") from e

    # ---- Nice-to-have helpers for tests & diagnostics --------------------------

    def count_rows(self, table: str) -> int:
        """Return total rows in `table`; 0 if the table does not exist yet."""
        name = _quote(table)
        conn = self._connect()
        try:
            exists = conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
            ).fetchone()
            if not exists:
                return 0
            (n,) = conn.execute(f"SELECT COUNT(*) FROM {name}").fetchone()
        finally:
            conn.close()
        return int(n or 0)

    def all_row_keys(self, table: str) -> set[str]:
        out: set[str] = set()
        for page in self.iter_row_keys(table):
            out.update(page)
        return out

    # ---- Internal utilities ---------------------------------------------------

    def _connect(self, timeout_sec: float | None = None) -> sqlite3.Connection:
        # Busy timeout: the store default, capped by the caller's remaining budget.
        timeout = self.timeout if timeout_sec is None else max(0.0, min(self.timeout, timeout_sec))
        # isolation_level=None gives autocommit mode; every statement here is a single write.
        conn = sqlite3.connect(self.sqlite_path, timeout=timeout, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        return conn


def _ensure_dir(sqlite_path: str) -> None:
    d = os.path.dirname(os.path.abspath(sqlite_path)) or "."
    os.makedirs(d, exist_ok=True)


def _quote(table: str) -> str:
    if not isinstance(table, str) or not _TABLE_NAME_RE.match(table):
        raise StorageError(f"Invalid table name {table!r}.")
    return f'"{table}"'
