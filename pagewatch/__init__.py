# pagewatch/__init__.py
from __future__ import annotations

# Re-export commonly-used types for convenience
from .config import ConfigError, Settings, WatchConfig
from .db import RecordStore, SqliteRecordStore, StorageError
from .engine import CycleContext, FatalCycleError, compute_new_items, run_cycle
from .extractor import ExtractionError, PageExtractor, PlaywrightExtractor
from .models import CycleReport, SeenRecord, Severity, WatchOutcome, WatchResult
from .notifier import Notifier, NotifyError, PushbulletNotifier

__version__ = "0.1.0"

__all__ = [
    "ConfigError",
    "CycleContext",
    "CycleReport",
    "ExtractionError",
    "FatalCycleError",
    "Notifier",
    "NotifyError",
    "PageExtractor",
    "PlaywrightExtractor",
    "PushbulletNotifier",
    "RecordStore",
    "SeenRecord",
    "Settings",
    "Severity",
    "SqliteRecordStore",
    "StorageError",
    "WatchConfig",
    "WatchOutcome",
    "WatchResult",
    "compute_new_items",
    "run_cycle",
]
