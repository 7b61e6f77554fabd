from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class SeenRecord:
    """
    One row of a watch's dedup ledger.
    Partition key and row key are both the identifier; rows are never updated or removed.
    """

    partition_key: str
    row_key: str

    @classmethod
    def for_identifier(cls, identifier: str) -> SeenRecord:
        return cls(partition_key=identifier, row_key=identifier)


class Severity(str, Enum):
    """How far a failure at one step reaches."""

    FATAL = "fatal"  # process must stop
    ABORT_CYCLE = "abort_cycle"  # remaining watches in this cycle are not run
    SKIP_WATCH = "skip_watch"  # this watch's persistence is skipped
    RECOVERED = "recovered"  # logged, processing continues on degraded data


class WatchOutcome(str, Enum):
    NOTIFIED = "notified"
    NO_NEW_ITEMS = "no_new_items"
    SKIPPED_PERSIST = "skipped_persist"
    ABORTED_CYCLE = "aborted_cycle"
    DRY_RUN = "dry_run"
    NOT_RUN = "not_run"


@dataclass
class WatchResult:
    """
    Result of reconciling one watch in one cycle.
    - degraded: the existing-set read stopped early (diff ran against a partial set)
    - severity: set when a step failed; None for a clean run
    """

    table_name: str
    target_url: str
    outcome: WatchOutcome
    extracted_count: int = 0
    existing_count: int = 0
    new_items: list[str] = field(default_factory=list)
    degraded: bool = False
    severity: Severity | None = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "table": self.table_name,
            "url": self.target_url,
            "outcome": self.outcome.value,
            "extracted": self.extracted_count,
            "existing": self.existing_count,
            "new_items": list(self.new_items),
            "degraded": self.degraded,
            "severity": self.severity.value if self.severity else None,
            "error": self.error,
        }


@dataclass
class CycleReport:
    """All watch results for one cycle, in configuration order."""

    results: list[WatchResult] = field(default_factory=list)

    @property
    def aborted(self) -> bool:
        return any(r.outcome is WatchOutcome.ABORTED_CYCLE for r in self.results)

    @property
    def notified_count(self) -> int:
        return sum(1 for r in self.results if r.outcome is WatchOutcome.NOTIFIED)

    def outcomes(self) -> list[WatchOutcome]:
        return [r.outcome for r in self.results]

    def as_dict(self) -> dict[str, Any]:
        return {
            "aborted": self.aborted,
            "notified": self.notified_count,
            "watches": [r.as_dict() for r in self.results],
        }
