from __future__ import annotations

import time
from datetime import datetime, timezone


def now_iso() -> str:
    """
    UTC ISO-8601 timestamp with 'Z' suffix.
    """
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Deadline:
    """
    A single monotonic deadline shared by every step of one watch.

    `remaining()` never goes below zero, so it can be handed straight to
    timeouts that reject negative values.
    """

    def __init__(self, seconds: float, *, clock=time.monotonic) -> None:
        self._clock = clock
        self.seconds = float(seconds)
        self._expires_at = clock() + self.seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def __repr__(self) -> str:
        return f"Deadline(seconds={self.seconds}, remaining={self.remaining():.3f})"
