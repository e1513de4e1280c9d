"""Server clock: epoch-millisecond timestamps."""

from __future__ import annotations

from datetime import UTC, datetime


def now_ms() -> int:
    """Return the current UTC time in epoch milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


def next_receipt_time(last_issued: int | None) -> int:
    """Return a receipt time strictly greater than ``last_issued``.

    Falls back to the wall clock when it is already ahead, so receipt times
    track real time but never repeat or go backwards after a clock step.
    """
    now = now_ms()
    if last_issued is None:
        return now
    return max(now, last_issued + 1)
