"""Timestamp formatting for API payloads."""

from __future__ import annotations

import math
from datetime import datetime, timezone


def to_iso(timestamp: float | None) -> str | None:
    """Render a unix timestamp as an ISO 8601 UTC string."""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def minutes_until(timestamp: float, now: float) -> int:
    """Whole minutes until ``timestamp``, rounded up and never negative."""
    return max(0, math.ceil((timestamp - now) / 60))
