# hmaengine/core/clock.py
from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Optional


def ts_to_iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def candle_span(candle_minutes: int = 5) -> int:
    return int(candle_minutes) * 60


def candle_start(ts: float, candle_minutes: int = 5) -> int:
    """Start (epoch seconds) of the candle that contains ts."""
    span = candle_span(candle_minutes)
    return int(math.floor(float(ts) / span) * span)


def next_candle_boundary(ts: float, candle_minutes: int = 5) -> int:
    """
    First boundary strictly after ts.
    At exactly 10:05:00 this returns 10:10:00.
    """
    return candle_start(ts, candle_minutes) + candle_span(candle_minutes)


def last_closed_candle_ts(ts: float, candle_minutes: int = 5) -> int:
    """Start of the most recent fully closed candle."""
    return candle_start(ts, candle_minutes) - candle_span(candle_minutes)


def entry_deadline(ts: float, candle_minutes: int = 5, deadline_second: int = 59) -> int:
    """
    Second `deadline_second` of the last minute of the candle containing ts.

    With 5-minute candles and second 59 a trigger at 10:02:10 expires at
    10:04:59; a trigger at 10:04:59 itself expires immediately.
    """
    return candle_start(ts, candle_minutes) + candle_span(candle_minutes) - 60 + int(deadline_second)


def reversal_deadline(ts: float, confirm_minutes: int = 15) -> float:
    return float(ts) + int(confirm_minutes) * 60
