from datetime import datetime, timezone

from hmaengine.core.clock import (
    candle_start,
    entry_deadline,
    last_closed_candle_ts,
    next_candle_boundary,
    reversal_deadline,
)


def _ts(h, m, s=0):
    return datetime(2025, 8, 14, h, m, s, tzinfo=timezone.utc).timestamp()


def test_candle_start_floors_to_five_minutes():
    assert candle_start(_ts(10, 7, 42)) == _ts(10, 5)
    assert candle_start(_ts(10, 5, 0)) == _ts(10, 5)


def test_next_boundary_is_strictly_after():
    assert next_candle_boundary(_ts(10, 5, 0)) == _ts(10, 10)
    assert next_candle_boundary(_ts(10, 9, 59)) == _ts(10, 10)


def test_last_closed_candle():
    # at 10:10:02 the candle that just closed started at 10:05
    assert last_closed_candle_ts(_ts(10, 10, 2)) == _ts(10, 5)


def test_entry_deadline_is_last_second_of_candle():
    assert entry_deadline(_ts(10, 2, 10)) == _ts(10, 4, 59)
    # exactly on a boundary still gets the whole candle
    assert entry_deadline(_ts(10, 5, 0)) == _ts(10, 9, 59)


def test_entry_deadline_custom_second():
    assert entry_deadline(_ts(10, 2, 10), 5, 30) == _ts(10, 4, 30)


def test_reversal_deadline():
    assert reversal_deadline(_ts(10, 0), 15) == _ts(10, 15)
