from __future__ import annotations

from datetime import timedelta

from helpers import FIVE_MIN, START, candle_at, candles_from_closes

from tradesim.data.candles import Candle
from tradesim.data.feed import (
    HtfCursor,
    aggregate_candles,
    clip_to_closed,
    closed_candles,
    merge_history,
    upsert_candle,
)

FIFTEEN_MIN = timedelta(minutes=15)


def _htf_series(count: int) -> list[Candle]:
    return [candle_at(i, 100.0 + i, period=FIFTEEN_MIN) for i in range(count)]


def test_clip_to_closed_keeps_only_candles_closed_by_timestamp() -> None:
    series = _htf_series(3)  # opens 00:00, 00:15, 00:30

    clipped = clip_to_closed(series, START + timedelta(minutes=30), FIFTEEN_MIN)
    assert [c.timestamp for c in clipped] == [START, START + FIFTEEN_MIN]

    clipped = clip_to_closed(series, START + timedelta(minutes=29), FIFTEEN_MIN)
    assert [c.timestamp for c in clipped] == [START]


def test_clip_to_closed_edge_cases() -> None:
    assert clip_to_closed([], START, FIFTEEN_MIN) == []
    assert clip_to_closed(_htf_series(3), START + timedelta(minutes=10), FIFTEEN_MIN) == []
    assert len(clip_to_closed(_htf_series(3), START + timedelta(days=1), FIFTEEN_MIN)) == 3


def test_htf_cursor_matches_clip_to_closed() -> None:
    series = _htf_series(20)
    cursor = HtfCursor(series, FIFTEEN_MIN)
    for step in range(0, 60):
        timestamp = START + step * FIVE_MIN + FIVE_MIN
        assert cursor.advance(timestamp) == clip_to_closed(series, timestamp, FIFTEEN_MIN)


def test_htf_cursor_window_returns_tail() -> None:
    series = _htf_series(20)
    cursor = HtfCursor(series, FIFTEEN_MIN)
    tail = cursor.advance(START + timedelta(days=1), window=5)
    assert tail == series[-5:]
    assert cursor.closed_count == 20


def test_closed_candles_drops_forming_candle() -> None:
    history = candles_from_closes([100.0, 101.0, 102.0])  # 00:00, 00:05, 00:10
    closed = closed_candles(history, START + timedelta(minutes=12), FIVE_MIN)
    assert [c.close for c in closed] == [100.0, 101.0]


def test_upsert_candle_replaces_appends_and_caps() -> None:
    history = candles_from_closes([100.0, 101.0])
    updated = candle_at(1, 105.0)
    upsert_candle(history, updated)
    assert len(history) == 2
    assert history[-1].close == 105.0

    upsert_candle(history, candle_at(2, 106.0))
    assert len(history) == 3

    upsert_candle(history, candle_at(0, 1.0))
    assert history[0].close == 100.0
    assert len(history) == 3

    upsert_candle(history, candle_at(3, 107.0), cap=2)
    assert [c.close for c in history] == [106.0, 107.0]


def test_merge_history_is_idempotent_for_refetched_candles() -> None:
    fetched = candles_from_closes([100.0, 101.0, 102.0])
    history: list[Candle] = []
    merge_history(history, fetched)
    merge_history(history, fetched)
    assert [c.close for c in history] == [100.0, 101.0, 102.0]


def test_aggregate_candles_buckets_ohlcv() -> None:
    candles = candles_from_closes([100.0, 103.0, 101.0, 104.0, 102.0, 99.0])
    htf = aggregate_candles(candles, 15)
    assert len(htf) == 2
    first, second = htf
    assert first.timestamp == START
    assert first.open == candles[0].open
    assert first.close == 101.0
    assert first.high == max(c.high for c in candles[:3])
    assert first.low == min(c.low for c in candles[:3])
    assert first.volume == 3.0
    assert second.timestamp == START + FIFTEEN_MIN
    assert second.close == 99.0
