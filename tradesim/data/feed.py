from __future__ import annotations

from bisect import bisect_right
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone

from tradesim.clock import ensure_utc
from tradesim.data.candles import Candle


def clip_to_closed(series: Sequence[Candle], timestamp: datetime, period: timedelta) -> list[Candle]:
    """Longest prefix of ``series`` whose last candle closed at or before ``timestamp``.

    A candle opened at ``t`` closes at ``t + period``. A still-forming higher
    timeframe candle is never returned, so an empty list means "nothing closed yet"
    and must be read as insufficient data by the caller.
    """
    if not series:
        return []
    cutoff = ensure_utc(timestamp) - period
    open_times = [candle.timestamp for candle in series]
    end = bisect_right(open_times, cutoff)
    return list(series[:end])


def closed_candles(series: Sequence[Candle], now: datetime, period: timedelta) -> list[Candle]:
    """Drop the trailing candle(s) still forming at wall-clock ``now``."""
    return clip_to_closed(series, now, period)


class HtfCursor:
    """Incremental version of :func:`clip_to_closed` for a forward-only loop."""

    def __init__(self, series: Sequence[Candle], period: timedelta):
        self.series = list(series)
        self.period = period
        self._end = 0

    def advance(self, timestamp: datetime, window: int | None = None) -> list[Candle]:
        cutoff = ensure_utc(timestamp) - self.period
        while self._end < len(self.series) and self.series[self._end].timestamp <= cutoff:
            self._end += 1
        start = 0 if window is None else max(0, self._end - window)
        return self.series[start : self._end]

    @property
    def closed_count(self) -> int:
        return self._end


def upsert_candle(history: list[Candle], candle: Candle | None, cap: int = 500) -> list[Candle]:
    """Merge one fetched candle into ``history``.

    The last candle is replaced while its bucket is still open (same timestamp);
    otherwise the candle is appended. Older or duplicate candles are ignored.
    """
    if candle is None:
        return history
    if history and history[-1].timestamp == candle.timestamp:
        history[-1] = candle
    elif not history or candle.timestamp > history[-1].timestamp:
        history.append(candle)
    if len(history) > cap:
        del history[: len(history) - cap]
    return history


def merge_history(history: list[Candle], fetched: Sequence[Candle], cap: int = 500) -> list[Candle]:
    for candle in fetched:
        upsert_candle(history, candle, cap=cap)
    return history


def _bucket_time(dt: datetime, minutes: int) -> datetime:
    unix = int(dt.timestamp())
    size = minutes * 60
    return datetime.fromtimestamp(unix - (unix % size), tz=timezone.utc)


def aggregate_candles(candles: Sequence[Candle], timeframe_minutes: int) -> list[Candle]:
    if not candles:
        return []
    result: list[Candle] = []
    bucket_start = _bucket_time(candles[0].timestamp, timeframe_minutes)
    open_price = candles[0].open
    high = candles[0].high
    low = candles[0].low
    close = candles[0].close
    volume = candles[0].volume

    for candle in candles[1:]:
        current_bucket = _bucket_time(candle.timestamp, timeframe_minutes)
        if current_bucket != bucket_start:
            result.append(Candle(bucket_start, open_price, high, low, close, volume))
            bucket_start = current_bucket
            open_price = candle.open
            high = candle.high
            low = candle.low
            close = candle.close
            volume = candle.volume
            continue
        high = max(high, candle.high)
        low = min(low, candle.low)
        close = candle.close
        volume += candle.volume

    result.append(Candle(bucket_start, open_price, high, low, close, volume))
    return result
