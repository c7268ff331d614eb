from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from tradesim.data.candles import Candle


def ema(values: Sequence[float], period: int) -> list[float | None]:
    if not values:
        return []
    if period <= 0:
        raise ValueError("period must be > 0")
    output: list[float | None] = [None] * len(values)
    if len(values) < period:
        return output
    seed = sum(values[:period]) / period
    output[period - 1] = seed
    alpha = 2 / (period + 1)
    prev = seed
    for i in range(period, len(values)):
        prev = (values[i] - prev) * alpha + prev
        output[i] = prev
    return output


def sma(values: Sequence[float], period: int) -> list[float | None]:
    if period <= 0:
        raise ValueError("period must be > 0")
    output: list[float | None] = [None] * len(values)
    running = 0.0
    for i, value in enumerate(values):
        running += value
        if i >= period:
            running -= values[i - period]
        if i >= period - 1:
            output[i] = running / period
    return output


def _wilder(values: Sequence[float], period: int, start: int = 0) -> list[float | None]:
    """Wilder smoothing of ``values[start:]``, aligned to the input indices."""
    output: list[float | None] = [None] * len(values)
    if len(values) - start < period:
        return output
    first = start + period - 1
    prev = sum(values[start : start + period]) / period
    output[first] = prev
    for i in range(first + 1, len(values)):
        prev = (prev * (period - 1) + values[i]) / period
        output[i] = prev
    return output


def rsi(values: Sequence[float], period: int = 14) -> list[float | None]:
    if period <= 0:
        raise ValueError("period must be > 0")
    output: list[float | None] = [None] * len(values)
    if len(values) <= period:
        return output
    gains = [0.0]
    losses = [0.0]
    for i in range(1, len(values)):
        change = values[i] - values[i - 1]
        gains.append(max(change, 0.0))
        losses.append(max(-change, 0.0))
    avg_gain = _wilder(gains, period, start=1)
    avg_loss = _wilder(losses, period, start=1)
    for i in range(period, len(values)):
        gain = avg_gain[i]
        loss = avg_loss[i]
        if gain is None or loss is None:
            continue
        if loss == 0:
            output[i] = 100.0 if gain > 0 else 50.0
            continue
        output[i] = 100.0 - (100.0 / (1.0 + gain / loss))
    return output


def true_range(candles: Sequence[Candle]) -> list[float]:
    output: list[float] = []
    prev_close: float | None = None
    for candle in candles:
        if prev_close is None:
            output.append(candle.high - candle.low)
        else:
            output.append(
                max(
                    candle.high - candle.low,
                    abs(candle.high - prev_close),
                    abs(candle.low - prev_close),
                )
            )
        prev_close = candle.close
    return output


def atr(candles: Sequence[Candle], period: int = 14) -> list[float | None]:
    if period <= 0:
        raise ValueError("period must be > 0")
    if len(candles) <= period:
        return [None] * len(candles)
    # first bar has no previous close, so smoothing starts at index 1
    return _wilder(true_range(candles), period, start=1)


@dataclass(slots=True)
class AdxSeries:
    adx: list[float | None]
    plus_di: list[float | None]
    minus_di: list[float | None]


def adx(candles: Sequence[Candle], period: int = 14) -> AdxSeries:
    size = len(candles)
    empty = AdxSeries([None] * size, [None] * size, [None] * size)
    if period <= 0:
        raise ValueError("period must be > 0")
    if size < 2 * period + 1:
        return empty
    plus_dm = [0.0]
    minus_dm = [0.0]
    for i in range(1, size):
        up_move = candles[i].high - candles[i - 1].high
        down_move = candles[i - 1].low - candles[i].low
        plus_dm.append(up_move if up_move > down_move and up_move > 0 else 0.0)
        minus_dm.append(down_move if down_move > up_move and down_move > 0 else 0.0)
    tr_values = true_range(candles)
    smooth_tr = _wilder(tr_values, period, start=1)
    smooth_plus = _wilder(plus_dm, period, start=1)
    smooth_minus = _wilder(minus_dm, period, start=1)

    plus_di: list[float | None] = [None] * size
    minus_di: list[float | None] = [None] * size
    dx: list[float] = [0.0] * size
    first_dx = period
    for i in range(first_dx, size):
        tr_i = smooth_tr[i]
        if tr_i is None or tr_i == 0:
            plus_di[i] = 0.0
            minus_di[i] = 0.0
            continue
        pdi = 100.0 * (smooth_plus[i] or 0.0) / tr_i
        mdi = 100.0 * (smooth_minus[i] or 0.0) / tr_i
        plus_di[i] = pdi
        minus_di[i] = mdi
        total = pdi + mdi
        dx[i] = 100.0 * abs(pdi - mdi) / total if total > 0 else 0.0
    adx_values = _wilder(dx, period, start=first_dx)
    return AdxSeries(adx=adx_values, plus_di=plus_di, minus_di=minus_di)


def momentum(values: Sequence[float], length: int) -> float | None:
    if len(values) < length + 1:
        return None
    return values[-1] - values[-1 - length]


def last_value(values: Sequence[float | None]) -> float | None:
    """Value at the final index only; ``None`` when it is missing or NaN."""
    if not values:
        return None
    value = values[-1]
    if value is None or math.isnan(value):
        return None
    return value


def last_two(values: Sequence[float | None]) -> tuple[float, float] | None:
    if len(values) < 2:
        return None
    prev, current = values[-2], values[-1]
    if prev is None or current is None:
        return None
    return prev, current
