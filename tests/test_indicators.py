from __future__ import annotations

import pytest
from helpers import candles_from_closes

from tradesim.strategy.indicators import adx, atr, ema, momentum, rsi, sma


def test_ema_seeds_with_sma() -> None:
    values = ema([1.0, 2.0, 3.0, 4.0, 5.0], 3)
    assert values[:2] == [None, None]
    assert values[2] == pytest.approx(2.0)
    assert values[3] == pytest.approx(3.0)
    assert values[4] == pytest.approx(4.0)


def test_ema_short_input_is_all_none() -> None:
    assert ema([1.0, 2.0], 3) == [None, None]
    assert ema([], 3) == []


def test_sma() -> None:
    assert sma([1.0, 2.0, 3.0, 4.0], 2) == [None, 1.5, 2.5, 3.5]


def test_rsi_extremes() -> None:
    rising = [float(i) for i in range(30)]
    falling = list(reversed(rising))
    flat = [5.0] * 30
    assert rsi(rising, 14)[-1] == pytest.approx(100.0)
    assert rsi(falling, 14)[-1] == pytest.approx(0.0)
    assert rsi(flat, 14)[-1] == pytest.approx(50.0)
    assert rsi(rising[:14], 14) == [None] * 14


def test_atr_of_constant_range() -> None:
    candles = candles_from_closes([100.0] * 30)
    values = atr(candles, 14)
    assert values[13] is None
    assert values[14] == pytest.approx(1.0)
    assert values[-1] == pytest.approx(1.0)


def test_adx_needs_two_periods() -> None:
    short = candles_from_closes([100.0 + i for i in range(20)])
    assert all(value is None for value in adx(short, 14).adx)

    trending = candles_from_closes([100.0 + i for i in range(60)])
    series = adx(trending, 14)
    assert series.adx[-1] is not None
    assert series.adx[-1] > 50
    assert series.plus_di[-1] > series.minus_di[-1]


def test_momentum() -> None:
    assert momentum([1.0, 2.0, 4.0], 2) == 3.0
    assert momentum([1.0, 2.0], 2) is None
