from __future__ import annotations

import math
from datetime import timedelta

import pytest
from helpers import START, long_trade, short_trade

from tradesim.portfolio.models import EquityPoint, TradeStatus
from tradesim.reporting.diagnostics import EntryFunnel
from tradesim.reporting.metrics import compute_drawdown_series, compute_metrics, profit_factor, realized_r


def _equity(values: list[float]) -> list[EquityPoint]:
    return [EquityPoint(START + timedelta(minutes=5 * i), value, value) for i, value in enumerate(values)]


def _closed(trade, pnl: float, minutes: int = 30, fee: float = 0.5):
    return trade.clone(
        pnl=pnl,
        exit_price=trade.entry_price,
        entry_fee=fee,
        exit_fee=fee,
        status=TradeStatus.CLOSED,
        closed_at=trade.opened_at + timedelta(minutes=minutes),
    )


def test_drawdown_series_tracks_running_peak() -> None:
    series = compute_drawdown_series(_equity([100.0, 120.0, 90.0, 130.0, 117.0]))

    assert [point["peak"] for point in series] == [100.0, 120.0, 120.0, 130.0, 130.0]
    assert series[2]["drawdown"] == 30.0
    assert series[2]["drawdownPercent"] == pytest.approx(25.0)
    assert series[4]["drawdownPercent"] == pytest.approx(10.0)
    assert series[1]["timestamp"] == int((START + timedelta(minutes=5)).timestamp() * 1000)
    assert all(point["drawdown"] >= 0 for point in series)


def test_profit_factor_edges() -> None:
    assert profit_factor(30.0, -10.0) == 3.0
    assert math.isinf(profit_factor(5.0, 0.0))
    assert profit_factor(0.0, 0.0) == 0.0


def test_realized_r_uses_risk_at_entry() -> None:
    # entry 100, stop 95: 5 per unit at risk
    assert realized_r(_closed(long_trade(quantity=2.0), 20.0)) == pytest.approx(2.0)
    assert realized_r(_closed(long_trade(stop_loss=None), 20.0)) is None
    assert realized_r(long_trade()) is None


def test_metrics_summary() -> None:
    trades = [
        _closed(long_trade(), 10.0, minutes=60),
        _closed(long_trade(), -5.0, minutes=30),
        _closed(short_trade(), -2.5, minutes=30),
        _closed(long_trade(take_profit=None, stop_loss=None), 7.5, minutes=120),
    ]

    metrics = compute_metrics(trades, _equity([1000.0, 980.0, 1010.0]))

    assert metrics["tradesCount"] == 4
    assert metrics["wins"] == 2 and metrics["losses"] == 2
    assert metrics["winRate"] == 50.0
    assert metrics["totalPnl"] == 10.0
    assert metrics["profitFactor"] == pytest.approx(17.5 / 7.5)
    assert metrics["expectancy"] == pytest.approx(2.5)
    # the last trade has no stop, so it carries no R
    assert metrics["expectancyR"] == pytest.approx((2.0 - 1.0 - 0.5) / 3)
    assert metrics["avgWinR"] == pytest.approx(2.0)
    assert metrics["avgLossR"] == pytest.approx(-0.75)
    assert metrics["payoffRatio"] == pytest.approx(8.75 / 3.75)
    assert metrics["fees"] == 4.0
    assert metrics["avgHoldMinutes"] == pytest.approx(60.0)
    assert metrics["maxConsecutiveLosses"] == 2
    assert metrics["long"] == {"trades": 3, "pnl": 12.5, "winRate": pytest.approx(200 / 3)}
    assert metrics["short"]["trades"] == 1
    assert metrics["maxDrawdown"] == 20.0
    assert metrics["maxDrawdownPercent"] == pytest.approx(2.0)
    assert metrics["equityEnd"] == 1010.0


def test_metrics_without_trades() -> None:
    metrics = compute_metrics([], [])
    assert metrics["tradesCount"] == 0
    assert metrics["winRate"] == 0.0
    assert metrics["profitFactor"] == 0.0
    assert metrics["expectancyR"] == 0.0
    assert metrics["maxDrawdownPercent"] == 0.0


def test_funnel_merge_and_serialization() -> None:
    first = EntryFunnel()
    first.cycles = 3
    first.record_hold("NO_SETUP")
    first.record_exit("TAKE_PROFIT")
    second = EntryFunnel()
    second.cycles = 2
    second.record_hold("NO_SETUP")
    second.record_block("MAX_OPEN_TRADES")
    second.record_exit("PARTIAL_TP1", partial=True)

    first.merge(second)
    payload = first.to_dict()

    assert payload["cycles"] == 5
    assert payload["tradesClosed"] == 1
    assert payload["partialCloses"] == 1
    assert payload["topHoldReasons"] == {"NO_SETUP": 2}
    assert payload["blockedReasons"] == {"MAX_OPEN_TRADES": 1}
    assert payload["exitReasons"] == {"PARTIAL_TP1": 1, "TAKE_PROFIT": 1}
