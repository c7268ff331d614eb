from __future__ import annotations

from datetime import timedelta

import pytest
from helpers import START

from tradesim.execution import fills
from tradesim.portfolio.ledger import Portfolio
from tradesim.portfolio.models import TradeSide, TradeStatus

FEE = 0.001
SLIPPAGE = 0.0005


def _open(
    quantity: float = 1.0,
    price: float = 100.0,
    side: TradeSide = TradeSide.LONG,
    trade_id: str = "BTCUSDT-00001",
    *,
    fee_rate: float = FEE,
    slippage: float = SLIPPAGE,
):
    return fills.open_trade(
        symbol="BTC/USDT",
        side=side,
        price=price,
        quantity=quantity,
        timestamp=START,
        fee_rate=fee_rate,
        slippage=slippage,
        stop_loss=95.0 if side is TradeSide.LONG else 105.0,
        take_profit=110.0 if side is TradeSide.LONG else 90.0,
        trade_id=trade_id,
    )


def test_long_round_trip_pnl_includes_fees_and_slippage() -> None:
    trade = _open()
    assert trade.entry_price == pytest.approx(100.05)
    assert trade.entry_fee == pytest.approx(0.10005)
    assert trade.initial_risk == pytest.approx(5.05)
    assert trade.r_multiple(trade.entry_price + trade.initial_risk) == pytest.approx(1.0)

    record = fills.close_trade(trade, 110.0, START + timedelta(hours=1), fee_rate=FEE, slippage=SLIPPAGE, reason="TAKE_PROFIT")
    assert record.exit_price == pytest.approx(109.945)
    assert record.exit_fee == pytest.approx(0.109945)
    assert record.pnl == pytest.approx(9.895 - 0.10005 - 0.109945, abs=1e-8)
    assert record.status is TradeStatus.CLOSED
    assert record.exit_reason == "TAKE_PROFIT"
    assert trade.status is TradeStatus.OPEN


def test_short_slippage_moves_against_trader() -> None:
    trade = _open(side=TradeSide.SHORT)
    assert trade.entry_price == pytest.approx(99.95)
    assert trade.initial_risk == pytest.approx(5.05)
    assert trade.r_multiple(trade.entry_price - 5.05) == pytest.approx(1.0)
    record = fills.close_trade(trade, 90.0, START + timedelta(hours=1), fee_rate=FEE, slippage=SLIPPAGE, reason="TAKE_PROFIT")
    assert record.exit_price == pytest.approx(90.045)
    expected = (99.95 - 90.045) - trade.entry_fee - 90.045 * FEE
    assert record.pnl == pytest.approx(expected, abs=1e-8)


def test_ledger_balance_matches_pnl_after_close() -> None:
    portfolio = Portfolio(10000.0, fee_rate=FEE, slippage=SLIPPAGE, started_at=START)
    trade = _open()
    portfolio.add_open_trade(trade, START)
    assert portfolio.balance == pytest.approx(10000.0 - 100.05 - 0.10005)
    assert portfolio.equity({"BTC/USDT": 100.05}) == pytest.approx(10000.0 - 0.10005)

    record = portfolio.close_trade(trade.id, 110.0, START + timedelta(hours=1), "TAKE_PROFIT")
    assert portfolio.open_trades == []
    assert portfolio.closed_trades == [record]
    assert portfolio.balance == pytest.approx(10000.0 + record.pnl, abs=1e-6)
    assert portfolio.peak_balance == pytest.approx(portfolio.balance)
    assert portfolio.last_trade_closed_at == START + timedelta(hours=1)


def test_short_ledger_round_trip() -> None:
    portfolio = Portfolio(10000.0, fee_rate=FEE, slippage=SLIPPAGE)
    trade = _open(side=TradeSide.SHORT)
    portfolio.add_open_trade(trade, START)
    record = portfolio.close_trade(trade.id, 95.0, START + timedelta(hours=1), "TAKE_PROFIT")
    assert record.pnl > 0
    assert portfolio.balance == pytest.approx(10000.0 + record.pnl, abs=1e-6)


def test_partial_close_splits_quantity_and_fees() -> None:
    portfolio = Portfolio(10000.0, fee_rate=FEE, slippage=SLIPPAGE)
    trade = _open(quantity=10.0)
    portfolio.add_open_trade(trade, START)
    when = START + timedelta(minutes=30)

    partial = portfolio.partial_close_trade(trade.id, 5.0, 105.0, when, "PARTIAL_TP1")
    assert partial.status is TradeStatus.PARTIAL
    assert partial.quantity == pytest.approx(5.0)
    assert partial.id == f"{trade.id}-p{int(when.timestamp())}"
    assert partial.parent_id == trade.id
    assert partial.entry_fee == pytest.approx(0.50025)
    assert partial.pnl == pytest.approx(23.4625125, abs=1e-6)

    remaining = portfolio.get_open_trade(trade.id)
    assert remaining.quantity == pytest.approx(5.0)
    assert remaining.entry_fee == pytest.approx(0.50025)
    assert remaining.partial_close_done is True

    final = portfolio.close_trade(trade.id, 110.0, when + timedelta(minutes=30), "TAKE_PROFIT")
    assert final.status is TradeStatus.CLOSED
    total_pnl = partial.pnl + final.pnl
    assert portfolio.balance == pytest.approx(10000.0 + total_pnl, abs=1e-6)


def test_partial_close_of_whole_position_is_full_close() -> None:
    portfolio = Portfolio(10000.0, fee_rate=FEE, slippage=SLIPPAGE)
    trade = _open(quantity=2.0)
    portfolio.add_open_trade(trade, START)
    record = portfolio.partial_close_trade(trade.id, 2.0, 105.0, START + timedelta(minutes=5), "PARTIAL_TP1")
    assert record.status is TradeStatus.CLOSED
    assert portfolio.open_trades == []


def test_ledger_rejects_duplicates_and_unknown_ids() -> None:
    portfolio = Portfolio(10000.0)
    trade = _open()
    portfolio.add_open_trade(trade)
    with pytest.raises(ValueError):
        portfolio.add_open_trade(trade)
    with pytest.raises(KeyError):
        portfolio.close_trade("missing", 100.0, START, "STOP_LOSS")
    with pytest.raises(ValueError):
        Portfolio(0.0)


def test_sequential_trade_ids() -> None:
    portfolio = Portfolio(1000.0)
    assert portfolio.next_trade_id("BTC/USDT") == "BTCUSDT-00001"
    assert portfolio.next_trade_id("ETH/USDT") == "ETHUSDT-00002"


def test_daily_reset_and_trades_today() -> None:
    portfolio = Portfolio(10000.0, fee_rate=0.0, slippage=0.0, started_at=START)
    assert portfolio.reset_daily_if_needed(START + timedelta(hours=1)) is False

    trade = _open()
    portfolio.add_open_trade(trade, START)
    portfolio.close_trade(trade.id, 101.0, START + timedelta(hours=2), "TAKE_PROFIT")
    assert portfolio.trades_today(START + timedelta(hours=3)) == 1

    next_day = START + timedelta(days=1, minutes=5)
    assert portfolio.reset_daily_if_needed(next_day) is True
    assert portfolio.daily_start_balance == pytest.approx(portfolio.balance)
    assert portfolio.trades_today(next_day) == 0


def test_equity_curve_is_monotonic_in_time_and_summary_in_percent() -> None:
    portfolio = Portfolio(10000.0, fee_rate=0.0, slippage=0.0, started_at=START)
    portfolio.update_equity_curve(START + timedelta(minutes=10))
    point = portfolio.update_equity_curve(START + timedelta(minutes=5))
    assert point.timestamp == START + timedelta(minutes=10)

    trade = _open(price=100.0, fee_rate=0.0, slippage=0.0)
    portfolio.add_open_trade(trade, START + timedelta(minutes=15))
    portfolio.close_trade(trade.id, 90.0, START + timedelta(minutes=20), "STOP_LOSS")
    summary = portfolio.get_summary()
    assert summary.total_pnl == pytest.approx(-10.0)
    assert summary.total_pnl_percent == pytest.approx(-0.1)
    assert summary.max_drawdown == pytest.approx(0.1)
    assert summary.closed_trades == 1
