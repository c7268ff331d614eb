from __future__ import annotations

import math
from datetime import timedelta

import pytest
from helpers import START

from tradesim.config import RiskConfig
from tradesim.portfolio.ledger import Portfolio
from tradesim.portfolio.models import TradeSide
from tradesim.risk import RiskOverrides, RiskState, can_open_trade, fixed_stop_levels, size_position

NOW = START + timedelta(hours=12)


def _state(**changes: object) -> RiskState:
    values: dict[str, object] = {
        "balance": 10000.0,
        "peak_balance": 10000.0,
        "trades_today": 0,
        "daily_start_balance": 10000.0,
        "last_trade_closed_at": None,
    }
    values.update(changes)
    return RiskState(**values)  # type: ignore[arg-type]


def test_fresh_account_is_admitted() -> None:
    check = can_open_trade(_state(), RiskConfig(), now=NOW)
    assert check.allowed is True
    assert check.reason is None


def test_drawdown_beyond_limit_blocks() -> None:
    check = can_open_trade(_state(balance=8900.0, daily_start_balance=8900.0), RiskConfig(), now=NOW)
    assert check.allowed is False
    assert check.reason_codes == ["MAX_DRAWDOWN_EXCEEDED"]
    assert check.reason == "Max drawdown exceeded"


def test_daily_loss_blocks() -> None:
    check = can_open_trade(_state(balance=9400.0), RiskConfig(), now=NOW)
    assert check.reason_codes == ["MAX_DAILY_LOSS_EXCEEDED"]


def test_trades_per_day_blocks_and_override_relaxes() -> None:
    state = _state(trades_today=3)
    assert can_open_trade(state, RiskConfig(), now=NOW).reason_codes == ["MAX_TRADES_PER_DAY"]
    relaxed = can_open_trade(state, RiskConfig(), RiskOverrides(max_trades_per_day=5), now=NOW)
    assert relaxed.allowed is True


def test_cooldown_is_checked_first() -> None:
    state = _state(
        balance=8000.0,
        trades_today=10,
        last_trade_closed_at=NOW - timedelta(minutes=5),
    )
    check = can_open_trade(state, RiskConfig(trade_cooldown_seconds=600), now=NOW)
    assert check.reason_codes == ["TRADE_COOLDOWN"]
    assert check.metadata["cooldown_seconds"] == 600

    later = can_open_trade(
        _state(last_trade_closed_at=NOW - timedelta(minutes=11)),
        RiskConfig(trade_cooldown_seconds=600),
        now=NOW,
    )
    assert later.allowed is True


def test_risk_state_uses_account_value() -> None:
    portfolio = Portfolio(10000.0, fee_rate=0.0, slippage=0.0, started_at=START)
    state = RiskState.from_portfolio(portfolio, NOW)
    assert state.balance == pytest.approx(10000.0)
    assert state.peak_balance == pytest.approx(10000.0)
    assert state.trades_today == 0


def test_size_position_risk_based() -> None:
    assert size_position(10000.0, 100.0, 98.0, 0.01) == pytest.approx(50.0)
    assert size_position(10000.0, 100.0, 102.0, 0.01) == pytest.approx(50.0)


def test_size_position_capital_cap() -> None:
    assert size_position(10000.0, 100.0, 98.0, 0.01, max_capital_fraction=0.05) == pytest.approx(5.0)


@pytest.mark.parametrize(
    "balance, entry, stop, risk",
    [
        (10000.0, 100.0, 100.0, 0.01),
        (10000.0, 100.0, None, 0.01),
        (0.0, 100.0, 98.0, 0.01),
        (-5.0, 100.0, 98.0, 0.01),
        (10000.0, 0.0, 1.0, 0.01),
        (10000.0, math.nan, 98.0, 0.01),
        (10000.0, 100.0, math.inf, 0.01),
        (10000.0, 100.0, 98.0, 0.0),
    ],
)
def test_size_position_degenerate_inputs_return_zero(balance, entry, stop, risk) -> None:
    assert size_position(balance, entry, stop, risk) == 0.0


def test_fixed_stop_levels() -> None:
    limits = RiskConfig(stop_loss_pct=0.02, take_profit_pct=0.04)
    assert fixed_stop_levels(100.0, TradeSide.LONG, limits) == pytest.approx((98.0, 104.0))
    assert fixed_stop_levels(100.0, TradeSide.SHORT, limits) == pytest.approx((102.0, 96.0))
