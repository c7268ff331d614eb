from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from tradesim.config import RiskConfig
from tradesim.portfolio.ledger import Portfolio
from tradesim.portfolio.models import TradeSide

REASON_MESSAGES = {
    "TRADE_COOLDOWN": "Trade cooldown active",
    "MAX_TRADES_PER_DAY": "Max trades per day reached",
    "MAX_DRAWDOWN_EXCEEDED": "Max drawdown exceeded",
    "MAX_DAILY_LOSS_EXCEEDED": "Max daily loss exceeded",
}


@dataclass(slots=True)
class RiskCheck:
    allowed: bool
    reason_codes: list[str]
    metadata: dict[str, float | int | str] = field(default_factory=dict)

    @property
    def reason(self) -> str | None:
        if not self.reason_codes:
            return None
        return REASON_MESSAGES.get(self.reason_codes[0], self.reason_codes[0])


@dataclass(slots=True)
class RiskState:
    balance: float
    peak_balance: float
    trades_today: int
    daily_start_balance: float
    last_trade_closed_at: datetime | None = None

    @classmethod
    def from_portfolio(cls, portfolio: Portfolio, now: datetime) -> "RiskState":
        value = portfolio.account_value()
        return cls(
            balance=value,
            peak_balance=max(portfolio.peak_balance, value),
            trades_today=portfolio.trades_today(now),
            daily_start_balance=portfolio.daily_start_balance,
            last_trade_closed_at=portfolio.last_trade_closed_at,
        )


@dataclass(slots=True, frozen=True)
class RiskOverrides:
    max_trades_per_day: int | None = None
    trade_cooldown_seconds: int | None = None
    max_drawdown: float | None = None
    max_daily_loss: float | None = None


def _pick(override: float | int | None, default: float | int) -> float | int:
    return default if override is None else override


def can_open_trade(
    state: RiskState,
    limits: RiskConfig,
    overrides: RiskOverrides | None = None,
    *,
    now: datetime,
) -> RiskCheck:
    """Admission check; the first failing rule decides the reason.

    Order: cooldown, trades today, drawdown, daily loss.
    """
    overrides = overrides or RiskOverrides()
    cooldown = int(_pick(overrides.trade_cooldown_seconds, limits.trade_cooldown_seconds))
    max_trades = int(_pick(overrides.max_trades_per_day, limits.max_trades_per_day))
    max_drawdown = float(_pick(overrides.max_drawdown, limits.max_drawdown))
    max_daily_loss = float(_pick(overrides.max_daily_loss, limits.max_daily_loss))

    if state.last_trade_closed_at is not None and cooldown > 0:
        elapsed = now - state.last_trade_closed_at
        if elapsed < timedelta(seconds=cooldown):
            return RiskCheck(
                False,
                ["TRADE_COOLDOWN"],
                {"elapsed_seconds": elapsed.total_seconds(), "cooldown_seconds": cooldown},
            )

    if state.trades_today >= max_trades:
        return RiskCheck(False, ["MAX_TRADES_PER_DAY"], {"trades_today": state.trades_today, "limit": max_trades})

    drawdown = (state.peak_balance - state.balance) / state.peak_balance if state.peak_balance > 0 else 0.0
    if drawdown >= max_drawdown:
        return RiskCheck(False, ["MAX_DRAWDOWN_EXCEEDED"], {"drawdown": drawdown, "limit": max_drawdown})

    daily_loss = (
        (state.daily_start_balance - state.balance) / state.daily_start_balance
        if state.daily_start_balance > 0
        else 0.0
    )
    if daily_loss >= max_daily_loss:
        return RiskCheck(False, ["MAX_DAILY_LOSS_EXCEEDED"], {"daily_loss": daily_loss, "limit": max_daily_loss})

    return RiskCheck(True, [], {"drawdown": drawdown, "daily_loss": daily_loss})


def size_position(
    balance: float,
    entry_price: float,
    stop_loss: float | None,
    risk_percent: float,
    max_capital_fraction: float | None = None,
) -> float:
    """Quantity risking ``risk_percent`` of ``balance`` between entry and stop.

    Returns 0.0 for any degenerate input; callers skip the entry on 0.
    """
    values = (balance, entry_price, risk_percent)
    if stop_loss is None or not all(math.isfinite(value) for value in (*values, stop_loss)):
        return 0.0
    if balance <= 0 or entry_price <= 0 or risk_percent <= 0:
        return 0.0
    distance = abs(entry_price - stop_loss)
    if distance <= 0:
        return 0.0
    quantity = balance * risk_percent / distance
    if max_capital_fraction is not None:
        if max_capital_fraction <= 0:
            return 0.0
        quantity = min(quantity, max_capital_fraction * balance / entry_price)
    if not math.isfinite(quantity) or quantity <= 0:
        return 0.0
    return quantity


def fixed_stop_levels(price: float, side: TradeSide, limits: RiskConfig) -> tuple[float, float]:
    """Percent stop-loss and take-profit around ``price`` from the risk section."""
    if side is TradeSide.LONG:
        return price * (1 - limits.stop_loss_pct), price * (1 + limits.take_profit_pct)
    return price * (1 + limits.stop_loss_pct), price * (1 - limits.take_profit_pct)
