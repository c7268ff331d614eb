from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import date, datetime

from tradesim.clock import ensure_utc, start_of_day, trading_day
from tradesim.execution import fills
from tradesim.portfolio.models import EquityPoint, PortfolioSummary, Trade, TradeStatus

LOGGER = logging.getLogger(__name__)

BALANCE_DECIMALS = 8


class Portfolio:
    """Cash ledger, open and closed trades, and the equity curve of one run.

    Only this class changes ``balance``. Longs debit the entry notional plus fee
    and credit the exit notional minus fee; shorts do the opposite, so equity is
    always ``balance + sum(signed notional at mark)``.
    """

    def __init__(
        self,
        initial_balance: float,
        *,
        fee_rate: float = 0.001,
        slippage: float = 0.0005,
        started_at: datetime | None = None,
    ):
        if initial_balance <= 0:
            raise ValueError("initial_balance must be > 0")
        self.initial_balance = float(initial_balance)
        self.balance = float(initial_balance)
        self.peak_balance = float(initial_balance)
        self.fee_rate = fee_rate
        self.slippage = slippage
        self.open_trades: list[Trade] = []
        self.closed_trades: list[Trade] = []
        self.equity_curve: list[EquityPoint] = []
        self.daily_start_balance = float(initial_balance)
        self.last_day_reset: date | None = None
        self.last_trade_closed_at: datetime | None = None
        self._sequence = 0
        if started_at is not None:
            self.last_day_reset = trading_day(started_at)
            self.equity_curve.append(EquityPoint(ensure_utc(started_at), self.balance, self.balance))

    def next_trade_id(self, symbol: str) -> str:
        self._sequence += 1
        return f"{symbol.replace('/', '')}-{self._sequence:05d}"

    def open_trades_for(self, symbol: str) -> list[Trade]:
        return [trade for trade in self.open_trades if trade.symbol == symbol]

    def get_open_trade(self, trade_id: str) -> Trade:
        for trade in self.open_trades:
            if trade.id == trade_id:
                return trade
        raise KeyError(f"Unknown open trade {trade_id}")

    def reset_daily_if_needed(self, now: datetime) -> bool:
        day = trading_day(now)
        if self.last_day_reset is None or day > self.last_day_reset:
            self.daily_start_balance = self.account_value()
            self.last_day_reset = day
            return True
        return False

    def trades_today(self, now: datetime) -> int:
        day_start = start_of_day(now)
        return sum(
            1
            for trade in self.closed_trades
            if trade.status is TradeStatus.CLOSED and trade.closed_at is not None and trade.closed_at >= day_start
        )

    def account_value(self) -> float:
        """Cash plus open positions at their entry cost (ignores unrealized PnL)."""
        return self.balance + sum(trade.signed_notional(trade.entry_price) for trade in self.open_trades)

    def add_open_trade(self, trade: Trade, timestamp: datetime | None = None) -> Trade:
        if trade.quantity <= 0:
            raise ValueError("Open trade quantity must be > 0")
        if any(existing.id == trade.id for existing in self.open_trades):
            raise ValueError(f"Trade {trade.id} is already open")
        notional = trade.entry_price * trade.quantity
        if trade.is_long:
            cost = notional + trade.entry_fee
        else:
            cost = -(notional - trade.entry_fee)
        self.open_trades.append(trade)
        self.balance = round(self.balance - cost, BALANCE_DECIMALS)
        LOGGER.info(
            "Opened %s %s qty=%.8f entry=%.8f sl=%s tp=%s id=%s",
            trade.side.value,
            trade.symbol,
            trade.quantity,
            trade.entry_price,
            trade.stop_loss,
            trade.take_profit,
            trade.id,
        )
        self.update_equity_curve(timestamp or trade.opened_at)
        return trade

    def _book_exit(self, record: Trade) -> None:
        notional = (record.exit_price or 0.0) * record.quantity
        if record.is_long:
            proceeds = notional - record.exit_fee
        else:
            proceeds = -(notional + record.exit_fee)
        self.balance = round(self.balance + proceeds, BALANCE_DECIMALS)
        self.peak_balance = max(self.peak_balance, self.balance)
        self.closed_trades.append(record)

    def close_trade(self, trade_id: str, exit_price: float, timestamp: datetime, reason: str) -> Trade:
        trade = self.get_open_trade(trade_id)
        record = fills.close_trade(
            trade,
            exit_price,
            timestamp,
            fee_rate=self.fee_rate,
            slippage=self.slippage,
            reason=reason,
        )
        self.open_trades = [item for item in self.open_trades if item.id != trade_id]
        self._book_exit(record)
        self.last_trade_closed_at = timestamp
        LOGGER.info(
            "Closed %s %s reason=%s exit=%.8f pnl=%.8f id=%s",
            record.side.value,
            record.symbol,
            reason,
            record.exit_price,
            record.pnl,
            record.id,
        )
        self.update_equity_curve(timestamp)
        return record

    def partial_close_trade(
        self,
        trade_id: str,
        quantity: float,
        exit_price: float,
        timestamp: datetime,
        reason: str,
    ) -> Trade:
        """Close ``quantity`` of an open trade and keep the remainder open.

        A slice covering the whole position is booked as a full close.
        """
        trade = self.get_open_trade(trade_id)
        if quantity <= 0:
            raise ValueError("Partial close quantity must be > 0")
        if quantity >= trade.quantity:
            return self.close_trade(trade_id, exit_price, timestamp, reason)
        record = fills.close_trade(
            trade,
            exit_price,
            timestamp,
            fee_rate=self.fee_rate,
            slippage=self.slippage,
            reason=reason,
            partial_quantity=quantity,
        )
        trade.entry_fee -= record.entry_fee
        trade.quantity = round(trade.quantity - quantity, fills.PRICE_DECIMALS)
        trade.partial_close_done = True
        self._book_exit(record)
        LOGGER.info(
            "Partially closed %s %s qty=%.8f remaining=%.8f reason=%s pnl=%.8f",
            record.side.value,
            record.symbol,
            record.quantity,
            trade.quantity,
            reason,
            record.pnl,
        )
        self.update_equity_curve(timestamp)
        return record

    def equity(self, mark: float | Mapping[str, float] | None = None) -> float:
        total = self.balance
        for trade in self.open_trades:
            if mark is None:
                price = trade.entry_price
            elif isinstance(mark, Mapping):
                price = mark.get(trade.symbol, trade.entry_price)
            else:
                price = mark
            total += trade.signed_notional(price)
        return total

    def update_equity_curve(self, timestamp: datetime, mark: float | Mapping[str, float] | None = None) -> EquityPoint:
        point = EquityPoint(
            timestamp=ensure_utc(timestamp),
            balance=self.balance,
            equity=round(self.equity(mark), BALANCE_DECIMALS),
        )
        if self.equity_curve and point.timestamp < self.equity_curve[-1].timestamp:
            point.timestamp = self.equity_curve[-1].timestamp
        self.equity_curve.append(point)
        return point

    def get_summary(self) -> PortfolioSummary:
        total_pnl = self.balance - self.initial_balance
        pnl_pct = total_pnl / self.initial_balance * 100 if self.initial_balance > 0 else 0.0
        drawdown = (
            (self.peak_balance - self.balance) / self.peak_balance * 100 if self.peak_balance > 0 else 0.0
        )
        return PortfolioSummary(
            balance=self.balance,
            initial_balance=self.initial_balance,
            peak_balance=self.peak_balance,
            equity=self.equity_curve[-1].equity if self.equity_curve else self.balance,
            total_pnl=round(total_pnl, BALANCE_DECIMALS),
            total_pnl_percent=round(pnl_pct, 4),
            max_drawdown=round(max(drawdown, 0.0), 4),
            open_trades=len(self.open_trades),
            closed_trades=len(self.closed_trades),
        )
