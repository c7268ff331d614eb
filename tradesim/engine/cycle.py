from __future__ import annotations

import logging
import math
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
from typing import Protocol

from tradesim.config import RiskConfig
from tradesim.data.candles import Candle
from tradesim.data.feed import clip_to_closed
from tradesim.execution import fills
from tradesim.execution.exits import ExitInstruction, run_exit_pipeline
from tradesim.portfolio.ledger import Portfolio
from tradesim.portfolio.models import EquityPoint, Trade, TradeSide, TradeStatus
from tradesim.reporting.diagnostics import EntryFunnel
from tradesim.risk import RiskCheck, RiskState, can_open_trade, fixed_stop_levels, size_position
from tradesim.strategy.contracts import BaseStrategy, Signal, StrategyContext

LOGGER = logging.getLogger(__name__)


class TradeSink(Protocol):
    def persist_open(self, trade: Trade, mode: str) -> None:
        ...

    def persist_close(self, record: Trade, mode: str) -> None:
        ...


class OrderGateway(Protocol):
    def admit(self, portfolio: Portfolio, now: datetime) -> RiskCheck:
        ...

    def submit_entry(self, trade: Trade) -> str:
        ...

    def submit_exit(self, trade: Trade, quantity: float, price: float, reason: str) -> str:
        ...


def resolve_max_open_trades(strategy: BaseStrategy, configured: int | None) -> int | None:
    if strategy.max_open_trades is not None:
        return strategy.max_open_trades
    return configured


class TradingCycle:
    """One symbol's fixed six-step cycle, shared by backtest, paper and real runs.

    Steps, in order, for the newest closed candle ``history[-1]``:

    1. roll the daily bookkeeping on a new UTC day;
    2. advance strategy state and trailing stops with the previous candle;
    3. run the exit pipeline against the current candle;
    4. evaluate the strategy on data up to and including the current candle;
    5. admit, size and open a trade for an actionable signal;
    6. append an equity point marked at the current close (or a supplied price).

    The candle timestamp is the cycle clock, so a replay of the same candles
    produces the same trades.
    """

    def __init__(
        self,
        *,
        symbol: str,
        strategy: BaseStrategy,
        portfolio: Portfolio,
        risk: RiskConfig,
        ltf_period: timedelta,
        htf_period: timedelta | None = None,
        mode: str = "backtest",
        max_open_trades: int | None = None,
        max_capital_fraction: float | None = None,
        gateway: OrderGateway | None = None,
        persister: TradeSink | None = None,
        funnel: EntryFunnel | None = None,
    ):
        self.symbol = symbol
        self.strategy = strategy
        self.portfolio = portfolio
        self.risk = risk
        self.ltf_period = ltf_period
        self.htf_period = htf_period
        self.mode = mode
        self.max_open_trades = resolve_max_open_trades(strategy, max_open_trades)
        self.max_capital_fraction = max_capital_fraction
        self.gateway = gateway
        self.persister = persister
        self.funnel = funnel or EntryFunnel()
        self.state = strategy.create_state()
        self.last_signal: Signal | None = None

    def run(
        self,
        history: Sequence[Candle],
        htf_history: Sequence[Candle] = (),
        mark_price: float | None = None,
    ) -> Signal | None:
        if not history:
            return None
        self.roll_day(history)
        self.advance_trailing(history)
        self.check_exits(history)
        signal = self.evaluate(history, htf_history)
        self.maybe_open(signal, history)
        self.mark(history, mark_price)
        return signal

    # step 1
    def roll_day(self, history: Sequence[Candle]) -> None:
        now = history[-1].timestamp
        if self.portfolio.reset_daily_if_needed(now):
            LOGGER.debug("Daily reset %s start_balance=%.8f", now.date(), self.portfolio.daily_start_balance)
        self.funnel.cycles += 1

    # step 2
    def advance_trailing(self, history: Sequence[Candle]) -> None:
        if len(history) < 2:
            return
        current, prev = history[-1], history[-2]
        prior = history[:-1]
        self.strategy.advance_state(self.state, prev, prior)
        for trade in self.portfolio.open_trades_for(self.symbol):
            if current.timestamp <= trade.opened_at:
                continue
            trade.candle_count += 1
            if prev.timestamp <= trade.opened_at:
                # the entry candle traded before the fill
                continue
            self.strategy.update_trailing(trade, prev, prior)

    # step 3
    def check_exits(self, history: Sequence[Candle]) -> list[Trade]:
        candle = history[-1]
        open_trades = [trade for trade in self.portfolio.open_trades_for(self.symbol) if candle.timestamp > trade.opened_at]
        if not open_trades:
            return []
        context = self.strategy.exit_context(candle, history, self.state)
        checkers = self.strategy.exit_checkers()
        records: list[Trade] = []
        for trade in open_trades:
            instruction = run_exit_pipeline(trade, context, checkers)
            if instruction is None:
                continue
            records.append(self.execute_exit(trade, instruction, candle.timestamp))
        return records

    def execute_exit(self, trade: Trade, instruction: ExitInstruction, timestamp: datetime) -> Trade:
        if instruction.is_partial:
            quantity = float(instruction.partial_quantity or 0.0)
            price = instruction.partial_price if instruction.partial_price is not None else instruction.exit_price
            if self.gateway is not None:
                self.gateway.submit_exit(trade, min(quantity, trade.quantity), price, instruction.reason)
            record = self.portfolio.partial_close_trade(trade.id, quantity, price, timestamp, instruction.reason)
        else:
            if self.gateway is not None:
                self.gateway.submit_exit(trade, trade.quantity, instruction.exit_price, instruction.reason)
            record = self.portfolio.close_trade(trade.id, instruction.exit_price, timestamp, instruction.reason)
        full_close = record.status is TradeStatus.CLOSED
        self.funnel.record_exit(instruction.reason, partial=not full_close)
        if full_close:
            self.strategy.on_trade_closed(record, self.state)
        if self.persister is not None:
            self.persister.persist_close(record, self.mode)
        return record

    def close_all(self, price: float, timestamp: datetime, reason: str) -> list[Trade]:
        records = []
        for trade in list(self.portfolio.open_trades_for(self.symbol)):
            records.append(self.execute_exit(trade, ExitInstruction(price, reason), timestamp))
        return records

    # step 4
    def strategy_context(self, history: Sequence[Candle], htf_history: Sequence[Candle] = ()) -> StrategyContext:
        candle = history[-1]
        htf: Sequence[Candle] = htf_history
        if self.htf_period is not None and htf_history:
            htf = clip_to_closed(htf_history, candle.timestamp + self.ltf_period, self.htf_period)
        state = RiskState.from_portfolio(self.portfolio, candle.timestamp)
        drawdown = (state.peak_balance - state.balance) / state.peak_balance if state.peak_balance > 0 else 0.0
        return StrategyContext(
            symbol=self.symbol,
            htf_candles=htf,
            open_trades=tuple(self.portfolio.open_trades_for(self.symbol)),
            state=self.state,
            balance=state.balance,
            drawdown_exceeded=drawdown >= self.risk.max_drawdown,
        )

    def evaluate(self, history: Sequence[Candle], htf_history: Sequence[Candle] = ()) -> Signal:
        signal = self.strategy.evaluate(history, self.strategy_context(history, htf_history))
        if signal.is_hold:
            self.funnel.record_hold(signal.reason)
        self.last_signal = signal
        return signal

    # step 5
    def _block(self, counter: str, reason: str) -> None:
        setattr(self.funnel, counter, getattr(self.funnel, counter) + 1)
        self.funnel.record_block(reason)

    def _quantity(self, signal: Signal, side: TradeSide, stop_loss: float) -> float:
        base = self.portfolio.account_value()
        sizing = signal.sizing
        if sizing is not None and sizing.quantity is not None:
            quantity = float(sizing.quantity)
            if self.max_capital_fraction is not None and signal.price > 0:
                quantity = min(quantity, self.max_capital_fraction * base / signal.price)
        else:
            risk_percent = (
                sizing.risk_percent if sizing is not None and sizing.risk_percent else self.risk.risk_per_trade
            )
            quantity = size_position(base, signal.price, stop_loss, risk_percent, self.max_capital_fraction)
        if side is TradeSide.LONG and quantity > 0:
            unit_cost = signal.price * (1 + self.portfolio.slippage) * (1 + self.portfolio.fee_rate)
            quantity = min(quantity, max(self.portfolio.balance, 0.0) / unit_cost)
        if not math.isfinite(quantity) or quantity <= 0:
            return 0.0
        return math.floor(quantity * 1e8) / 1e8

    def maybe_open(self, signal: Signal | None, history: Sequence[Candle]) -> Trade | None:
        if signal is None or signal.side is None:
            return None
        side = signal.side
        now = history[-1].timestamp
        self.funnel.attempted += 1

        open_count = len(self.portfolio.open_trades_for(self.symbol))
        if self.max_open_trades is not None and open_count >= self.max_open_trades:
            self._block("blocked_open_trade", "MAX_OPEN_TRADES")
            return None

        check = can_open_trade(
            RiskState.from_portfolio(self.portfolio, now),
            self.risk,
            self.strategy.risk_overrides(),
            now=now,
        )
        if check.allowed and self.gateway is not None:
            check = self.gateway.admit(self.portfolio, now)
        if not check.allowed:
            self._block("blocked_risk", check.reason_codes[0] if check.reason_codes else "RISK")
            LOGGER.debug("Entry blocked %s %s: %s", self.symbol, signal.action, check.reason)
            return None

        stop_loss, take_profit = signal.stop_loss, signal.take_profit
        if stop_loss is None:
            stop_loss, default_tp = fixed_stop_levels(signal.price, side, self.risk)
            take_profit = default_tp if take_profit is None else take_profit

        quantity = self._quantity(signal, side, stop_loss)
        if quantity <= 0:
            self._block("blocked_size", "ZERO_SIZE")
            LOGGER.debug("Entry skipped %s %s: position size is 0", self.symbol, signal.action)
            return None

        trade = fills.open_trade(
            symbol=self.symbol,
            side=side,
            price=signal.price,
            quantity=quantity,
            timestamp=now,
            fee_rate=self.portfolio.fee_rate,
            slippage=self.portfolio.slippage,
            stop_loss=stop_loss,
            take_profit=take_profit,
            take_profit1=signal.take_profit1,
            partial_close_pct=self.strategy.partial_close_pct,
            strategy=self.strategy.name,
            atr=signal.atr,
            payload=self.strategy.trade_payload(signal, self.state),
            trade_id=self.portfolio.next_trade_id(self.symbol),
        )
        if self.gateway is not None:
            self.gateway.submit_entry(trade)
        self.portfolio.add_open_trade(trade, now)
        self.strategy.on_trade_opened(trade, signal, self.state)
        self.funnel.opened += 1
        if self.persister is not None:
            self.persister.persist_open(trade, self.mode)
        return trade

    # step 6
    def mark(self, history: Sequence[Candle], mark_price: float | Mapping[str, float] | None = None) -> EquityPoint:
        candle = history[-1]
        if mark_price is None:
            mark: float | Mapping[str, float] = {self.symbol: candle.close}
        elif isinstance(mark_price, Mapping):
            mark = mark_price
        else:
            mark = {self.symbol: mark_price}
        return self.portfolio.update_equity_curve(candle.timestamp, mark)
