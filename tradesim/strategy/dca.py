from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from tradesim.data.candles import Candle
from tradesim.execution.exits import ExitChecker, ExitContext, ExitInstruction, track_extrema
from tradesim.portfolio.models import DcaPayload, Trade
from tradesim.strategy.contracts import BaseStrategy, Signal, SizingHint, StrategyContext
from tradesim.strategy.indicators import adx, atr, ema, last_value, rsi

EMA200_PERIOD = 200
EMA50_PERIOD = 50
EMA20_PERIOD = 20
RSI_PERIOD = 14
ATR_PERIOD = 14
ADX_PERIOD = 14
MIN_CANDLES = 200
LOOKBACK = 300

RSI_ENTRY_MAX = 40.0
ATR_PERCENT_MIN = 0.2
ADX_MIN = 15.0
EMA50_ATR_BAND = 1.0
DCA_ATR_LEVELS = (1.0, 2.0, 3.0)
DCA_MULTIPLIERS = (1.0, 1.5, 2.0, 2.5)
MAX_ENTRIES = 4
MAX_CAPITAL_PERCENT = 0.08

EXIT_RSI_MIN = 60.0
EXIT_PROFIT_PERCENT = 0.03
TRAILING_ACTIVATION_PERCENT = 0.02
TRAILING_STOP_PERCENT = 0.02
STOP_LOSS_PERCENT = 0.08
MAX_CYCLE_DURATION = timedelta(hours=24)


@dataclass(slots=True)
class DcaEntry:
    level: int
    price: float
    quantity: float
    timestamp: datetime


@dataclass(slots=True)
class DcaState:
    """One accumulation cycle: its entries, start time and cycle-level trailing state."""

    cycle_id: str | None = None
    entries: list[DcaEntry] = field(default_factory=list)
    cycle_started_at: datetime | None = None
    trailing_active: bool = False
    highest_price: float = 0.0
    open_trade_ids: set[str] = field(default_factory=set)

    @property
    def active(self) -> bool:
        return bool(self.entries)

    @property
    def average_entry(self) -> float | None:
        total_qty = sum(entry.quantity for entry in self.entries)
        if total_qty <= 0:
            return None
        return sum(entry.price * entry.quantity for entry in self.entries) / total_qty

    @property
    def total_quantity(self) -> float:
        return sum(entry.quantity for entry in self.entries)

    def reset(self) -> None:
        self.cycle_id = None
        self.entries = []
        self.cycle_started_at = None
        self.trailing_active = False
        self.highest_price = 0.0
        self.open_trade_ids = set()


def level_quantity(balance: float, price: float, level_index: int) -> float:
    if balance <= 0 or price <= 0:
        return 0.0
    base_notional = balance * MAX_CAPITAL_PERCENT / sum(DCA_MULTIPLIERS)
    return round(base_notional / price * DCA_MULTIPLIERS[level_index], 8)


def _exit_indicators(history: Sequence[Candle]) -> dict[str, float | None]:
    if len(history) < MIN_CANDLES:
        return {"rsi": None, "ema20": None}
    closes = [candle.close for candle in history[-LOOKBACK:]]
    return {"rsi": last_value(rsi(closes, RSI_PERIOD)), "ema20": last_value(ema(closes, EMA20_PERIOD))}


class DcaStrategy(BaseStrategy):
    """Long-only cost averaging: up to four entries a whole cycle exits together."""

    name = "dca"
    min_candles = MIN_CANDLES
    max_open_trades = MAX_ENTRIES

    def create_state(self) -> DcaState:
        return DcaState()

    def evaluate(self, candles: Sequence[Candle], context: StrategyContext) -> Signal:
        state = context.state if isinstance(context.state, DcaState) else DcaState()
        short = self.insufficient(candles)
        if short is not None:
            return short
        window = list(candles[-LOOKBACK:])
        closes = [candle.close for candle in window]
        ema200 = last_value(ema(closes, EMA200_PERIOD))
        ema50 = last_value(ema(closes, EMA50_PERIOD))
        rsi_now = last_value(rsi(closes, RSI_PERIOD))
        atr_value = last_value(atr(window, ATR_PERIOD))
        adx_value = last_value(adx(window, ADX_PERIOD).adx)
        if None in (ema200, ema50, rsi_now, atr_value, adx_value):
            return self.hold(candles, "INDICATOR_NAN")

        price = window[-1].close
        atr_percent = atr_value / price * 100 if price > 0 else 0.0
        diagnostics = {
            "ema200": ema200,
            "ema50": ema50,
            "rsi": rsi_now,
            "atr": atr_value,
            "atr_percent": atr_percent,
            "adx": adx_value,
            "entries": len(state.entries),
        }
        if context.drawdown_exceeded:
            reason = "DRAWDOWN_BLOCK_NO_NEW_LEVELS" if state.active else "DRAWDOWN_BLOCK_NO_ENTRY"
            return self.hold(candles, reason, **diagnostics)

        if not state.active:
            if price <= ema200:
                return self.hold(candles, "BELOW_EMA200", **diagnostics)
            if abs(price - ema50) > atr_value * EMA50_ATR_BAND:
                return self.hold(candles, "NOT_NEAR_EMA50", **diagnostics)
            if rsi_now >= RSI_ENTRY_MAX:
                return self.hold(candles, "RSI_TOO_HIGH", **diagnostics)
            if atr_percent <= ATR_PERCENT_MIN:
                return self.hold(candles, "ATR_TOO_LOW", **diagnostics)
            if adx_value <= ADX_MIN:
                return self.hold(candles, "ADX_TOO_LOW", **diagnostics)
            return self._level_signal(window[-1], 0, context.balance, "RSI_EMA50_TOUCH", None, diagnostics)

        first_price = state.entries[0].price
        level_index = len(state.entries)
        if level_index >= MAX_ENTRIES:
            return self.hold(candles, "MAX_ENTRIES_REACHED", **diagnostics)
        atr_drop = DCA_ATR_LEVELS[level_index - 1]
        if price > first_price - atr_drop * atr_value:
            return self.hold(candles, "NO_ENTRY_CONDITION", **diagnostics)
        return self._level_signal(
            window[-1],
            level_index,
            context.balance,
            f"{atr_drop:g}_ATR_DROP",
            state,
            diagnostics,
        )

    def _level_signal(
        self,
        candle: Candle,
        level_index: int,
        balance: float,
        entry_reason: str,
        state: DcaState | None,
        diagnostics: dict[str, Any],
    ) -> Signal:
        price = candle.close
        quantity = level_quantity(balance, price, level_index)
        if quantity <= 0:
            return self.hold([candle], "ZERO_QUANTITY", **diagnostics)
        level = level_index + 1
        entries_qty = state.total_quantity if state else 0.0
        entries_cost = (state.average_entry or 0.0) * entries_qty if state else 0.0
        projected_average = (entries_cost + price * quantity) / (entries_qty + quantity)
        return Signal(
            action=f"DCA_BUY_{level}",
            price=price,
            timestamp=candle.timestamp,
            stop_loss=projected_average * (1 - STOP_LOSS_PERCENT),
            take_profit=projected_average * (1 + EXIT_PROFIT_PERCENT),
            atr=diagnostics.get("atr"),
            sizing=SizingHint(quantity=quantity),
            diagnostics={"reason": f"DCA_LEVEL_{level}_{entry_reason}", **diagnostics},
            payload={"level": level},
        )

    def trade_payload(self, signal: Signal, state: Any) -> DcaPayload:
        cycle_id = state.cycle_id if isinstance(state, DcaState) and state.cycle_id else ""
        return DcaPayload(cycle_id=cycle_id, level=int(signal.payload.get("level", 1)))

    def on_trade_opened(self, trade: Trade, signal: Signal, state: Any) -> None:
        if not isinstance(state, DcaState) or not isinstance(trade.payload, DcaPayload):
            return
        if not state.active:
            state.cycle_id = trade.id
            state.cycle_started_at = trade.opened_at
        trade.payload.cycle_id = state.cycle_id or trade.id
        state.entries.append(DcaEntry(trade.payload.level, trade.entry_price, trade.quantity, trade.opened_at))
        state.open_trade_ids.add(trade.id)
        trade.payload.average_entry = state.average_entry

    def update_trailing(self, trade: Trade, prev_candle: Candle, history: Sequence[Candle]) -> bool:
        # the cycle trails as a whole, see advance_state
        track_extrema(trade, prev_candle)
        return False

    def advance_state(self, state: Any, prev_candle: Candle, history: Sequence[Candle]) -> None:
        if not isinstance(state, DcaState) or not state.active:
            return
        if state.cycle_started_at is not None and prev_candle.timestamp <= state.cycle_started_at:
            return
        average = state.average_entry
        if average is None:
            return
        if prev_candle.high >= average * (1 + TRAILING_ACTIVATION_PERCENT):
            state.trailing_active = True
        if state.trailing_active:
            state.highest_price = max(state.highest_price, prev_candle.high)

    def exit_context(self, candle: Candle, history: Sequence[Candle], state: Any) -> ExitContext:
        return ExitContext(candle=candle, history=history, state=state, indicators=_exit_indicators(history))

    def _cycle_exit(self, trade: Trade, context: ExitContext) -> ExitInstruction | None:
        state = context.state
        if not isinstance(state, DcaState) or not state.active:
            return None
        average = state.average_entry
        if average is None or average <= 0:
            return None
        candle = context.candle
        stop_price = average * (1 - STOP_LOSS_PERCENT)
        if candle.low <= stop_price:
            return ExitInstruction(min(stop_price, candle.open), "STOP_LOSS")
        if state.trailing_active and state.highest_price > 0:
            trail_stop = state.highest_price * (1 - TRAILING_STOP_PERCENT)
            if candle.low <= trail_stop:
                return ExitInstruction(min(trail_stop, candle.open), "TRAILING_STOP")
        target = average * (1 + EXIT_PROFIT_PERCENT)
        if candle.high >= target:
            return ExitInstruction(target, "TAKE_PROFIT")
        rsi_now = context.indicators.get("rsi")
        ema20 = context.indicators.get("ema20")
        if rsi_now is not None and rsi_now > EXIT_RSI_MIN:
            return ExitInstruction(candle.close, "RSI_EXIT")
        if ema20 is not None and candle.close >= ema20:
            return ExitInstruction(candle.close, "EMA20_EXIT")
        if state.cycle_started_at is not None and candle.timestamp - state.cycle_started_at >= MAX_CYCLE_DURATION:
            return ExitInstruction(candle.close, "TIME_EXIT")
        return None

    def exit_checkers(self) -> Sequence[ExitChecker]:
        return (self._cycle_exit,)

    def on_trade_closed(self, trade: Trade, state: Any) -> None:
        if not isinstance(state, DcaState):
            return
        state.open_trade_ids.discard(trade.id)
        if not state.open_trade_ids:
            state.reset()
