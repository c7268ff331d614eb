from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from tradesim.data.candles import Candle
from tradesim.execution.exits import (
    ExitChecker,
    TrailingRule,
    atr_trail_rule,
    check_stop_loss,
    check_take_profit,
    time_exit,
)
from tradesim.portfolio.models import Trade, TrailingPayload
from tradesim.strategy.contracts import (
    BaseStrategy,
    CooldownState,
    Signal,
    SignalAction,
    StrategyContext,
)
from tradesim.strategy.indicators import adx, atr, ema, last_value

EMA_FAST = 50
EMA_SLOW = 200
EMA_TRAIL = 20
ATR_PERIOD = 14
ADX_PERIOD = 14
BREAKOUT_LOOKBACK = 20
PULLBACK_LOOKBACK = 30
PULLBACK_TOLERANCE = 1.002
STOP_LOSS_PERCENT = 0.01
ATR_PERCENT_MIN = 0.003
ATR_TRAIL_MULTIPLIER = 2.0
TIME_EXIT_CANDLES = 50
COOLDOWN_CANDLES = 10
ADX_MIN = 20.0
MOMENTUM_ATR_MULT = 1.2
MIN_CANDLES = 220
LOOKBACK = 300


@dataclass(slots=True)
class BreakoutSetup:
    breakout_index: int
    breakout_range: float
    breakout_strength: float | None
    momentum_ok: bool


def find_breakout_pullback_bounce(
    candles: Sequence[Candle],
    ema20: Sequence[float | None],
    atr_value: float,
) -> BreakoutSetup | None:
    """Latest close above the prior 20-candle high, a later dip to EMA20, and a bullish bounce now."""
    size = len(candles)
    current = size - 1
    if size < BREAKOUT_LOOKBACK + PULLBACK_LOOKBACK:
        return None

    breakout_index = -1
    scan_start = max(BREAKOUT_LOOKBACK, current - PULLBACK_LOOKBACK)
    for index in range(current, scan_start - 1, -1):
        prior_high = max(candle.high for candle in candles[index - BREAKOUT_LOOKBACK : index])
        if candles[index].close > prior_high:
            breakout_index = index
            break
    if breakout_index < 0:
        return None

    pullback_seen = False
    for index in range(breakout_index + 1, current):
        level = ema20[index]
        if level is None:
            continue
        if candles[index].low <= level * PULLBACK_TOLERANCE:
            pullback_seen = True
            break
    if not pullback_seen:
        return None

    last = candles[current]
    ema_now = ema20[current]
    if ema_now is None or last.close <= last.open or last.close <= ema_now:
        return None

    breakout = candles[breakout_index]
    breakout_range = breakout.high - breakout.low
    return BreakoutSetup(
        breakout_index=breakout_index,
        breakout_range=breakout_range,
        breakout_strength=round(breakout_range / atr_value, 4) if atr_value > 0 else None,
        momentum_ok=breakout_range > MOMENTUM_ATR_MULT * atr_value,
    )


def _recent_atr(trade: Trade, history: Sequence[Candle]) -> float | None:
    return last_value(atr(list(history[-LOOKBACK:]), ATR_PERIOD))


class TrendBreakoutStrategy(BaseStrategy):
    """Long-only breakout, pullback and bounce inside an EMA50/200 uptrend, trailed by 2 ATR."""

    name = "trend_breakout"
    min_candles = MIN_CANDLES
    max_open_trades = 1

    def create_state(self) -> CooldownState:
        return CooldownState()

    def evaluate(self, candles: Sequence[Candle], context: StrategyContext) -> Signal:
        if self.at_position_limit(context):
            return self.hold(candles, "MAX_OPEN_TRADES", open_trades=len(context.open_trades))
        short = self.insufficient(candles)
        if short is not None:
            return short
        if isinstance(context.state, CooldownState) and context.state.active(candles, COOLDOWN_CANDLES):
            return self.hold(candles, "COOLDOWN", cooldown_candles=COOLDOWN_CANDLES)

        window = list(candles[-LOOKBACK:])
        closes = [candle.close for candle in window]
        ema50 = last_value(ema(closes, EMA_FAST))
        ema200 = last_value(ema(closes, EMA_SLOW))
        ema20 = ema(closes, EMA_TRAIL)
        atr_value = last_value(atr(window, ATR_PERIOD))
        adx_value = last_value(adx(window, ADX_PERIOD).adx)
        if ema50 is None or ema200 is None or atr_value is None:
            return self.hold(candles, "INDICATOR_NAN")
        if adx_value is None:
            return self.hold(candles, "ADX_NAN")
        if ema50 <= ema200:
            return self.hold(candles, "NO_UPTREND", ema50=ema50, ema200=ema200)
        if adx_value <= ADX_MIN:
            return self.hold(candles, "ADX_TOO_LOW", adx=adx_value, threshold=ADX_MIN)

        price = window[-1].close
        atr_percent = atr_value / price
        if atr_percent <= ATR_PERCENT_MIN:
            return self.hold(candles, "ATR_TOO_LOW", atr_percent=atr_percent, threshold=ATR_PERCENT_MIN)

        setup = find_breakout_pullback_bounce(window, ema20, atr_value)
        if setup is None:
            return self.hold(candles, "NO_PULLBACK_BOUNCE")
        if not setup.momentum_ok:
            return self.hold(
                candles,
                "MOMENTUM_TOO_LOW",
                breakout_range=setup.breakout_range,
                required=MOMENTUM_ATR_MULT * atr_value,
            )

        return Signal(
            action=SignalAction.BUY.value,
            price=price,
            timestamp=window[-1].timestamp,
            stop_loss=round(price * (1 - STOP_LOSS_PERCENT), 8),
            take_profit=None,
            atr=atr_value,
            diagnostics={
                "reason": "PULLBACK_BOUNCE",
                "ema50": ema50,
                "ema200": ema200,
                "adx": adx_value,
                "atr_percent": atr_percent,
                "breakout_strength": setup.breakout_strength,
            },
            payload={"breakoutStrength": setup.breakout_strength},
        )

    def trailing_rules(self) -> Sequence[TrailingRule]:
        return (atr_trail_rule(ATR_TRAIL_MULTIPLIER, _recent_atr),)

    def exit_checkers(self) -> Sequence[ExitChecker]:
        return (check_stop_loss, check_take_profit, time_exit(TIME_EXIT_CANDLES))

    def trade_payload(self, signal: Signal, state: Any) -> TrailingPayload:
        return TrailingPayload(breakout_strength=signal.payload.get("breakoutStrength"))

    def on_trade_closed(self, trade: Trade, state: Any) -> None:
        if isinstance(state, CooldownState) and trade.pnl is not None and trade.pnl < 0:
            state.last_exit_at = trade.closed_at
