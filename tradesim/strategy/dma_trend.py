from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from tradesim.data.candles import Candle
from tradesim.execution.exits import (
    ExitChecker,
    ExitContext,
    ExitInstruction,
    TrailingRule,
    atr_trail_rule,
    check_stop_loss,
    check_take_profit,
)
from tradesim.portfolio.models import Trade, TradeSide, TrailingPayload
from tradesim.strategy.contracts import BaseStrategy, Signal, SignalAction, SizingHint, StrategyContext
from tradesim.strategy.indicators import adx, atr, last_value, sma

LOGGER = logging.getLogger(__name__)

SMA_PERIOD = 200
ATR_PERIOD = 14
ADX_PERIOD = 14
MIN_LTF_CANDLES = 50
MIN_HTF_CANDLES = 210
LOOKBACK = 250
TRAIL_ATR_MULTIPLIER = 2.0


@dataclass(slots=True)
class DmaTrendState:
    """Daily SMA200 level behind the most recent entry."""

    sma200: float | None = None


def _recent_atr(trade: Trade, history: Sequence[Candle]) -> float | None:
    return last_value(atr(list(history[-LOOKBACK:]), ATR_PERIOD))


def opposite_crossover(trade: Trade, context: ExitContext) -> ExitInstruction | None:
    """Close at the candle close once price crosses back through the SMA200 level."""
    level = context.indicators.get("sma200")
    prev_close = context.indicators.get("prev_close")
    if level is None or prev_close is None:
        return None
    close = context.candle.close
    if trade.is_long and prev_close >= level > close:
        crossed = True
    elif not trade.is_long and prev_close <= level < close:
        crossed = True
    else:
        crossed = False
    if not crossed:
        return None
    LOGGER.info("Opposite crossover exit trade=%s close=%.8f sma200=%.8f", trade.id, close, level)
    return ExitInstruction(exit_price=close, reason="OPPOSITE_CROSSOVER")


class DmaTrendStrategy(BaseStrategy):
    """Price crossing the daily SMA200 with ADX confirmation; ATR stop, 3R target and an ATR trail."""

    name = "dma_trend"
    min_candles = MIN_LTF_CANDLES
    htf_timeframe = "1d"
    max_open_trades = 2

    def __init__(self, risk, params=None):
        super().__init__(risk, params)
        self.htf_timeframe = self.param("htf_timeframe", self.htf_timeframe)
        self.atr_multiplier = float(self.param("atr_multiplier", 2.0))
        self.take_profit_rr = float(self.param("take_profit_rr", 3.0))
        self.adx_threshold = float(self.param("adx_threshold", 20.0))

    def create_state(self) -> DmaTrendState:
        return DmaTrendState()

    def evaluate(self, candles: Sequence[Candle], context: StrategyContext) -> Signal:
        if self.at_position_limit(context):
            return self.hold(candles, "MAX_OPEN_TRADES", open_trades=len(context.open_trades))
        short = self.insufficient(candles)
        if short is not None:
            return short
        if len(context.htf_candles) < MIN_HTF_CANDLES:
            return self.hold(
                candles,
                "INSUFFICIENT_HTF_CANDLES",
                htf_candles=len(context.htf_candles),
                required=MIN_HTF_CANDLES,
            )
        sma200 = last_value(sma([candle.close for candle in context.htf_candles[-LOOKBACK:]], SMA_PERIOD))
        window = list(candles[-LOOKBACK:])
        atr_value = last_value(atr(window, ATR_PERIOD))
        adx_value = last_value(adx(window, ADX_PERIOD).adx)
        if sma200 is None or atr_value is None or adx_value is None:
            return self.hold(candles, "INDICATOR_NAN", sma200=sma200, atr=atr_value, adx=adx_value)
        if atr_value <= 0:
            return self.hold(candles, "ATR_INVALID", atr=atr_value)

        prev_close = window[-2].close
        price = window[-1].close
        diagnostics = {"prev_close": prev_close, "close": price, "sma200": sma200, "adx": adx_value}
        trending = adx_value > self.adx_threshold
        if trending and prev_close <= sma200 < price:
            side = TradeSide.LONG
        elif trending and prev_close >= sma200 > price:
            side = TradeSide.SHORT
        else:
            return self.hold(candles, "NO_CROSSOVER", **diagnostics)

        direction = 1 if side is TradeSide.LONG else -1
        risk_distance = self.atr_multiplier * atr_value
        return Signal(
            action=SignalAction.BUY.value if side is TradeSide.LONG else SignalAction.SELL.value,
            price=price,
            timestamp=window[-1].timestamp,
            stop_loss=price - direction * risk_distance,
            take_profit=price + direction * self.take_profit_rr * risk_distance,
            atr=atr_value,
            sizing=SizingHint(risk_percent=self.risk.risk_per_trade),
            diagnostics={"reason": "LONG_CROSSOVER" if side is TradeSide.LONG else "SHORT_CROSSOVER", **diagnostics},
            payload={"sma200": sma200},
        )

    def trailing_rules(self) -> Sequence[TrailingRule]:
        return (atr_trail_rule(TRAIL_ATR_MULTIPLIER, _recent_atr),)

    def exit_checkers(self) -> Sequence[ExitChecker]:
        return (check_stop_loss, check_take_profit, opposite_crossover)

    def exit_context(self, candle: Candle, history: Sequence[Candle], state: Any) -> ExitContext:
        level = state.sma200 if isinstance(state, DmaTrendState) else None
        prev_close = history[-2].close if len(history) >= 2 else None
        return ExitContext(
            candle=candle,
            history=history,
            state=state,
            indicators={"sma200": level, "prev_close": prev_close},
        )

    def trade_payload(self, signal, state):
        return TrailingPayload()

    def on_trade_opened(self, trade: Trade, signal: Signal, state: Any) -> None:
        if isinstance(state, DmaTrendState):
            state.sma200 = signal.payload.get("sma200")
