from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from tradesim.config import SwingTrendConfig
from tradesim.data.candles import Candle
from tradesim.execution.exits import (
    ExitChecker,
    ExitContext,
    ExitInstruction,
    TrailingRule,
    atr_trail_rule,
    check_stop_loss,
    check_take_profit,
    time_exit,
)
from tradesim.portfolio.models import Trade, TradeSide, TrailingPayload
from tradesim.strategy.contracts import (
    BaseStrategy,
    CooldownState,
    Signal,
    SignalAction,
    SizingHint,
    StrategyContext,
)
from tradesim.strategy.indicators import adx, atr, ema, last_value, rsi

HTF_EMA_FAST = 50
HTF_EMA_SLOW = 200
LTF_EMA_PERIOD = 50
RSI_PERIOD = 14
ATR_PERIOD = 14
ADX_PERIOD = 14
PULLBACK_DISTANCE = 0.025
MIN_LTF_CANDLES = 220
MIN_HTF_CANDLES = 210
LOOKBACK = 300


@dataclass(slots=True)
class HtfMetrics:
    close: float
    ema_fast: float
    ema_slow: float


@dataclass(slots=True)
class LtfSnapshot:
    price: float
    open: float
    ema50: float | None
    rsi: float | None
    adx: float | None
    atr_percent: float
    higher_low: bool
    lower_high: bool


def htf_metrics(htf_candles: Sequence[Candle]) -> HtfMetrics | None:
    if len(htf_candles) < HTF_EMA_SLOW:
        return None
    closes = [candle.close for candle in htf_candles[-LOOKBACK:]]
    fast = last_value(ema(closes, HTF_EMA_FAST))
    slow = last_value(ema(closes, HTF_EMA_SLOW))
    if fast is None or slow is None:
        return None
    return HtfMetrics(close=closes[-1], ema_fast=fast, ema_slow=slow)


def buy_score(htf: HtfMetrics, ltf: LtfSnapshot, cfg: SwingTrendConfig) -> int:
    score = 0
    if htf.close > htf.ema_slow:
        score += 2
    if htf.ema_fast > htf.ema_slow:
        score += 2
    if ltf.adx is not None and ltf.adx > cfg.adx_min:
        score += 1
    if ltf.ema50 is not None and abs(ltf.price - ltf.ema50) / ltf.price < PULLBACK_DISTANCE:
        score += 2
    if ltf.rsi is not None and 40 <= ltf.rsi <= 50:
        score += 1
    if ltf.price > ltf.open:
        score += 1
    if ltf.higher_low:
        score += 1
    if ltf.atr_percent > cfg.atr_percent_min:
        score += 1
    if ltf.adx is not None and ltf.adx > cfg.adx_strong_threshold:
        score += 1
    return score


def sell_score(htf: HtfMetrics, ltf: LtfSnapshot, cfg: SwingTrendConfig) -> int:
    score = 0
    if htf.close < htf.ema_slow:
        score += 2
    if htf.ema_fast < htf.ema_slow:
        score += 2
    if ltf.adx is not None and ltf.adx > cfg.adx_min:
        score += 1
    if ltf.ema50 is not None and abs(ltf.price - ltf.ema50) / ltf.price < PULLBACK_DISTANCE:
        score += 2
    if ltf.rsi is not None and 45 <= ltf.rsi <= 60:
        score += 1
    if ltf.price < ltf.open:
        score += 1
    if ltf.lower_high:
        score += 1
    if ltf.atr_percent > cfg.atr_percent_min:
        score += 1
    if ltf.adx is not None and ltf.adx > cfg.adx_strong_threshold:
        score += 1
    return score


def _recent_atr(trade: Trade, history: Sequence[Candle]) -> float | None:
    return last_value(atr(list(history[-LOOKBACK:]), ATR_PERIOD))


class SwingTrendStrategy(BaseStrategy):
    """Scored swing entries: HTF EMA50/200 trend plus LTF pullback, momentum and volatility points."""

    name = "swing_trend"
    min_candles = MIN_LTF_CANDLES
    htf_timeframe = "1h"
    max_open_trades = 2

    def __init__(self, risk, params=None, settings: SwingTrendConfig | None = None):
        super().__init__(risk, params)
        self.settings = settings or SwingTrendConfig()
        self.htf_timeframe = self.param("htf_timeframe", self.htf_timeframe)

    def create_state(self) -> CooldownState:
        return CooldownState()

    def evaluate(self, candles: Sequence[Candle], context: StrategyContext) -> Signal:
        cfg = self.settings
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
        if isinstance(context.state, CooldownState) and context.state.active(candles, cfg.cooldown_candles):
            return self.hold(candles, "COOLDOWN")
        htf = htf_metrics(context.htf_candles)
        if htf is None:
            return self.hold(candles, "HTF_INDICATOR_NAN")

        window = list(candles[-LOOKBACK:])
        closes = [candle.close for candle in window]
        ema50 = last_value(ema(closes, LTF_EMA_PERIOD))
        rsi_now = last_value(rsi(closes, RSI_PERIOD))
        atr_value = last_value(atr(window, ATR_PERIOD))
        adx_value = last_value(adx(window, ADX_PERIOD).adx)
        if ema50 is None or rsi_now is None or atr_value is None:
            return self.hold(candles, "INDICATOR_NAN")
        if atr_value <= 0:
            return self.hold(candles, "ATR_INVALID", atr=atr_value)

        current, prev = window[-1], window[-2]
        ltf = LtfSnapshot(
            price=current.close,
            open=current.open,
            ema50=ema50,
            rsi=rsi_now,
            adx=adx_value,
            atr_percent=atr_value / current.close * 100,
            higher_low=current.low > prev.low,
            lower_high=current.high < prev.high,
        )
        scores = {"buy_score": buy_score(htf, ltf, cfg), "sell_score": sell_score(htf, ltf, cfg)}
        diagnostics = {"ema50": ema50, "rsi": rsi_now, "adx": adx_value, "atr_percent": ltf.atr_percent, **scores}

        if scores["buy_score"] >= cfg.buy_score_threshold:
            side, score = TradeSide.LONG, scores["buy_score"]
        elif scores["sell_score"] >= cfg.sell_score_threshold:
            side, score = TradeSide.SHORT, scores["sell_score"]
        else:
            return self.hold(candles, "SCORE_BELOW_THRESHOLD", **diagnostics)

        risk_distance = cfg.atr_multiplier * atr_value
        direction = 1 if side is TradeSide.LONG else -1
        price = current.close
        risk_percent = 0.005 if adx_value is not None and adx_value < cfg.adx_strong_threshold else 0.01
        return Signal(
            action=SignalAction.BUY.value if side is TradeSide.LONG else SignalAction.SELL.value,
            price=price,
            timestamp=current.timestamp,
            stop_loss=price - direction * risk_distance,
            take_profit=price + direction * cfg.take_profit_r * risk_distance,
            atr=atr_value,
            sizing=SizingHint(risk_percent=risk_percent),
            diagnostics={"reason": "SCORE_BUY" if side is TradeSide.LONG else "SCORE_SELL", **diagnostics},
            payload={"score": score, "confidence": min(0.9, 0.5 + score * 0.05)},
        )

    def trailing_rules(self) -> Sequence[TrailingRule]:
        return (atr_trail_rule(self.settings.trail_atr_multiplier, _recent_atr),)

    def exit_context(self, candle: Candle, history: Sequence[Candle], state: Any) -> ExitContext:
        closes = [item.close for item in history[-LOOKBACK:]]
        return ExitContext(
            candle=candle,
            history=history,
            state=state,
            indicators={
                "ema50": last_value(ema(closes, LTF_EMA_PERIOD)),
                "rsi": last_value(rsi(closes, RSI_PERIOD)),
            },
        )

    def _early_exit(self, trade: Trade, context: ExitContext) -> ExitInstruction | None:
        close = context.candle.close
        if trade.r_multiple(close) >= self.settings.early_exit_r_threshold:
            return None
        rsi_now = context.indicators.get("rsi")
        ema50 = context.indicators.get("ema50")
        if rsi_now is None or ema50 is None:
            return None
        if trade.is_long and rsi_now < 40 and close < ema50:
            return ExitInstruction(close, "EARLY_EXIT")
        if not trade.is_long and rsi_now > 60 and close > ema50:
            return ExitInstruction(close, "EARLY_EXIT")
        return None

    def exit_checkers(self) -> Sequence[ExitChecker]:
        return (
            check_stop_loss,
            check_take_profit,
            self._early_exit,
            time_exit(self.settings.time_exit_candles, min_r=1.0),
        )

    def trade_payload(self, signal, state):
        return TrailingPayload(score=signal.payload.get("score"), confidence=signal.payload.get("confidence"))

    def on_trade_closed(self, trade: Trade, state: Any) -> None:
        if isinstance(state, CooldownState):
            state.last_exit_at = trade.closed_at
