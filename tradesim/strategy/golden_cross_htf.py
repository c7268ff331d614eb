from __future__ import annotations

from collections.abc import Sequence

from tradesim.config import GoldenCrossConfig
from tradesim.data.candles import Candle
from tradesim.execution.exits import (
    ExitChecker,
    TrailingRule,
    check_stop_loss,
    percent_trail_rule,
    time_exit,
)
from tradesim.portfolio.models import TradeSide, TrailingPayload
from tradesim.strategy.contracts import BaseStrategy, Signal, SignalAction, SizingHint, StrategyContext
from tradesim.strategy.indicators import adx, ema, last_value

ADX_PERIOD = 14
MIN_LTF_CANDLES = 55
MIN_HTF_CANDLES = 55
LOOKBACK = 250


def crossover_confidence(adx_value: float, plus_di: float | None, minus_di: float | None) -> float:
    adx_norm = min(adx_value / 50, 1.0)
    di_spread = abs(plus_di - minus_di) / 50 if plus_di is not None and minus_di is not None else 0.0
    return min(0.95, 0.5 + adx_norm * 0.3 + di_spread * 0.2)


class GoldenCrossHtfStrategy(BaseStrategy):
    """EMA20/50 direction confirmed by the HTF close against its EMA50 and by ADX/DI.

    Trades are runners: a percent stop, no take-profit, and a forced exit after
    ``max_hold_bars`` candles.
    """

    name = "golden_cross_htf"
    min_candles = MIN_LTF_CANDLES
    htf_timeframe = "1h"
    max_open_trades = 1

    def __init__(self, risk, params=None, settings: GoldenCrossConfig | None = None):
        super().__init__(risk, params)
        self.settings = settings or GoldenCrossConfig()
        self.htf_timeframe = self.param("htf_timeframe", self.htf_timeframe)

    def evaluate(self, candles: Sequence[Candle], context: StrategyContext) -> Signal:
        cfg = self.settings
        if any(trade.symbol == context.symbol for trade in context.open_trades):
            return self.hold(candles, "POSITION_EXISTS_FOR_SYMBOL", symbol=context.symbol)
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
        htf_closes = [candle.close for candle in context.htf_candles[-LOOKBACK:]]
        htf_ema = last_value(ema(htf_closes, cfg.htf_ema))
        if htf_ema is None:
            return self.hold(candles, "HTF_INDICATOR_NAN")
        htf_close = htf_closes[-1]

        window = list(candles[-LOOKBACK:])
        closes = [candle.close for candle in window]
        ema_fast = last_value(ema(closes, cfg.ema_fast))
        ema_slow = last_value(ema(closes, cfg.ema_slow))
        if ema_fast is None or ema_slow is None:
            return self.hold(candles, "INDICATOR_NAN")
        series = adx(window, ADX_PERIOD)
        adx_value = last_value(series.adx)
        if adx_value is None:
            return self.hold(candles, "INDICATOR_NAN")
        if adx_value < cfg.adx_threshold:
            return self.hold(candles, "ADX_TOO_LOW", adx=adx_value, threshold=cfg.adx_threshold)
        plus_di = last_value(series.plus_di)
        minus_di = last_value(series.minus_di)

        price = window[-1].close
        diagnostics = {
            "ema_fast": ema_fast,
            "ema_slow": ema_slow,
            "htf_close": htf_close,
            "htf_ema": htf_ema,
            "adx": adx_value,
            "plus_di": plus_di,
            "minus_di": minus_di,
        }
        di_known = plus_di is not None and minus_di is not None
        if ema_fast > ema_slow and htf_close > htf_ema and di_known and plus_di > minus_di:
            side = TradeSide.LONG
        elif ema_fast < ema_slow and htf_close < htf_ema and di_known and minus_di > plus_di:
            side = TradeSide.SHORT
        else:
            return self.hold(candles, "NO_ENTRY", **diagnostics)

        confidence = crossover_confidence(adx_value, plus_di, minus_di)
        stop = price * (1 - cfg.trail_percent) if side is TradeSide.LONG else price * (1 + cfg.trail_percent)
        return Signal(
            action=SignalAction.BUY.value if side is TradeSide.LONG else SignalAction.SELL.value,
            price=price,
            timestamp=window[-1].timestamp,
            stop_loss=stop,
            take_profit=None,
            sizing=SizingHint(risk_percent=0.01),
            diagnostics={
                "reason": "EMA_CROSSOVER_HTF_UPTREND" if side is TradeSide.LONG else "EMA_CROSSOVER_HTF_DOWNTREND",
                **diagnostics,
            },
            payload={
                "confidence": confidence,
                "emaDistance": abs(ema_fast - ema_slow) / price if price > 0 else 0.0,
            },
        )

    def trailing_rules(self) -> Sequence[TrailingRule]:
        cfg = self.settings
        return (percent_trail_rule(cfg.trail_percent, min_candles=cfg.min_hold_bars),)

    def exit_checkers(self) -> Sequence[ExitChecker]:
        return (check_stop_loss, time_exit(self.settings.max_hold_bars, reason="MAX_HOLD"))

    def trade_payload(self, signal, state):
        return TrailingPayload(confidence=signal.payload.get("confidence"))
