from __future__ import annotations

from collections.abc import Sequence

from tradesim.data.candles import Candle
from tradesim.execution.exits import TrailingRule, breakeven_rule
from tradesim.portfolio.models import Trade, TradeSide, TrailingPayload
from tradesim.risk import RiskOverrides
from tradesim.strategy import trade_filter
from tradesim.strategy.contracts import BaseStrategy, Signal, SignalAction, StrategyContext
from tradesim.strategy.indicators import atr, ema, last_two, last_value, rsi

HTF_EMA_FAST = 20
HTF_EMA_SLOW = 50
HTF_LOOKBACK = 60
LTF_EMA_PERIOD = 20
RSI_PERIOD = 14
ATR_PERIOD = 14

TREND_STRENGTH_MIN = 0.0015
ATR_VOL_THRESHOLD = trade_filter.MIN_ATR_PERCENT / 100

PULLBACK_BUY = (-0.015, -0.002)
PULLBACK_SELL = (0.002, 0.015)
RSI_BUY = (30.0, 55.0)
RSI_SELL = (45.0, 70.0)


def _in_band(value: float, band: tuple[float, float]) -> bool:
    return band[0] <= value <= band[1]


def htf_trend(htf_candles: Sequence[Candle]) -> tuple[str, dict[str, float | None]]:
    """UP, DOWN or NONE from the closed higher-timeframe candles."""
    if len(htf_candles) < HTF_LOOKBACK:
        return "NONE", {"reason": "INSUFFICIENT_HTF_CANDLES"}
    closes = [candle.close for candle in htf_candles[-HTF_LOOKBACK:]]
    fast = last_value(ema(closes, HTF_EMA_FAST))
    slow = last_value(ema(closes, HTF_EMA_SLOW))
    price = closes[-1]
    if fast is None or slow is None:
        return "NONE", {"reason": "HTF_INDICATOR_NAN"}
    info: dict[str, float | None] = {
        "htf_ema_fast": fast,
        "htf_ema_slow": slow,
        "trend_strength": abs(fast - slow) / price,
    }
    if fast > slow and price > slow:
        return "UP", info
    if fast < slow and price < slow:
        return "DOWN", info
    return "NONE", info


class TrendPullbackStrategy(BaseStrategy):
    """Higher-timeframe EMA trend with an entry on a shallow pullback to the LTF EMA20."""

    name = "trend_pullback"
    min_candles = 50
    htf_timeframe = "15m"

    def __init__(self, risk, params=None):
        super().__init__(risk, params)
        self.htf_timeframe = self.param("htf_timeframe", self.htf_timeframe)

    def evaluate(self, candles: Sequence[Candle], context: StrategyContext) -> Signal:
        short = self.insufficient(candles)
        if short is not None:
            return short
        if len(context.htf_candles) < HTF_LOOKBACK:
            return self.hold(
                candles,
                "INSUFFICIENT_HTF_CANDLES",
                htf_candles=len(context.htf_candles),
                required=HTF_LOOKBACK,
            )
        window = list(candles[-self.min_candles :])
        closes = [candle.close for candle in window]
        ema20 = last_value(ema(closes, LTF_EMA_PERIOD))
        rsi_pair = last_two(rsi(closes, RSI_PERIOD))
        atr_value = last_value(atr(window, ATR_PERIOD))
        if ema20 is None or rsi_pair is None or atr_value is None:
            return self.hold(candles, "INDICATOR_NAN")

        trend, trend_info = htf_trend(context.htf_candles)
        last = window[-1]
        price = last.close
        rsi_prev, rsi_now = rsi_pair
        atr_percent = atr_value / price
        pullback = (price - ema20) / price
        diagnostics = {
            "trend": trend,
            **trend_info,
            "pullback": pullback,
            "rsi": rsi_now,
            "atr_percent": atr_percent,
        }
        if trend == "NONE":
            return self.hold(candles, "NO_CLEAR_TREND", **diagnostics)
        strength = trend_info.get("trend_strength")
        if strength is None or strength <= TREND_STRENGTH_MIN:
            return self.hold(candles, "TREND_TOO_WEAK", **diagnostics)
        if atr_percent <= ATR_VOL_THRESHOLD:
            return self.hold(candles, "ATR_TOO_LOW", **diagnostics)

        if trend == "UP":
            side = TradeSide.LONG
            setup_ok = (
                _in_band(pullback, PULLBACK_BUY)
                and _in_band(rsi_now, RSI_BUY)
                and (last.close > last.open or rsi_now > rsi_prev)
            )
        else:
            side = TradeSide.SHORT
            setup_ok = (
                _in_band(pullback, PULLBACK_SELL)
                and _in_band(rsi_now, RSI_SELL)
                and (last.close < last.open or rsi_now < rsi_prev)
            )
        if not setup_ok:
            return self.hold(candles, "ENTRY_CONDITION_FAILED", **diagnostics)

        stops = trade_filter.build_adjusted_stops(price, side, atr_value)
        result = trade_filter.apply_trade_filters(price, stops.stop_loss, stops.take_profit, atr_value)
        diagnostics["trade_metrics"] = result.metrics
        if not result.passed:
            return self.hold(candles, f"TRADE_FILTER_{result.reason}", **diagnostics)
        return Signal(
            action=SignalAction.BUY.value if side is TradeSide.LONG else SignalAction.SELL.value,
            price=price,
            timestamp=last.timestamp,
            stop_loss=stops.stop_loss,
            take_profit=stops.take_profit,
            atr=atr_value,
            diagnostics={
                "reason": "UPTREND_PULLBACK" if side is TradeSide.LONG else "DOWNTREND_PULLBACK",
                **diagnostics,
            },
        )

    def trailing_rules(self) -> Sequence[TrailingRule]:
        return (breakeven_rule(1.0), self._atr_trail_at_2r)

    @staticmethod
    def _atr_trail_at_2r(trade: Trade, prev_candle: Candle, history: Sequence[Candle]) -> float | None:
        if trade.r_multiple(prev_candle.close) < 2.0:
            return None
        atr_value = trade.atr_at_entry or last_value(atr(list(history[-50:]), ATR_PERIOD))
        if not atr_value:
            return None
        if isinstance(trade.payload, TrailingPayload):
            trade.payload.trailing_active = True
        return prev_candle.close - atr_value * trade.direction

    def trade_payload(self, signal, state):
        return TrailingPayload()

    def risk_overrides(self) -> RiskOverrides | None:
        return RiskOverrides(max_trades_per_day=2, trade_cooldown_seconds=30 * 60)
