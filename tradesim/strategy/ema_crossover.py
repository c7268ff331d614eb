from __future__ import annotations

from collections.abc import Sequence

from tradesim.data.candles import Candle
from tradesim.portfolio.models import TradeSide
from tradesim.risk import fixed_stop_levels
from tradesim.strategy.contracts import BaseStrategy, Signal, SignalAction, StrategyContext
from tradesim.strategy.indicators import atr, ema, last_value, rsi


class EmaCrossoverStrategy(BaseStrategy):
    """EMA9/EMA21 direction with RSI extremes, filtered by ATR% and the EMA50 trend."""

    name = "ema_crossover"

    def __init__(self, risk, params=None):
        super().__init__(risk, params)
        self.ema_short = int(self.param("ema_short", 9))
        self.ema_long = int(self.param("ema_long", 21))
        self.ema_trend = int(self.param("ema_trend", 50))
        self.rsi_period = int(self.param("rsi_period", 14))
        self.rsi_oversold = float(self.param("rsi_oversold", 30))
        self.rsi_overbought = float(self.param("rsi_overbought", 70))
        self.atr_period = int(self.param("atr_period", 14))
        self.atr_threshold_percent = float(self.param("atr_threshold_percent", 0.5))
        self.lookback = int(self.param("lookback", 200))
        self.min_candles = self.ema_long + self.rsi_period

    def evaluate(self, candles: Sequence[Candle], context: StrategyContext) -> Signal:
        short = self.insufficient(candles)
        if short is not None:
            return short
        window = list(candles[-self.lookback :])
        closes = [candle.close for candle in window]
        ema_fast = last_value(ema(closes, self.ema_short))
        ema_slow = last_value(ema(closes, self.ema_long))
        rsi_now = last_value(rsi(closes, self.rsi_period))
        if ema_fast is None or ema_slow is None or rsi_now is None:
            return self.hold(candles, "INDICATOR_NAN")

        price = window[-1].close
        diagnostics = {"ema_short": ema_fast, "ema_long": ema_slow, "rsi": rsi_now}
        if ema_fast > ema_slow and rsi_now < self.rsi_oversold:
            side = TradeSide.LONG
        elif ema_fast < ema_slow and rsi_now > self.rsi_overbought:
            side = TradeSide.SHORT
        else:
            return self.hold(candles, "NO_CROSSOVER_SETUP", **diagnostics)

        atr_value = last_value(atr(window, self.atr_period))
        if atr_value is None:
            return self.hold(candles, "INDICATOR_NAN", **diagnostics)
        atr_percent = atr_value / price * 100
        diagnostics["atr_percent"] = atr_percent
        if atr_percent < self.atr_threshold_percent:
            return self.hold(candles, "ATR_TOO_LOW", **diagnostics)

        if len(window) >= self.ema_trend:
            ema_trend = last_value(ema(closes, self.ema_trend))
            diagnostics["ema_trend"] = ema_trend
            if ema_trend is not None:
                if side is TradeSide.LONG and price <= ema_trend:
                    return self.hold(candles, "TREND_FILTER", **diagnostics)
                if side is TradeSide.SHORT and price >= ema_trend:
                    return self.hold(candles, "TREND_FILTER", **diagnostics)

        stop_loss, take_profit = fixed_stop_levels(price, side, self.risk)
        return Signal(
            action=SignalAction.BUY.value if side is TradeSide.LONG else SignalAction.SELL.value,
            price=price,
            timestamp=window[-1].timestamp,
            stop_loss=stop_loss,
            take_profit=take_profit,
            atr=atr_value,
            diagnostics={"reason": "EMA_RSI_SETUP", **diagnostics},
        )
