from __future__ import annotations

from collections.abc import Sequence

from tradesim.config import MomentumTrailingConfig
from tradesim.data.candles import Candle
from tradesim.execution.exits import TrailingRule, breakeven_rule, percent_trail_rule
from tradesim.portfolio.models import TradeSide, TrailingPayload
from tradesim.risk import RiskOverrides
from tradesim.strategy.contracts import BaseStrategy, Signal, SignalAction, SizingHint, StrategyContext
from tradesim.strategy.indicators import atr, ema, last_value, momentum

EMA_PERIOD = 50
ATR_PERIOD = 14
MIN_CANDLES = 60
LOOKBACK = 200
MAX_TRADES_PER_DAY = 5
RISK_PER_TRADE = 0.01


def momentum_change(closes: Sequence[float], length: int) -> float | None:
    current = momentum(closes, length)
    previous = momentum(closes[:-1], length)
    if current is None or previous is None:
        return None
    return current - previous


class MomentumTrailingStrategy(BaseStrategy):
    """Rising momentum on the right side of EMA50, managed as a trailed runner with a 3R partial."""

    name = "momentum_trailing"
    min_candles = MIN_CANDLES
    max_open_trades = 2

    def __init__(self, risk, params=None, settings: MomentumTrailingConfig | None = None):
        super().__init__(risk, params)
        self.settings = settings or MomentumTrailingConfig()
        self.partial_close_pct = self.settings.partial_close_percent

    def evaluate(self, candles: Sequence[Candle], context: StrategyContext) -> Signal:
        cfg = self.settings
        if self.at_position_limit(context):
            return self.hold(candles, "MAX_OPEN_TRADES", open_trades=len(context.open_trades))
        short = self.insufficient(candles)
        if short is not None:
            return short
        window = list(candles[-LOOKBACK:])
        closes = [candle.close for candle in window]
        mom = momentum(closes, cfg.momentum_length)
        mom_change = momentum_change(closes, cfg.momentum_length)
        ema50 = last_value(ema(closes, EMA_PERIOD))
        atr_value = last_value(atr(window, ATR_PERIOD))
        diagnostics = {"momentum": mom, "momentum_change": mom_change, "ema50": ema50}
        if mom is None or mom_change is None or ema50 is None or atr_value is None:
            return self.hold(candles, "INDICATOR_NAN", **diagnostics)
        if atr_value <= 0:
            return self.hold(candles, "ATR_INVALID", atr=atr_value)

        price = window[-1].close
        if mom > 0 and mom_change > 0 and price > ema50:
            side = TradeSide.LONG
        elif mom < 0 and mom_change < 0 and price < ema50:
            side = TradeSide.SHORT
        else:
            return self.hold(candles, "NO_MOMENTUM_SETUP", **diagnostics)

        direction = 1 if side is TradeSide.LONG else -1
        risk_distance = cfg.atr_multiplier * atr_value
        return Signal(
            action=SignalAction.BUY.value if side is TradeSide.LONG else SignalAction.SELL.value,
            price=price,
            timestamp=window[-1].timestamp,
            stop_loss=price - direction * risk_distance,
            take_profit=None,
            take_profit1=price + direction * cfg.partial_tp_rr * risk_distance,
            atr=atr_value,
            sizing=SizingHint(risk_percent=RISK_PER_TRADE),
            diagnostics={"reason": "LONG_ENTRY" if side is TradeSide.LONG else "SHORT_ENTRY", **diagnostics},
        )

    def trailing_rules(self) -> Sequence[TrailingRule]:
        cfg = self.settings
        return (
            breakeven_rule(cfg.breakeven_rr),
            percent_trail_rule(cfg.trailing_percent, activation_pct=cfg.activation_percent),
        )

    def trade_payload(self, signal, state):
        return TrailingPayload()

    def risk_overrides(self) -> RiskOverrides | None:
        return RiskOverrides(max_trades_per_day=MAX_TRADES_PER_DAY)
