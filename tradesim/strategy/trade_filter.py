from __future__ import annotations

from dataclasses import dataclass, field

from tradesim.portfolio.models import TradeSide

MIN_SL_PERCENT = 0.7
MIN_RR = 2.0
MIN_SL_FILTER_PERCENT = 0.68
TOTAL_FEES_PERCENT = 0.2
MIN_TP_PERCENT_FEE_AWARE = 0.6
MIN_ATR_PERCENT = 0.25


@dataclass(slots=True)
class FilterResult:
    passed: bool
    reason: str | None
    metrics: dict[str, float | None] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class AdjustedStops:
    stop_loss: float
    take_profit: float
    sl_distance: float
    tp_distance: float


def enforce_min_sl_distance(price: float, atr_sl_distance: float) -> float:
    return max(atr_sl_distance, price * MIN_SL_PERCENT / 100)


def enforce_min_tp_distance(sl_distance: float) -> float:
    return sl_distance * MIN_RR


def build_adjusted_stops(price: float, side: TradeSide, atr_sl_distance: float) -> AdjustedStops:
    sl_distance = enforce_min_sl_distance(price, atr_sl_distance)
    tp_distance = enforce_min_tp_distance(sl_distance)
    if side is TradeSide.LONG:
        return AdjustedStops(price - sl_distance, price + tp_distance, sl_distance, tp_distance)
    return AdjustedStops(price + sl_distance, price - tp_distance, sl_distance, tp_distance)


def _percent(distance: float, price: float) -> float:
    return distance / price * 100 if price > 0 else 0.0


def apply_trade_filters(
    entry_price: float,
    stop_loss: float,
    take_profit: float | None,
    atr: float | None,
) -> FilterResult:
    """Reject trades whose stop is too tight, target too small for fees, or volatility too low."""
    sl_distance = abs(entry_price - stop_loss)
    tp_distance = abs(take_profit - entry_price) if take_profit is not None else sl_distance * MIN_RR
    sl_pct = _percent(sl_distance, entry_price)
    tp_pct = _percent(tp_distance, entry_price)
    atr_pct = _percent(atr, entry_price) if atr is not None else None
    metrics: dict[str, float | None] = {
        "sl_percent": round(sl_pct, 4),
        "tp_percent": round(tp_pct, 4),
        "rr": round(tp_distance / sl_distance, 2) if sl_distance > 0 else 0.0,
        "fee_impact": TOTAL_FEES_PERCENT,
        "atr_percent": round(atr_pct, 4) if atr_pct is not None else None,
    }
    if sl_pct < MIN_SL_FILTER_PERCENT:
        return FilterResult(False, "SL_TOO_TIGHT", metrics)
    if tp_pct <= MIN_TP_PERCENT_FEE_AWARE:
        return FilterResult(False, "TP_TOO_LOW_FOR_FEES", metrics)
    if atr_pct is not None and atr_pct <= MIN_ATR_PERCENT:
        return FilterResult(False, "ATR_TOO_LOW", metrics)
    return FilterResult(True, None, metrics)
