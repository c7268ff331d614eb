from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from tradesim.data.candles import Candle
from tradesim.portfolio.models import Trade, TrailingPayload

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ExitInstruction:
    exit_price: float
    reason: str
    partial_quantity: float | None = None
    partial_price: float | None = None

    @property
    def is_partial(self) -> bool:
        return self.partial_quantity is not None


@dataclass(slots=True)
class ExitContext:
    """What an exit checker may look at: the current closed candle and the history up to it."""

    candle: Candle
    history: Sequence[Candle]
    state: Any = None
    indicators: dict[str, float | None] = field(default_factory=dict)


ExitChecker = Callable[[Trade, ExitContext], "ExitInstruction | None"]
TrailingRule = Callable[[Trade, Candle, Sequence[Candle]], "float | None"]


def run_exit_pipeline(trade: Trade, context: ExitContext, checkers: Sequence[ExitChecker]) -> ExitInstruction | None:
    for checker in checkers:
        instruction = checker(trade, context)
        if instruction is not None:
            return instruction
    return None


def _stop_reason(trade: Trade) -> str:
    if trade.initial_stop_loss is not None and trade.stop_loss == trade.initial_stop_loss:
        return "STOP_LOSS"
    payload = trade.payload
    if isinstance(payload, TrailingPayload):
        if payload.trailing_active:
            return "TRAILING_STOP"
        if payload.breakeven_moved:
            return "BREAKEVEN"
    return "TRAILING_STOP"


def check_stop_loss(trade: Trade, context: ExitContext) -> ExitInstruction | None:
    stop = trade.stop_loss
    if stop is None:
        return None
    candle = context.candle
    if trade.is_long and candle.low <= stop:
        # a gap through the stop fills at the open
        return ExitInstruction(min(stop, candle.open), _stop_reason(trade))
    if not trade.is_long and candle.high >= stop:
        return ExitInstruction(max(stop, candle.open), _stop_reason(trade))
    return None


def check_partial_tp1(trade: Trade, context: ExitContext) -> ExitInstruction | None:
    level = trade.take_profit1
    if level is None or trade.partial_close_done:
        return None
    candle = context.candle
    hit = candle.high >= level if trade.is_long else candle.low <= level
    if not hit:
        return None
    return ExitInstruction(
        exit_price=level,
        reason="PARTIAL_TP1",
        partial_quantity=trade.quantity * trade.partial_close_pct,
        partial_price=level,
    )


def check_take_profit(trade: Trade, context: ExitContext) -> ExitInstruction | None:
    level = trade.take_profit
    if level is None:
        return None
    candle = context.candle
    hit = candle.high >= level if trade.is_long else candle.low <= level
    if not hit:
        return None
    return ExitInstruction(level, "TAKE_PROFIT")


def time_exit(max_candles: int, min_r: float | None = None, reason: str = "TIME_EXIT") -> ExitChecker:
    """Close at the candle close once the trade is ``max_candles`` old and below ``min_r``."""

    def checker(trade: Trade, context: ExitContext) -> ExitInstruction | None:
        if trade.candle_count < max_candles:
            return None
        close = context.candle.close
        if min_r is not None and trade.r_multiple(close) >= min_r:
            return None
        return ExitInstruction(close, reason)

    return checker


DEFAULT_EXIT_CHECKERS: tuple[ExitChecker, ...] = (check_stop_loss, check_partial_tp1, check_take_profit)


def _improves(trade: Trade, candidate: float) -> bool:
    current = trade.stop_loss
    if current is None:
        return True
    return candidate > current if trade.is_long else candidate < current


def tighten_stop(trade: Trade, candidate: float | None) -> bool:
    """Move the stop to ``candidate`` only when that reduces risk."""
    if candidate is None or candidate != candidate or not _improves(trade, candidate):
        return False
    current = trade.stop_loss
    trade.stop_loss = candidate
    LOGGER.debug("Stop moved %s %s %s -> %.8f", trade.symbol, trade.id, current, candidate)
    return True


def track_extrema(trade: Trade, candle: Candle) -> None:
    trade.highest_price = max(trade.highest_price, candle.high)
    trade.lowest_price = min(trade.lowest_price, candle.low)


def _trailing_payload(trade: Trade) -> TrailingPayload:
    if not isinstance(trade.payload, TrailingPayload):
        trade.payload = TrailingPayload()
    return trade.payload


def breakeven_rule(r_threshold: float, offset_r: float = 0.0) -> TrailingRule:
    """Stop to entry (plus ``offset_r`` of initial risk) once the trade reaches ``r_threshold``."""

    def rule(trade: Trade, prev_candle: Candle, history: Sequence[Candle]) -> float | None:
        if trade.initial_risk <= 0:
            return None
        if trade.r_multiple(prev_candle.close) < r_threshold:
            return None
        level = trade.entry_price + trade.direction * offset_r * trade.initial_risk
        if not _improves(trade, level):
            return None
        _trailing_payload(trade).breakeven_moved = True
        return level

    return rule


def atr_trail_rule(
    multiplier: float,
    atr_of: Callable[[Trade, Sequence[Candle]], float | None],
    *,
    activate_r: float | None = None,
    from_extreme: bool = True,
) -> TrailingRule:
    """Trail ``multiplier`` ATR behind the best price (or the previous close)."""

    def rule(trade: Trade, prev_candle: Candle, history: Sequence[Candle]) -> float | None:
        if activate_r is not None and trade.r_multiple(prev_candle.close) < activate_r:
            return None
        atr_value = atr_of(trade, history)
        if atr_value is None or atr_value <= 0:
            return None
        if trade.is_long:
            anchor = trade.highest_price if from_extreme else prev_candle.close
            level = anchor - multiplier * atr_value
        else:
            anchor = trade.lowest_price if from_extreme else prev_candle.close
            level = anchor + multiplier * atr_value
        if not _improves(trade, level):
            return None
        _trailing_payload(trade).trailing_active = True
        return level

    return rule


def percent_trail_rule(
    trail_pct: float,
    activation_pct: float | None = None,
    min_candles: int = 0,
) -> TrailingRule:
    """Trail ``trail_pct`` behind the best price.

    With ``activation_pct`` the trail only arms once price has moved that far in favour.
    """

    def rule(trade: Trade, prev_candle: Candle, history: Sequence[Candle]) -> float | None:
        if trade.candle_count < min_candles:
            return None
        payload = _trailing_payload(trade)
        if not payload.trailing_active:
            if activation_pct is not None and trade.pnl_percent(prev_candle.close) < activation_pct:
                return None
            payload.trailing_active = True
        if trade.is_long:
            return trade.highest_price * (1 - trail_pct)
        return trade.lowest_price * (1 + trail_pct)

    return rule


def apply_trailing_rules(
    trade: Trade,
    prev_candle: Candle,
    history: Sequence[Candle],
    rules: Sequence[TrailingRule],
) -> bool:
    track_extrema(trade, prev_candle)
    moved = False
    for rule in rules:
        if tighten_stop(trade, rule(trade, prev_candle, history)):
            moved = True
    return moved
