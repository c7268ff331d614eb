from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from tradesim.clock import to_millis
from tradesim.config import RiskConfig
from tradesim.data.candles import Candle
from tradesim.execution.exits import (
    DEFAULT_EXIT_CHECKERS,
    ExitChecker,
    ExitContext,
    TrailingRule,
    apply_trailing_rules,
)
from tradesim.portfolio.models import Trade, TradePayload, TradeSide
from tradesim.risk import RiskOverrides


class SignalAction(str, Enum):
    HOLD = "HOLD"
    BUY = "BUY"
    SELL = "SELL"


@dataclass(slots=True, frozen=True)
class SizingHint:
    quantity: float | None = None
    risk_percent: float | None = None


@dataclass(slots=True, frozen=True)
class Signal:
    action: str
    price: float
    timestamp: datetime
    stop_loss: float | None = None
    take_profit: float | None = None
    take_profit1: float | None = None
    atr: float | None = None
    sizing: SizingHint | None = None
    diagnostics: Mapping[str, Any] = field(default_factory=dict)
    payload: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_hold(self) -> bool:
        return self.action == SignalAction.HOLD.value

    @property
    def side(self) -> TradeSide | None:
        if self.action == SignalAction.BUY.value or self.action.startswith("DCA_BUY"):
            return TradeSide.LONG
        if self.action == SignalAction.SELL.value:
            return TradeSide.SHORT
        return None

    @property
    def reason(self) -> str | None:
        value = self.diagnostics.get("reason")
        return str(value) if value is not None else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal": self.action,
            "price": self.price,
            "timestamp": to_millis(self.timestamp),
            "stopLoss": self.stop_loss,
            "takeProfit": self.take_profit,
            "takeProfit1": self.take_profit1,
            "atr": self.atr,
            "sizing": (
                {"quantity": self.sizing.quantity, "riskPercent": self.sizing.risk_percent}
                if self.sizing
                else None
            ),
            "debug": dict(self.diagnostics),
            **dict(self.payload),
        }


@dataclass(slots=True)
class CooldownState:
    """Remembers the last exit so a strategy can sit out a number of candles."""

    last_exit_at: datetime | None = None

    def candles_since_exit(self, candles: Sequence[Candle], limit: int | None = None) -> int | None:
        if self.last_exit_at is None:
            return None
        count = 0
        for candle in reversed(candles):
            if candle.timestamp <= self.last_exit_at or (limit is not None and count >= limit):
                break
            count += 1
        return count

    def active(self, candles: Sequence[Candle], cooldown_candles: int) -> bool:
        elapsed = self.candles_since_exit(candles, limit=cooldown_candles)
        return elapsed is not None and elapsed < cooldown_candles


@dataclass(slots=True)
class StrategyContext:
    symbol: str
    htf_candles: Sequence[Candle] = ()
    open_trades: Sequence[Trade] = ()
    state: Any = None
    balance: float = 0.0
    drawdown_exceeded: bool = False


class StrategyEvaluator(Protocol):
    name: str
    min_candles: int
    htf_timeframe: str | None
    max_open_trades: int | None
    partial_close_pct: float

    def evaluate(self, candles: Sequence[Candle], context: StrategyContext) -> Signal:
        ...

    def update_trailing(self, trade: Trade, prev_candle: Candle, history: Sequence[Candle]) -> bool:
        ...

    def advance_state(self, state: Any, prev_candle: Candle, history: Sequence[Candle]) -> None:
        ...

    def exit_checkers(self) -> Sequence[ExitChecker]:
        ...

    def exit_context(self, candle: Candle, history: Sequence[Candle], state: Any) -> ExitContext:
        ...

    def risk_overrides(self) -> RiskOverrides | None:
        ...

    def create_state(self) -> Any:
        ...

    def trade_payload(self, signal: Signal, state: Any) -> TradePayload:
        ...

    def on_trade_opened(self, trade: Trade, signal: Signal, state: Any) -> None:
        ...

    def on_trade_closed(self, trade: Trade, state: Any) -> None:
        ...


class BaseStrategy:
    """Shared plumbing for strategies: HOLD builder, default exits and no-op hooks."""

    name = "base"
    min_candles = 50
    htf_timeframe: str | None = None
    max_open_trades: int | None = None
    partial_close_pct: float = 0.5

    def __init__(self, risk: RiskConfig, params: Mapping[str, Any] | None = None):
        self.risk = risk
        self.params = dict(params or {})

    def param(self, key: str, default: Any) -> Any:
        return self.params.get(key, default)

    def evaluate(self, candles: Sequence[Candle], context: StrategyContext) -> Signal:
        raise NotImplementedError

    def hold(self, candles: Sequence[Candle], reason: str, **diagnostics: Any) -> Signal:
        if candles:
            last = candles[-1]
            price, timestamp = last.close, last.timestamp
        else:
            price, timestamp = 0.0, datetime.min
        return Signal(
            action=SignalAction.HOLD.value,
            price=price,
            timestamp=timestamp,
            diagnostics={"reason": reason, **diagnostics},
        )

    def insufficient(self, candles: Sequence[Candle], required: int | None = None) -> Signal | None:
        needed = self.min_candles if required is None else required
        if len(candles) < needed:
            return self.hold(candles, "INSUFFICIENT_CANDLES", have=len(candles), need=needed)
        return None

    def at_position_limit(self, context: StrategyContext) -> bool:
        if self.max_open_trades is None:
            return False
        return len(context.open_trades) >= self.max_open_trades

    def trailing_rules(self) -> Sequence[TrailingRule]:
        return ()

    def update_trailing(self, trade: Trade, prev_candle: Candle, history: Sequence[Candle]) -> bool:
        return apply_trailing_rules(trade, prev_candle, history, self.trailing_rules())

    def advance_state(self, state: Any, prev_candle: Candle, history: Sequence[Candle]) -> None:
        return None

    def exit_checkers(self) -> Sequence[ExitChecker]:
        return DEFAULT_EXIT_CHECKERS

    def exit_context(self, candle: Candle, history: Sequence[Candle], state: Any) -> ExitContext:
        return ExitContext(candle=candle, history=history, state=state)

    def risk_overrides(self) -> RiskOverrides | None:
        return None

    def create_state(self) -> Any:
        return None

    def trade_payload(self, signal: Signal, state: Any) -> TradePayload:
        return None

    def on_trade_opened(self, trade: Trade, signal: Signal, state: Any) -> None:
        return None

    def on_trade_closed(self, trade: Trade, state: Any) -> None:
        return None
