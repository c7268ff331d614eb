from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Union

from tradesim.clock import to_millis


class TradeSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def entry_action(self) -> str:
        return "BUY" if self is TradeSide.LONG else "SELL"

    @property
    def exit_action(self) -> str:
        return "SELL" if self is TradeSide.LONG else "BUY"


class TradeStatus(str, Enum):
    OPEN = "OPEN"
    PARTIAL = "PARTIAL"
    CLOSED = "CLOSED"


@dataclass(slots=True)
class TrailingPayload:
    """Bookkeeping for strategies that manage a runner with a moving stop."""

    breakeven_moved: bool = False
    trailing_active: bool = False
    score: float | None = None
    confidence: float | None = None
    breakout_strength: float | None = None


@dataclass(slots=True)
class DcaPayload:
    cycle_id: str
    level: int
    average_entry: float | None = None


TradePayload = Union[TrailingPayload, DcaPayload, None]


def new_trade_id() -> str:
    return uuid.uuid4().hex[:16]


@dataclass(slots=True)
class Trade:
    symbol: str
    side: TradeSide
    entry_price: float
    quantity: float
    stop_loss: float | None
    take_profit: float | None
    entry_fee: float
    opened_at: datetime
    strategy: str = "default"
    id: str = field(default_factory=new_trade_id)
    status: TradeStatus = TradeStatus.OPEN
    take_profit1: float | None = None
    partial_close_pct: float = 0.5
    partial_close_done: bool = False
    initial_stop_loss: float | None = None
    initial_risk: float = 0.0
    highest_price: float = 0.0
    lowest_price: float = 0.0
    candle_count: int = 0
    atr_at_entry: float | None = None
    parent_id: str | None = None
    exit_price: float | None = None
    exit_fee: float = 0.0
    pnl: float | None = None
    closed_at: datetime | None = None
    exit_reason: str | None = None
    payload: TradePayload = None

    def __post_init__(self) -> None:
        if self.initial_stop_loss is None:
            self.initial_stop_loss = self.stop_loss
        if not self.initial_risk and self.initial_stop_loss is not None:
            self.initial_risk = abs(self.entry_price - self.initial_stop_loss)
        if not self.highest_price:
            self.highest_price = self.entry_price
        if not self.lowest_price:
            self.lowest_price = self.entry_price

    @property
    def is_long(self) -> bool:
        return self.side is TradeSide.LONG

    @property
    def direction(self) -> int:
        return 1 if self.is_long else -1

    def r_multiple(self, price: float) -> float:
        if self.initial_risk <= 0:
            return 0.0
        return (price - self.entry_price) * self.direction / self.initial_risk

    def pnl_percent(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) * self.direction / self.entry_price

    def signed_notional(self, price: float) -> float:
        return price * self.quantity * self.direction

    def clone(self, **changes: Any) -> "Trade":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] | None = None
        if isinstance(self.payload, TrailingPayload):
            payload = {
                "type": "trailing",
                "breakevenMoved": self.payload.breakeven_moved,
                "trailingActive": self.payload.trailing_active,
                "score": self.payload.score,
                "confidence": self.payload.confidence,
                "breakoutStrength": self.payload.breakout_strength,
            }
        elif isinstance(self.payload, DcaPayload):
            payload = {
                "type": "dca",
                "cycleId": self.payload.cycle_id,
                "level": self.payload.level,
                "averageEntry": self.payload.average_entry,
            }
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "strategy": self.strategy,
            "status": self.status.value,
            "entryPrice": self.entry_price,
            "exitPrice": self.exit_price,
            "quantity": self.quantity,
            "stopLoss": self.stop_loss,
            "initialStopLoss": self.initial_stop_loss,
            "takeProfit": self.take_profit,
            "takeProfit1": self.take_profit1,
            "entryFee": self.entry_fee,
            "exitFee": self.exit_fee,
            "pnl": self.pnl,
            "reason": self.exit_reason,
            "rMultiple": self.r_multiple(self.exit_price) if self.exit_price is not None else None,
            "candleCount": self.candle_count,
            "openedAt": to_millis(self.opened_at),
            "closedAt": to_millis(self.closed_at) if self.closed_at else None,
            "parentId": self.parent_id,
            "payload": payload,
        }


@dataclass(slots=True)
class EquityPoint:
    timestamp: datetime
    balance: float
    equity: float

    def to_dict(self) -> dict[str, Any]:
        return {"timestamp": to_millis(self.timestamp), "balance": self.balance, "equity": self.equity}


@dataclass(slots=True)
class PortfolioSummary:
    balance: float
    initial_balance: float
    peak_balance: float
    equity: float
    total_pnl: float
    total_pnl_percent: float
    max_drawdown: float
    open_trades: int
    closed_trades: int
