from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from tradesim.portfolio.models import Trade, TradeStatus


@dataclass(slots=True)
class TradeRecord:
    trade_id: str
    mode: str
    symbol: str
    side: str
    entry_price: float
    quantity: float
    status: str
    strategy: str
    opened_at: datetime
    exit_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    pnl: float | None = None
    fees: float = 0.0
    reason: str | None = None
    closed_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_trade(cls, trade: Trade, mode: str) -> "TradeRecord":
        metadata: dict[str, Any] = {}
        if trade.parent_id:
            metadata["parent_id"] = trade.parent_id
        if trade.status is not TradeStatus.OPEN:
            metadata["candle_count"] = trade.candle_count
        return cls(
            trade_id=trade.id,
            mode=mode,
            symbol=trade.symbol,
            side=trade.side.value,
            entry_price=trade.entry_price,
            quantity=trade.quantity,
            status=trade.status.value,
            strategy=trade.strategy,
            opened_at=trade.opened_at,
            exit_price=trade.exit_price,
            stop_loss=trade.stop_loss,
            take_profit=trade.take_profit,
            pnl=trade.pnl,
            fees=trade.entry_fee + trade.exit_fee,
            reason=trade.exit_reason,
            closed_at=trade.closed_at,
            metadata=metadata,
        )
