from __future__ import annotations

from datetime import datetime

from tradesim.portfolio.models import Trade, TradePayload, TradeSide, TradeStatus

PRICE_DECIMALS = 8


def apply_slippage(price: float, slippage: float, action: str) -> float:
    """Move ``price`` against the trader: buys fill higher, sells fill lower."""
    if str(action).upper() == "BUY":
        return price * (1.0 + slippage)
    return price * (1.0 - slippage)


def calculate_fee(notional: float, fee_rate: float) -> float:
    return abs(notional) * fee_rate


def open_trade(
    *,
    symbol: str,
    side: TradeSide,
    price: float,
    quantity: float,
    timestamp: datetime,
    fee_rate: float,
    slippage: float,
    stop_loss: float | None,
    take_profit: float | None,
    take_profit1: float | None = None,
    partial_close_pct: float = 0.5,
    strategy: str = "default",
    atr: float | None = None,
    payload: TradePayload = None,
    trade_id: str | None = None,
) -> Trade:
    adjusted = apply_slippage(price, slippage, side.entry_action)
    entry_price = round(adjusted, PRICE_DECIMALS)
    entry_fee = calculate_fee(adjusted * quantity, fee_rate)
    # from the filled price, same basis as Trade.r_multiple
    initial_risk = abs(entry_price - stop_loss) if stop_loss is not None else 0.0
    trade = Trade(
        symbol=symbol,
        side=side,
        entry_price=entry_price,
        quantity=round(quantity, PRICE_DECIMALS),
        stop_loss=stop_loss,
        take_profit=take_profit,
        take_profit1=take_profit1,
        partial_close_pct=partial_close_pct,
        entry_fee=entry_fee,
        opened_at=timestamp,
        strategy=strategy,
        initial_stop_loss=stop_loss,
        initial_risk=initial_risk,
        atr_at_entry=atr,
        payload=payload,
    )
    if trade_id:
        trade.id = trade_id
    return trade


def close_trade(
    trade: Trade,
    exit_price: float,
    timestamp: datetime,
    *,
    fee_rate: float,
    slippage: float,
    reason: str,
    partial_quantity: float | None = None,
) -> Trade:
    """Return the closed record for ``trade`` (or for a slice of it).

    The input trade is left untouched; booking the result is the ledger's job.
    """
    qty = trade.quantity if partial_quantity is None else partial_quantity
    adjusted = apply_slippage(exit_price, slippage, trade.side.exit_action)
    exit_fee = calculate_fee(adjusted * qty, fee_rate)
    if partial_quantity is None:
        entry_fee = trade.entry_fee
    else:
        entry_fee = trade.entry_fee * (qty / trade.quantity) if trade.quantity > 0 else 0.0
    pnl = (adjusted - trade.entry_price) * qty * trade.direction - entry_fee - exit_fee
    record = trade.clone(
        quantity=qty,
        entry_fee=entry_fee,
        exit_price=round(adjusted, PRICE_DECIMALS),
        exit_fee=exit_fee,
        pnl=round(pnl, PRICE_DECIMALS),
        status=TradeStatus.CLOSED if partial_quantity is None else TradeStatus.PARTIAL,
        closed_at=timestamp,
        exit_reason=reason,
    )
    if partial_quantity is not None:
        record.id = f"{trade.id}-p{int(timestamp.timestamp())}"
        record.parent_id = trade.id
    return record
