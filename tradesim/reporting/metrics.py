from __future__ import annotations

import math
from collections.abc import Sequence
from typing import Any

from tradesim.clock import to_millis
from tradesim.portfolio.models import EquityPoint, Trade, TradeSide


def _max_consecutive(pnls: Sequence[float], *, positive: bool) -> int:
    longest = 0
    current = 0
    for pnl in pnls:
        is_match = pnl > 0 if positive else pnl < 0
        if is_match:
            current += 1
            if current > longest:
                longest = current
        else:
            current = 0
    return longest


def realized_r(trade: Trade) -> float | None:
    """Net PnL of a closed record in units of the risk it was opened with."""
    if trade.pnl is None or trade.initial_risk <= 0 or trade.quantity <= 0:
        return None
    return trade.pnl / (trade.initial_risk * trade.quantity)


def compute_drawdown_series(equity: Sequence[EquityPoint]) -> list[dict[str, Any]]:
    """Running-peak drawdown per equity point; ``drawdown`` is never negative."""
    out: list[dict[str, Any]] = []
    peak: float | None = None
    for idx, point in enumerate(equity):
        if peak is None or point.equity > peak:
            peak = point.equity
        drawdown = max(0.0, peak - point.equity)
        out.append(
            {
                "idx": idx,
                "timestamp": to_millis(point.timestamp),
                "equity": point.equity,
                "peak": peak,
                "drawdown": drawdown,
                "drawdownPercent": (drawdown / peak * 100.0) if peak > 0 else 0.0,
            }
        )
    return out


def profit_factor(gross_profit: float, gross_loss: float) -> float:
    if gross_loss < 0:
        return gross_profit / abs(gross_loss)
    return math.inf if gross_profit > 0 else 0.0


def _side_breakdown(trades: Sequence[Trade], side: TradeSide) -> dict[str, Any]:
    pnls = [trade.pnl or 0.0 for trade in trades if trade.side is side]
    wins = sum(1 for pnl in pnls if pnl > 0)
    return {
        "trades": len(pnls),
        "pnl": sum(pnls),
        "winRate": (wins / len(pnls) * 100.0) if pnls else 0.0,
    }


def compute_metrics(trades: Sequence[Trade], equity: Sequence[EquityPoint]) -> dict[str, Any]:
    """Trade statistics over closed records (partial closes count as records)."""
    pnl_values = [trade.pnl or 0.0 for trade in trades]
    r_values = [value for value in (realized_r(trade) for trade in trades) if value is not None]
    trades_count = len(pnl_values)
    win_values = [pnl for pnl in pnl_values if pnl > 0]
    loss_values = [pnl for pnl in pnl_values if pnl < 0]
    gross_profit = sum(win_values)
    gross_loss = sum(loss_values)
    avg_win = (gross_profit / len(win_values)) if win_values else 0.0
    avg_loss = (gross_loss / len(loss_values)) if loss_values else 0.0
    win_r = [value for value in r_values if value > 0]
    loss_r = [value for value in r_values if value < 0]

    hold_minutes = [
        (trade.closed_at - trade.opened_at).total_seconds() / 60.0 for trade in trades if trade.closed_at is not None
    ]

    series = compute_drawdown_series(equity)
    return {
        "tradesCount": trades_count,
        "wins": len(win_values),
        "losses": len(loss_values),
        "winRate": (len(win_values) / trades_count * 100.0) if trades_count else 0.0,
        "totalPnl": sum(pnl_values),
        "grossProfit": gross_profit,
        "grossLoss": gross_loss,
        "profitFactor": profit_factor(gross_profit, gross_loss),
        "expectancy": (sum(pnl_values) / trades_count) if trades_count else 0.0,
        "expectancyR": (sum(r_values) / len(r_values)) if r_values else 0.0,
        "avgWin": avg_win,
        "avgLoss": avg_loss,
        "avgWinR": (sum(win_r) / len(win_r)) if win_r else 0.0,
        "avgLossR": (sum(loss_r) / len(loss_r)) if loss_r else 0.0,
        "payoffRatio": (avg_win / abs(avg_loss)) if avg_loss < 0 else 0.0,
        "fees": sum(trade.entry_fee + trade.exit_fee for trade in trades),
        "avgHoldMinutes": (sum(hold_minutes) / len(hold_minutes)) if hold_minutes else 0.0,
        "maxConsecutiveWins": _max_consecutive(pnl_values, positive=True),
        "maxConsecutiveLosses": _max_consecutive(pnl_values, positive=False),
        "long": _side_breakdown(trades, TradeSide.LONG),
        "short": _side_breakdown(trades, TradeSide.SHORT),
        "equityStart": series[0]["equity"] if series else 0.0,
        "equityEnd": series[-1]["equity"] if series else 0.0,
        "maxDrawdown": max((point["drawdown"] for point in series), default=0.0),
        "maxDrawdownPercent": max((point["drawdownPercent"] for point in series), default=0.0),
    }
