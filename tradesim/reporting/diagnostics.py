"""Entry-funnel counters shared by backtest, paper and real runs.

After a run they show where entries were lost:

    signals -> attempted -> admitted -> sized -> opened
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class EntryFunnel:
    """Accumulates per-stage counters across cycles."""

    # -- pipeline stages --
    cycles: int = 0
    attempted: int = 0
    opened: int = 0
    blocked_size: int = 0
    blocked_risk: int = 0
    blocked_open_trade: int = 0
    trades_closed: int = 0
    partial_closes: int = 0

    # -- breakdowns --
    hold_reasons: dict[str, int] = field(default_factory=dict)
    blocked_reasons: dict[str, int] = field(default_factory=dict)
    exit_reasons: dict[str, int] = field(default_factory=dict)

    # ------------------------------------------------------------------
    def record_hold(self, reason: str | None) -> None:
        key = reason or "UNKNOWN"
        self.hold_reasons[key] = self.hold_reasons.get(key, 0) + 1

    def record_block(self, reason: str) -> None:
        self.blocked_reasons[reason] = self.blocked_reasons.get(reason, 0) + 1

    def record_exit(self, reason: str, *, partial: bool = False) -> None:
        self.exit_reasons[reason] = self.exit_reasons.get(reason, 0) + 1
        if partial:
            self.partial_closes += 1
        else:
            self.trades_closed += 1

    def merge(self, other: "EntryFunnel") -> None:
        for name in (
            "cycles",
            "attempted",
            "opened",
            "blocked_size",
            "blocked_risk",
            "blocked_open_trade",
            "trades_closed",
            "partial_closes",
        ):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        for mine, theirs in (
            (self.hold_reasons, other.hold_reasons),
            (self.blocked_reasons, other.blocked_reasons),
            (self.exit_reasons, other.exit_reasons),
        ):
            for key, value in theirs.items():
                mine[key] = mine.get(key, 0) + value

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    def to_dict(self) -> dict[str, Any]:
        top_holds = sorted(self.hold_reasons.items(), key=lambda item: (-item[1], item[0]))[:10]
        return {
            "cycles": self.cycles,
            "entries": {
                "attempted": self.attempted,
                "opened": self.opened,
                "blockedSize": self.blocked_size,
                "blockedRisk": self.blocked_risk,
                "blockedOpenTrade": self.blocked_open_trade,
            },
            "tradesClosed": self.trades_closed,
            "partialCloses": self.partial_closes,
            "blockedReasons": dict(sorted(self.blocked_reasons.items())),
            "exitReasons": dict(sorted(self.exit_reasons.items())),
            "topHoldReasons": dict(top_holds),
        }
