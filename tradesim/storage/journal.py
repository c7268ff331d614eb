from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone

from tradesim.storage.models import TradeRecord


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class TradeJournal:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()

    def _upsert(self, record: TradeRecord) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO trades (
                    trade_id, mode, symbol, side, strategy, status, entry_price, exit_price, quantity,
                    stop_loss, take_profit, pnl, fees, reason, opened_at, closed_at, updated_at, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(mode, trade_id) DO UPDATE SET
                    status=excluded.status,
                    exit_price=excluded.exit_price,
                    quantity=excluded.quantity,
                    stop_loss=excluded.stop_loss,
                    take_profit=excluded.take_profit,
                    pnl=excluded.pnl,
                    fees=excluded.fees,
                    reason=excluded.reason,
                    closed_at=excluded.closed_at,
                    updated_at=excluded.updated_at,
                    metadata=excluded.metadata
                """,
                (
                    record.trade_id,
                    record.mode,
                    record.symbol,
                    record.side,
                    record.strategy,
                    record.status,
                    record.entry_price,
                    record.exit_price,
                    record.quantity,
                    record.stop_loss,
                    record.take_profit,
                    record.pnl,
                    record.fees,
                    record.reason,
                    _to_iso(record.opened_at),
                    _to_iso(record.closed_at),
                    _to_iso(datetime.now(timezone.utc)),
                    json.dumps(record.metadata),
                ),
            )
            self.conn.commit()

    def save_open(self, record: TradeRecord) -> None:
        self._upsert(record)

    def save_close(self, record: TradeRecord) -> None:
        self._upsert(record)

    def list_trades(self, mode: str | None = None, symbol: str | None = None) -> list[TradeRecord]:
        query = "SELECT * FROM trades"
        clauses: list[str] = []
        params: list[str] = []
        if mode is not None:
            clauses.append("mode = ?")
            params.append(mode)
        if symbol is not None:
            clauses.append("symbol = ?")
            params.append(symbol)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY opened_at, trade_id"
        with self.lock:
            rows = self.conn.execute(query, params).fetchall()
        return [
            TradeRecord(
                trade_id=str(row["trade_id"]),
                mode=str(row["mode"]),
                symbol=str(row["symbol"]),
                side=str(row["side"]),
                entry_price=float(row["entry_price"]),
                quantity=float(row["quantity"]),
                status=str(row["status"]),
                strategy=str(row["strategy"]),
                opened_at=datetime.fromisoformat(row["opened_at"]),
                exit_price=row["exit_price"],
                stop_loss=row["stop_loss"],
                take_profit=row["take_profit"],
                pnl=row["pnl"],
                fees=float(row["fees"] or 0.0),
                reason=row["reason"],
                closed_at=_from_iso(row["closed_at"]),
                metadata=json.loads(row["metadata"] or "{}"),
            )
            for row in rows
        ]
