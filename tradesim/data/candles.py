from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd

from tradesim.clock import from_millis

_CSV_TS_CANDIDATES = ("timestamp", "ts_utc", "datetime", "date", "time", "open_time")
_CSV_VOLUME_CANDIDATES = ("volume", "vol", "tick_volume")


@dataclass(slots=True, frozen=True)
class Candle:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @classmethod
    def from_ohlcv(cls, row: Sequence[float]) -> "Candle":
        if len(row) < 5:
            raise ValueError("OHLCV row must contain at least timestamp,open,high,low,close")
        volume = float(row[5]) if len(row) > 5 and row[5] is not None else 0.0
        return cls(
            timestamp=from_millis(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=volume,
        )


def parse_timestamp(value: str) -> datetime:
    normalized = value.strip().replace(" ", "T")
    if normalized.isdigit():
        return from_millis(int(normalized))
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def candles_from_ohlcv(rows: Sequence[Sequence[float]]) -> list[Candle]:
    """Convert exchange rows to candles, ascending and without duplicate timestamps."""
    by_ts: dict[datetime, Candle] = {}
    for row in rows:
        candle = Candle.from_ohlcv(row)
        by_ts[candle.timestamp] = candle
    return [by_ts[key] for key in sorted(by_ts)]


def _pick_column(columns: Sequence[str], candidates: Sequence[str]) -> str | None:
    lowered = {name.lower(): name for name in columns}
    for candidate in candidates:
        if candidate in lowered:
            return lowered[candidate]
    return None


def candles_from_frame(frame: pd.DataFrame) -> list[Candle]:
    if frame.empty:
        return []
    columns = [str(col).lstrip("\ufeff").strip() for col in frame.columns]
    frame = frame.copy()
    frame.columns = columns
    ts_col = _pick_column(columns, _CSV_TS_CANDIDATES)
    if ts_col is None:
        raise ValueError("CSV must include a timestamp column")
    for required in ("open", "high", "low", "close"):
        if _pick_column(columns, (required,)) is None:
            raise ValueError("CSV must include: timestamp,open,high,low,close")
    raw_ts = frame[ts_col]
    if pd.api.types.is_numeric_dtype(raw_ts):
        ts = pd.to_datetime(raw_ts, unit="ms", utc=True)
    else:
        ts = pd.to_datetime(raw_ts, utc=True)
    volume_col = _pick_column(columns, _CSV_VOLUME_CANDIDATES)
    normalized = pd.DataFrame(
        {
            "ts_utc": ts,
            "open": pd.to_numeric(frame[_pick_column(columns, ("open",))], errors="coerce"),
            "high": pd.to_numeric(frame[_pick_column(columns, ("high",))], errors="coerce"),
            "low": pd.to_numeric(frame[_pick_column(columns, ("low",))], errors="coerce"),
            "close": pd.to_numeric(frame[_pick_column(columns, ("close",))], errors="coerce"),
            "volume": pd.to_numeric(frame[volume_col], errors="coerce") if volume_col else 0.0,
        }
    )
    normalized = normalized.dropna(subset=["ts_utc", "open", "high", "low", "close"])
    normalized = normalized.drop_duplicates(subset="ts_utc", keep="last").sort_values("ts_utc")
    candles: list[Candle] = []
    for row in normalized.itertuples(index=False):
        candles.append(
            Candle(
                timestamp=row.ts_utc.to_pydatetime(),
                open=float(row.open),
                high=float(row.high),
                low=float(row.low),
                close=float(row.close),
                volume=float(row.volume) if pd.notna(row.volume) else 0.0,
            )
        )
    return candles


def load_candles_csv(path: str | Path) -> list[Candle]:
    frame = pd.read_csv(Path(path))
    return candles_from_frame(frame)
