from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

_TIMEFRAME_MINUTES = {
    "1m": 1,
    "m1": 1,
    "3m": 3,
    "5m": 5,
    "m5": 5,
    "15m": 15,
    "m15": 15,
    "30m": 30,
    "m30": 30,
    "1h": 60,
    "h1": 60,
    "2h": 120,
    "4h": 240,
    "h4": 240,
    "1d": 1440,
    "d1": 1440,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_millis(value: int | float) -> datetime:
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)


def to_millis(dt: datetime) -> int:
    return int(round(ensure_utc(dt).timestamp() * 1000))


def trading_day(dt: datetime) -> date:
    return ensure_utc(dt).date()


def start_of_day(dt: datetime) -> datetime:
    utc = ensure_utc(dt)
    return datetime(utc.year, utc.month, utc.day, tzinfo=timezone.utc)


def timeframe_to_minutes(timeframe: str) -> int:
    normalized = timeframe.strip().lower()
    if normalized not in _TIMEFRAME_MINUTES:
        raise ValueError(f"Unsupported timeframe {timeframe}")
    return _TIMEFRAME_MINUTES[normalized]


def timeframe_to_delta(timeframe: str) -> timedelta:
    return timedelta(minutes=timeframe_to_minutes(timeframe))
