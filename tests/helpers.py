from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone

from tradesim.config import AppConfig, RiskConfig
from tradesim.data.candles import Candle
from tradesim.portfolio.models import Trade, TradeSide
from tradesim.strategy.contracts import BaseStrategy, Signal, SignalAction, StrategyContext

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
FIVE_MIN = timedelta(minutes=5)


def candle_at(
    index: int,
    close: float,
    *,
    open_: float | None = None,
    high: float | None = None,
    low: float | None = None,
    period: timedelta = FIVE_MIN,
    start: datetime = START,
    volume: float = 1.0,
) -> Candle:
    open_price = close if open_ is None else open_
    return Candle(
        timestamp=start + index * period,
        open=open_price,
        high=max(open_price, close) + 0.5 if high is None else high,
        low=min(open_price, close) - 0.5 if low is None else low,
        close=close,
        volume=volume,
    )


def candles_from_closes(
    closes: Sequence[float],
    *,
    period: timedelta = FIVE_MIN,
    start: datetime = START,
) -> list[Candle]:
    out: list[Candle] = []
    prev = closes[0] if closes else 0.0
    for index, close in enumerate(closes):
        out.append(candle_at(index, close, open_=prev, period=period, start=start))
        prev = close
    return out


def ascending_candles(
    count: int,
    *,
    start_price: float = 100.0,
    step: float = 1.0,
    period: timedelta = FIVE_MIN,
    start: datetime = START,
) -> list[Candle]:
    return candles_from_closes([start_price + step * i for i in range(count)], period=period, start=start)


def make_config(**sections: Mapping[str, object]) -> AppConfig:
    raw: dict[str, object] = {"risk": {"trade_cooldown_seconds": 0}, "backtest": {"warmup_candles": 50}}
    for key, value in sections.items():
        merged = dict(raw.get(key, {}))  # type: ignore[arg-type]
        merged.update(value)
        raw[key] = merged
    return AppConfig.model_validate(raw)


def long_trade(
    *,
    entry: float = 100.0,
    quantity: float = 1.0,
    stop_loss: float | None = 95.0,
    take_profit: float | None = 110.0,
    take_profit1: float | None = None,
    opened_at: datetime = START,
    symbol: str = "BTC/USDT",
) -> Trade:
    return Trade(
        symbol=symbol,
        side=TradeSide.LONG,
        entry_price=entry,
        quantity=quantity,
        stop_loss=stop_loss,
        take_profit=take_profit,
        take_profit1=take_profit1,
        entry_fee=0.0,
        opened_at=opened_at,
        id="T-1",
    )


def short_trade(
    *,
    entry: float = 100.0,
    quantity: float = 1.0,
    stop_loss: float | None = 105.0,
    take_profit: float | None = 90.0,
    opened_at: datetime = START,
) -> Trade:
    return Trade(
        symbol="BTC/USDT",
        side=TradeSide.SHORT,
        entry_price=entry,
        quantity=quantity,
        stop_loss=stop_loss,
        take_profit=take_profit,
        entry_fee=0.0,
        opened_at=opened_at,
        id="T-2",
    )


class ScriptedStrategy(BaseStrategy):
    """Emits a fixed signal at chosen candle timestamps and records what it was shown."""

    name = "scripted"
    min_candles = 1

    def __init__(
        self,
        risk: RiskConfig,
        entries: Mapping[datetime, tuple[str, float | None, float | None]] | None = None,
        *,
        htf_timeframe: str | None = None,
        max_open_trades: int | None = None,
    ):
        super().__init__(risk)
        self.entries = dict(entries or {})
        self.htf_timeframe = htf_timeframe
        self.max_open_trades = max_open_trades
        self.seen: list[tuple[datetime, datetime | None, int]] = []
        self.opened: list[str] = []
        self.closed: list[str] = []

    def evaluate(self, candles: Sequence[Candle], context: StrategyContext) -> Signal:
        last = candles[-1]
        htf_last = context.htf_candles[-1].timestamp if context.htf_candles else None
        self.seen.append((last.timestamp, htf_last, len(candles)))
        entry = self.entries.get(last.timestamp)
        if entry is None:
            return self.hold(candles, "NO_SETUP")
        action, stop_loss, take_profit = entry
        return Signal(
            action=action,
            price=last.close,
            timestamp=last.timestamp,
            stop_loss=stop_loss,
            take_profit=take_profit,
            diagnostics={"reason": "SCRIPTED"},
        )

    def on_trade_opened(self, trade: Trade, signal: Signal, state: object) -> None:
        self.opened.append(trade.id)

    def on_trade_closed(self, trade: Trade, state: object) -> None:
        self.closed.append(trade.id)


def buy(stop_loss: float | None, take_profit: float | None) -> tuple[str, float | None, float | None]:
    return (SignalAction.BUY.value, stop_loss, take_profit)


def sell(stop_loss: float | None, take_profit: float | None) -> tuple[str, float | None, float | None]:
    return (SignalAction.SELL.value, stop_loss, take_profit)


class FakeExchange:
    """In-memory ExchangeClient: serves a candle list as if time were ``now``."""

    def __init__(self, candles: Mapping[str, Sequence[Candle]], *, balance: float = 10000.0):
        self.candles = {symbol: list(series) for symbol, series in candles.items()}
        self.visible = {symbol: 0 for symbol in self.candles}
        self.balance = balance
        self.orders: list[tuple[str, str, float, float | None, str]] = []
        self.fetch_calls = 0
        self.fail_next: Exception | None = None

    def reveal(self, symbol: str, count: int) -> None:
        self.visible[symbol] = count

    def fetch_ohlcv(self, symbol: str, timeframe: str, since: datetime | None = None, limit: int = 100) -> list[Candle]:
        self.fetch_calls += 1
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc
        series = self.candles[symbol][: self.visible[symbol]]
        if since is not None:
            series = [candle for candle in series if candle.timestamp >= since]
            return series[:limit]
        return series[-limit:]

    def fetch_ticker(self, symbol: str) -> float:
        return self.candles[symbol][max(0, self.visible[symbol] - 1)].close

    def place_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        price: float | None = None,
        order_type: str = "market",
    ) -> str:
        self.orders.append((symbol, side, quantity, price, order_type))
        return f"order-{len(self.orders)}"

    def place_trailing_stop(self, symbol: str, side: str, quantity: float, stop_price: float) -> str:
        return self.place_order(symbol, side, quantity, stop_price, "stop_loss")

    def get_available_balance(self, currency: str) -> float:
        return self.balance
