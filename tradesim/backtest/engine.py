from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from tradesim.clock import ensure_utc, timeframe_to_delta, timeframe_to_minutes
from tradesim.config import AppConfig, ConfigurationError
from tradesim.data.candles import Candle, load_candles_csv
from tradesim.data.exchange import ExchangeClient
from tradesim.data.feed import HtfCursor, aggregate_candles
from tradesim.engine.cycle import TradeSink, TradingCycle
from tradesim.portfolio.ledger import Portfolio
from tradesim.portfolio.models import EquityPoint, PortfolioSummary, Trade
from tradesim.reporting.diagnostics import EntryFunnel
from tradesim.reporting.metrics import compute_drawdown_series, compute_metrics
from tradesim.reporting.metrics import profit_factor as ratio_profit_factor
from tradesim.strategy.contracts import BaseStrategy
from tradesim.strategy.registry import build_strategy

LOGGER = logging.getLogger(__name__)

HISTORY_WINDOW = 1000
FETCH_PAGE_SIZE = 1000


@dataclass(slots=True)
class BacktestResult:
    initial_balance: float
    summary: PortfolioSummary
    trades: list[Trade]
    equity_curve: list[EquityPoint]
    funnel: EntryFunnel
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def final_balance(self) -> float:
        return self.summary.balance

    @property
    def total_trades(self) -> int:
        return len(self.trades)

    @property
    def win_rate(self) -> float:
        if not self.trades:
            return 0.0
        wins = sum(1 for trade in self.trades if (trade.pnl or 0.0) > 0)
        return round(wins / len(self.trades) * 100, 2)

    @property
    def profit_factor(self) -> float:
        gross_profit = sum(trade.pnl for trade in self.trades if trade.pnl is not None and trade.pnl > 0)
        gross_loss = sum(trade.pnl for trade in self.trades if trade.pnl is not None and trade.pnl < 0)
        value = ratio_profit_factor(gross_profit, gross_loss)
        return value if math.isinf(value) else round(value, 4)

    def to_dict(self) -> dict[str, Any]:
        drawdown_curve = [
            {
                "timestamp": point["timestamp"],
                "drawdown": round(point["drawdownPercent"], 4),
                "equity": point["equity"],
            }
            for point in compute_drawdown_series(self.equity_curve)
        ]
        return {
            "finalBalance": self.final_balance,
            "initialBalance": self.initial_balance,
            "totalTrades": self.total_trades,
            "winRate": self.win_rate,
            "profitFactor": self.profit_factor,
            "maxDrawdown": self.summary.max_drawdown,
            "totalPnl": self.summary.total_pnl,
            "totalPnlPercent": self.summary.total_pnl_percent,
            "equityCurve": [point.to_dict() for point in self.equity_curve],
            "drawdownCurve": drawdown_curve,
            "tradeList": [trade.to_dict() for trade in self.trades],
            "metrics": compute_metrics(self.trades, self.equity_curve),
            "meta": dict(self.meta),
            "diagnostics": self.funnel.to_dict(),
        }


def _ltf_period(timeframe: str) -> timedelta:
    try:
        return timeframe_to_delta(timeframe)
    except ValueError as exc:
        raise ConfigurationError(str(exc)) from exc


def _resolve_strategy(strategy: BaseStrategy | str | None, config: AppConfig) -> BaseStrategy:
    if isinstance(strategy, BaseStrategy):
        return strategy
    return build_strategy(strategy, config)


def _htf_series(
    strategy: BaseStrategy,
    candles: Sequence[Candle],
    htf_candles: Sequence[Candle] | None,
    timeframe: str,
) -> tuple[list[Candle], timedelta | None]:
    """HTF candles for ``strategy``: the supplied series, or one aggregated from the LTF candles."""
    if not strategy.htf_timeframe:
        return [], None
    htf_period = _ltf_period(strategy.htf_timeframe)
    if htf_candles is not None:
        return list(htf_candles), htf_period
    ltf_minutes = timeframe_to_minutes(timeframe)
    htf_minutes = timeframe_to_minutes(strategy.htf_timeframe)
    if htf_minutes <= ltf_minutes or htf_minutes % ltf_minutes:
        LOGGER.warning(
            "Cannot build %s candles from %s; strategy %s runs without HTF data",
            strategy.htf_timeframe,
            timeframe,
            strategy.name,
        )
        return [], htf_period
    return aggregate_candles(candles, htf_minutes), htf_period


def _check_series(symbol: str, candles: Sequence[Candle]) -> None:
    if not candles:
        raise ConfigurationError(f"No OHLCV data available for {symbol} in the specified range")


def run_backtest(
    *,
    config: AppConfig,
    candles: Sequence[Candle],
    symbol: str | None = None,
    strategy: BaseStrategy | str | None = None,
    htf_candles: Sequence[Candle] | None = None,
    timeframe: str | None = None,
    persister: TradeSink | None = None,
) -> BacktestResult:
    """Replay ``candles`` through the trading cycle, one closed candle at a time.

    Iteration starts at ``backtest.warmup_candles``. Each step sees only the
    candles up to and including the current one, and HTF candles that had closed
    by the current candle's close. Trades still open after the last candle are
    closed at its close with reason ``END_OF_DATA``.
    """
    if symbol is None:
        if not config.symbols:
            raise ConfigurationError("At least one symbol is required")
        symbol = config.symbols[0]
    _check_series(symbol, candles)
    timeframe = timeframe or config.backtest.timeframe
    ltf_period = _ltf_period(timeframe)
    evaluator = _resolve_strategy(strategy, config)
    htf_series, htf_period = _htf_series(evaluator, candles, htf_candles, timeframe)

    portfolio = Portfolio(
        config.risk.initial_balance,
        fee_rate=config.trading.fee,
        slippage=config.trading.slippage,
        started_at=candles[0].timestamp,
    )
    # the cursor below hands the cycle HTF candles that are already clipped
    cycle = TradingCycle(
        symbol=symbol,
        strategy=evaluator,
        portfolio=portfolio,
        risk=config.risk,
        ltf_period=ltf_period,
        mode="backtest",
        max_open_trades=config.risk.max_open_trades,
        persister=persister,
    )
    cursor = HtfCursor(htf_series, htf_period) if htf_period is not None else None
    warmup = config.backtest.warmup_candles

    LOGGER.info(
        "Backtest start symbol=%s strategy=%s timeframe=%s candles=%d htf_candles=%d",
        symbol,
        evaluator.name,
        timeframe,
        len(candles),
        len(htf_series),
    )
    for index in range(warmup, len(candles)):
        window = candles[max(0, index + 1 - HISTORY_WINDOW) : index + 1]
        htf_window: Sequence[Candle] = ()
        if cursor is not None:
            htf_window = cursor.advance(candles[index].timestamp + ltf_period, window=HISTORY_WINDOW)
        cycle.run(window, htf_window)

    last = candles[-1]
    cycle.close_all(last.close, last.timestamp, "END_OF_DATA")
    portfolio.update_equity_curve(last.timestamp, {symbol: last.close})

    result = BacktestResult(
        initial_balance=portfolio.initial_balance,
        summary=portfolio.get_summary(),
        trades=list(portfolio.closed_trades),
        equity_curve=list(portfolio.equity_curve),
        funnel=cycle.funnel,
        meta={
            "strategy": evaluator.name,
            "symbols": [symbol],
            "ltfTimeframe": timeframe,
            "htfTimeframe": evaluator.htf_timeframe,
            "candles": {"ltf": len(candles), "htf": len(htf_series) if htf_period is not None else None},
            "warmupCandles": warmup,
        },
    )
    LOGGER.info(
        "Backtest done symbol=%s trades=%d final_balance=%.2f pnl_pct=%.4f",
        symbol,
        result.total_trades,
        result.final_balance,
        result.summary.total_pnl_percent,
    )
    return result


def run_multi_symbol_backtest(
    *,
    config: AppConfig,
    candles_by_symbol: Mapping[str, Sequence[Candle]],
    strategy: str | Callable[[], BaseStrategy] | None = None,
    htf_by_symbol: Mapping[str, Sequence[Candle]] | None = None,
    timeframe: str | None = None,
    workers: int | None = None,
    persister: TradeSink | None = None,
) -> BacktestResult:
    """Backtest several symbols against one shared portfolio.

    ``strategy`` is a registry name or a zero-argument factory; every symbol gets
    its own instance. Strategy evaluation for the symbols of one timestamp runs in
    a thread pool. Exits, admission and every ledger mutation run on the calling
    thread under ``ledger_lock`` in sorted symbol order, so the result does not
    depend on thread scheduling.
    """
    if not candles_by_symbol:
        raise ConfigurationError("At least one symbol is required")
    symbols = sorted(candles_by_symbol)
    for symbol in symbols:
        _check_series(symbol, candles_by_symbol[symbol])
    timeframe = timeframe or config.backtest.timeframe
    ltf_period = _ltf_period(timeframe)
    warmup = config.backtest.warmup_candles
    if strategy is None or isinstance(strategy, str):
        name = strategy
        factory: Callable[[], BaseStrategy] = lambda: build_strategy(name, config)
    else:
        factory = strategy
    evaluators = {symbol: factory() for symbol in symbols}

    start = min(candles_by_symbol[symbol][0].timestamp for symbol in symbols)
    portfolio = Portfolio(
        config.risk.initial_balance,
        fee_rate=config.trading.fee,
        slippage=config.trading.slippage,
        started_at=start,
    )
    ledger_lock = threading.Lock()
    cycles: dict[str, TradingCycle] = {}
    cursors: dict[str, HtfCursor | None] = {}
    for symbol in symbols:
        evaluator = evaluators[symbol]
        series = candles_by_symbol[symbol]
        htf_series, htf_period = _htf_series(
            evaluator, series, (htf_by_symbol or {}).get(symbol), timeframe
        )
        cycles[symbol] = TradingCycle(
            symbol=symbol,
            strategy=evaluator,
            portfolio=portfolio,
            risk=config.risk,
            ltf_period=ltf_period,
            mode="backtest",
            max_open_trades=config.risk.max_open_trades,
            persister=persister,
        )
        cursors[symbol] = HtfCursor(htf_series, htf_period) if htf_period is not None else None

    timeline = sorted({candle.timestamp for symbol in symbols for candle in candles_by_symbol[symbol]})
    positions = {symbol: 0 for symbol in symbols}
    marks: dict[str, float] = {}

    pool_size = max(1, min(workers or config.backtest.parallel_workers, len(symbols)))
    with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="backtest-eval") as pool:
        for timestamp in timeline:
            active: list[tuple[str, Sequence[Candle], Sequence[Candle]]] = []
            for symbol in symbols:
                series = candles_by_symbol[symbol]
                index = positions[symbol]
                if index >= len(series) or series[index].timestamp != timestamp:
                    continue
                positions[symbol] = index + 1
                marks[symbol] = series[index].close
                if index < warmup:
                    continue
                window = series[max(0, index + 1 - HISTORY_WINDOW) : index + 1]
                cursor = cursors[symbol]
                htf_window = (
                    cursor.advance(timestamp + ltf_period, window=HISTORY_WINDOW) if cursor is not None else ()
                )
                active.append((symbol, window, htf_window))
            if not active:
                continue

            with ledger_lock:
                for symbol, window, _ in active:
                    cycle = cycles[symbol]
                    cycle.roll_day(window)
                    cycle.advance_trailing(window)
                    cycle.check_exits(window)

            signals = list(pool.map(lambda item: cycles[item[0]].evaluate(item[1], item[2]), active))

            with ledger_lock:
                for (symbol, window, _), signal in zip(active, signals):
                    cycles[symbol].maybe_open(signal, window)
                portfolio.update_equity_curve(timestamp, dict(marks))

    end = timeline[-1]
    with ledger_lock:
        for symbol in symbols:
            last = candles_by_symbol[symbol][-1]
            cycles[symbol].close_all(last.close, last.timestamp, "END_OF_DATA")
        portfolio.update_equity_curve(end, dict(marks))

    funnel = EntryFunnel()
    for symbol in symbols:
        funnel.merge(cycles[symbol].funnel)
    first = cycles[symbols[0]].strategy
    return BacktestResult(
        initial_balance=portfolio.initial_balance,
        summary=portfolio.get_summary(),
        trades=list(portfolio.closed_trades),
        equity_curve=list(portfolio.equity_curve),
        funnel=funnel,
        meta={
            "strategy": first.name,
            "symbols": symbols,
            "ltfTimeframe": timeframe,
            "htfTimeframe": first.htf_timeframe,
            "candles": {symbol: len(candles_by_symbol[symbol]) for symbol in symbols},
            "warmupCandles": warmup,
            "workers": pool_size,
        },
    )


def fetch_backtest_candles(
    client: ExchangeClient,
    symbol: str,
    timeframe: str,
    start: datetime | None,
    end: datetime | None,
    *,
    page_size: int = FETCH_PAGE_SIZE,
) -> list[Candle]:
    """Page through ``fetch_ohlcv`` from ``start`` until ``end`` or a short page."""
    if start is None or end is None:
        raise ConfigurationError("Backtest requires both a start and an end date")
    start = ensure_utc(start)
    end = ensure_utc(end)
    if start >= end:
        raise ConfigurationError(f"Backtest start {start.isoformat()} must be before end {end.isoformat()}")

    by_ts: dict[datetime, Candle] = {}
    since = start
    while since < end:
        page = client.fetch_ohlcv(symbol, timeframe, since=since, limit=page_size)
        if not page:
            break
        for candle in page:
            if start <= candle.timestamp <= end:
                by_ts[candle.timestamp] = candle
        next_since = page[-1].timestamp + timedelta(milliseconds=1)
        if next_since <= since:
            break
        since = next_since
        if len(page) < page_size:
            break
    LOGGER.info("Fetched %d %s candles for %s", len(by_ts), timeframe, symbol)
    return [by_ts[ts] for ts in sorted(by_ts)]


def run_backtest_range(
    *,
    config: AppConfig,
    client: ExchangeClient,
    symbol: str,
    start: datetime | None,
    end: datetime | None,
    strategy: str | None = None,
    timeframe: str | None = None,
    persister: TradeSink | None = None,
) -> BacktestResult:
    evaluator = build_strategy(strategy, config)
    timeframe = timeframe or config.backtest.timeframe
    candles = fetch_backtest_candles(client, symbol, timeframe, start, end)
    _check_series(symbol, candles)
    htf_candles = None
    if evaluator.htf_timeframe:
        htf_candles = fetch_backtest_candles(client, symbol, evaluator.htf_timeframe, start, end)
    return run_backtest(
        config=config,
        candles=candles,
        symbol=symbol,
        strategy=evaluator,
        htf_candles=htf_candles,
        timeframe=timeframe,
        persister=persister,
    )


def run_backtest_from_csv(
    *,
    config: AppConfig,
    path: str | Path,
    symbol: str | None = None,
    strategy: str | None = None,
    htf_path: str | Path | None = None,
    timeframe: str | None = None,
    persister: TradeSink | None = None,
) -> BacktestResult:
    candles = load_candles_csv(path)
    htf_candles = load_candles_csv(htf_path) if htf_path else None
    return run_backtest(
        config=config,
        candles=candles,
        symbol=symbol,
        strategy=strategy,
        htf_candles=htf_candles,
        timeframe=timeframe,
        persister=persister,
    )
