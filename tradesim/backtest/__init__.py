from tradesim.backtest.engine import (
    BacktestResult,
    fetch_backtest_candles,
    run_backtest,
    run_backtest_from_csv,
    run_backtest_range,
    run_multi_symbol_backtest,
)

__all__ = [
    "BacktestResult",
    "fetch_backtest_candles",
    "run_backtest",
    "run_backtest_from_csv",
    "run_backtest_range",
    "run_multi_symbol_backtest",
]
