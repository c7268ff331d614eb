from __future__ import annotations

import argparse
import json
import logging
import math
import os
import signal
from datetime import datetime
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import ValidationError

from tradesim.backtest import (
    BacktestResult,
    fetch_backtest_candles,
    run_backtest,
    run_backtest_from_csv,
    run_multi_symbol_backtest,
)
from tradesim.clock import ensure_utc
from tradesim.config import AppConfig, ConfigurationError, load_config
from tradesim.data.candles import load_candles_csv, parse_timestamp
from tradesim.data.exchange import RestExchangeClient
from tradesim.live.scheduler import TickScheduler
from tradesim.live.session import TradingSession
from tradesim.storage.persister import TradePersister, build_persister
from tradesim.strategy.registry import available_strategies

LOGGER = logging.getLogger("tradesim")

EXIT_CONFIG_ERROR = 2


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rule-based trading simulator: backtest, paper and real modes")
    mode_group = parser.add_mutually_exclusive_group(required=True)
    mode_group.add_argument("--backtest", action="store_true", help="Replay historical candles and exit.")
    mode_group.add_argument("--paper", action="store_true", help="Simulated live trading against exchange candles.")
    mode_group.add_argument("--real", action="store_true", help="Live order placement (dry run unless DRY_RUN=false).")

    parser.add_argument(
        "--data",
        action="append",
        default=[],
        help="Backtest CSV, either PATH or SYMBOL=PATH. Repeat for several symbols.",
    )
    parser.add_argument("--from", dest="start", default=None, help="Backtest start (ISO date) when fetching candles.")
    parser.add_argument("--to", dest="end", default=None, help="Backtest end (ISO date) when fetching candles.")
    parser.add_argument("--strategy", default=None, help=f"One of: {', '.join(available_strategies())}")
    parser.add_argument("--symbols", default=None, help="Comma separated symbols, e.g. BTC/USDT,ETH/USDT")
    parser.add_argument("--timeframe", default=None)
    parser.add_argument("--config", default=None, help="Path to YAML config")
    parser.add_argument("--json-out", default=None, help="Write the backtest result JSON to this path.")
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def parse_symbols_csv(raw: str | None) -> list[str]:
    if not raw:
        return []
    out: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        symbol = part.strip().upper()
        if not symbol or symbol in seen:
            continue
        seen.add(symbol)
        out.append(symbol)
    return out


def _env_flag(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def apply_env_overrides(config: AppConfig) -> AppConfig:
    dry_run = _env_flag("DRY_RUN")
    if dry_run is not None:
        config.real.dry_run = dry_run
    kill_switch = os.getenv("KILL_SWITCH_LOSS_PERCENT")
    if kill_switch:
        value = float(kill_switch)
        if value <= 0:
            raise ConfigurationError("KILL_SWITCH_LOSS_PERCENT must be > 0")
        config.real.kill_switch_loss_pct = value
    return config


def build_client(config: AppConfig) -> RestExchangeClient:
    return RestExchangeClient.from_config(
        config.exchange,
        api_key=os.getenv("EXCHANGE_API_KEY"),
        api_secret=os.getenv("EXCHANGE_API_SECRET"),
    )


def _parse_date(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return ensure_utc(parse_timestamp(raw))
    except ValueError as exc:
        raise ConfigurationError(f"Invalid date '{raw}'") from exc


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _sanitize(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return "Infinity" if value > 0 else None
    if isinstance(value, dict):
        return {key: _sanitize(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_sanitize(item) for item in value]
    return value


def _data_sources(entries: list[str], symbols: list[str]) -> dict[str, str]:
    sources: dict[str, str] = {}
    for entry in entries:
        if "=" in entry:
            symbol, path = entry.split("=", 1)
            sources[symbol.strip().upper()] = path.strip()
        else:
            if not symbols:
                raise ConfigurationError("At least one symbol is required")
            sources[symbols[len(sources) % len(symbols)]] = entry.strip()
    return sources


def run_backtest_mode(
    args: argparse.Namespace,
    config: AppConfig,
    symbols: list[str],
    persister: TradePersister,
) -> BacktestResult:
    timeframe = args.timeframe or config.backtest.timeframe
    if args.data:
        sources = _data_sources(args.data, symbols)
        for path in sources.values():
            if not Path(path).exists():
                raise ConfigurationError(f"Backtest data file not found: {path}")
        if len(sources) == 1:
            symbol, path = next(iter(sources.items()))
            return run_backtest_from_csv(
                config=config,
                path=path,
                symbol=symbol,
                strategy=args.strategy,
                timeframe=timeframe,
                persister=persister,
            )
        candles_by_symbol = {symbol: load_candles_csv(path) for symbol, path in sources.items()}
        return run_multi_symbol_backtest(
            config=config,
            candles_by_symbol=candles_by_symbol,
            strategy=args.strategy,
            timeframe=timeframe,
            persister=persister,
        )

    start, end = _parse_date(args.start), _parse_date(args.end)
    if start is None or end is None:
        raise ConfigurationError("--backtest needs --data or both --from and --to")
    client = build_client(config)
    candles_by_symbol = {
        symbol: fetch_backtest_candles(client, symbol, timeframe, start, end) for symbol in symbols
    }
    if len(symbols) == 1:
        symbol = symbols[0]
        return run_backtest(
            config=config,
            candles=candles_by_symbol[symbol],
            symbol=symbol,
            strategy=args.strategy,
            timeframe=timeframe,
            persister=persister,
        )
    return run_multi_symbol_backtest(
        config=config,
        candles_by_symbol=candles_by_symbol,
        strategy=args.strategy,
        timeframe=timeframe,
        persister=persister,
    )


def run_live_mode(
    args: argparse.Namespace,
    config: AppConfig,
    symbols: list[str],
    persister: TradePersister,
) -> None:
    mode = "real" if args.real else "paper"
    session = TradingSession(
        config=config,
        client=build_client(config),
        mode=mode,
        symbols=symbols,
        strategy=args.strategy,
        timeframe=args.timeframe,
        persister=persister,
    )
    interval = config.real.interval_seconds if mode == "real" else config.paper.interval_seconds
    scheduler = TickScheduler(session.tick, interval, name=f"{mode}-session")

    def _stop(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down.", signum)
        scheduler.stop()

    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop)

    LOGGER.info(
        "Starting %s trading strategy=%s symbols=%s timeframe=%s dry_run=%s",
        mode,
        session.strategy_name,
        ",".join(session.symbols),
        session.timeframe,
        config.real.dry_run if mode == "real" else "-",
    )
    scheduler.run_forever()
    LOGGER.info("Session status: %s", json.dumps(_sanitize(session.status()), default=_json_default))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    try:
        config = apply_env_overrides(load_config(args.config))
    except (ConfigurationError, ValidationError, ValueError) as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG_ERROR
    symbols = parse_symbols_csv(args.symbols) or list(config.symbols)

    persister = build_persister(config.storage, os.getenv("TRADESIM_DB_PATH"))
    try:
        if args.backtest:
            result = run_backtest_mode(args, config, symbols, persister)
            payload = _sanitize(result.to_dict())
            if args.json_out:
                Path(args.json_out).write_text(
                    json.dumps(payload, indent=2, ensure_ascii=True, default=_json_default), encoding="utf-8"
                )
                LOGGER.info("Backtest result written to %s", args.json_out)
            summary = {key: value for key, value in payload.items() if key not in {"equityCurve", "drawdownCurve", "tradeList"}}
            LOGGER.info("Backtest report: %s", json.dumps(summary, indent=2, ensure_ascii=True, default=_json_default))
        else:
            run_live_mode(args, config, symbols, persister)
    except ConfigurationError as exc:
        LOGGER.error("Configuration error: %s", exc)
        return EXIT_CONFIG_ERROR
    finally:
        persister.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
