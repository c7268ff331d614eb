from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


class ConfigurationError(ValueError):
    """Invalid run configuration, raised before any trading state is created."""


def _check_fraction(name: str, value: float, *, allow_zero: bool = False) -> None:
    lower_ok = value >= 0 if allow_zero else value > 0
    if not lower_ok or value > 1.0:
        bound = "[0,1]" if allow_zero else "(0,1]"
        raise ValueError(f"{name} must be in {bound}")


class TradingConfig(BaseModel):
    fee: float = 0.001
    slippage: float = 0.0005

    @model_validator(mode="after")
    def validate_costs(self) -> "TradingConfig":
        _check_fraction("trading.fee", self.fee, allow_zero=True)
        _check_fraction("trading.slippage", self.slippage, allow_zero=True)
        return self


class RiskConfig(BaseModel):
    initial_balance: float = 10000.0
    risk_per_trade: float = 0.01
    max_trades_per_day: int = 3
    max_daily_loss: float = 0.05
    max_drawdown: float = 0.10
    stop_loss_pct: float = 0.015
    take_profit_pct: float = 0.03
    trade_cooldown_seconds: int = 600
    max_open_trades: int = 3

    @model_validator(mode="after")
    def validate_risk(self) -> "RiskConfig":
        if self.initial_balance <= 0:
            raise ValueError("initial_balance must be > 0")
        _check_fraction("risk_per_trade", self.risk_per_trade)
        _check_fraction("max_daily_loss", self.max_daily_loss)
        _check_fraction("max_drawdown", self.max_drawdown)
        _check_fraction("stop_loss_pct", self.stop_loss_pct)
        if self.take_profit_pct <= 0:
            raise ValueError("take_profit_pct must be > 0")
        if self.max_trades_per_day <= 0:
            raise ValueError("max_trades_per_day must be > 0")
        if self.trade_cooldown_seconds < 0:
            raise ValueError("trade_cooldown_seconds must be >= 0")
        if self.max_open_trades <= 0:
            raise ValueError("max_open_trades must be > 0")
        return self


class GoldenCrossConfig(BaseModel):
    ema_fast: int = 20
    ema_slow: int = 50
    htf_ema: int = 50
    adx_threshold: float = 15.0
    trail_percent: float = 0.02
    min_hold_bars: int = 3
    max_hold_bars: int = 30

    @model_validator(mode="after")
    def validate_values(self) -> "GoldenCrossConfig":
        if self.ema_fast >= self.ema_slow:
            raise ValueError("golden_cross_htf.ema_fast must be < ema_slow")
        _check_fraction("golden_cross_htf.trail_percent", self.trail_percent)
        if self.min_hold_bars < 0 or self.max_hold_bars <= self.min_hold_bars:
            raise ValueError("golden_cross_htf hold bars must satisfy 0 <= min < max")
        return self


class SwingTrendConfig(BaseModel):
    atr_multiplier: float = 1.5
    trail_atr_multiplier: float = 2.5
    take_profit_r: float = 3.5
    cooldown_candles: int = 2
    time_exit_candles: int = 15
    buy_score_threshold: int = 7
    sell_score_threshold: int = 7
    adx_min: float = 20.0
    adx_strong_threshold: float = 25.0
    atr_percent_min: float = 0.5
    early_exit_r_threshold: float = -0.5


class MomentumTrailingConfig(BaseModel):
    momentum_length: int = 12
    activation_percent: float = 0.01
    trailing_percent: float = 0.005
    atr_multiplier: float = 1.5
    breakeven_rr: float = 2.0
    partial_tp_rr: float = 3.0
    partial_close_percent: float = 0.5

    @model_validator(mode="after")
    def validate_values(self) -> "MomentumTrailingConfig":
        if self.momentum_length <= 0:
            raise ValueError("momentum_trailing.momentum_length must be > 0")
        _check_fraction("momentum_trailing.partial_close_percent", self.partial_close_percent)
        return self


class StrategyConfig(BaseModel):
    name: str = "ema_crossover"
    params: dict[str, Any] = Field(default_factory=dict)
    golden_cross_htf: GoldenCrossConfig = Field(default_factory=GoldenCrossConfig)
    swing_trend: SwingTrendConfig = Field(default_factory=SwingTrendConfig)
    momentum_trailing: MomentumTrailingConfig = Field(default_factory=MomentumTrailingConfig)

    @model_validator(mode="after")
    def normalize_name(self) -> "StrategyConfig":
        self.name = str(self.name).strip().lower()
        return self


class BacktestConfig(BaseModel):
    warmup_candles: int = 50
    timeframe: str = "5m"
    htf_timeframe: str = "15m"
    parallel_workers: int = 4

    @model_validator(mode="after")
    def validate_values(self) -> "BacktestConfig":
        if self.warmup_candles < 1:
            raise ValueError("backtest.warmup_candles must be >= 1")
        if self.parallel_workers < 1:
            raise ValueError("backtest.parallel_workers must be >= 1")
        return self


class PaperConfig(BaseModel):
    interval_seconds: float = 60.0
    history_limit: int = 100
    history_cap: int = 500
    max_open_trades: int = 3
    max_capital_per_trade: float | None = None


class RealConfig(BaseModel):
    interval_seconds: float = 60.0
    max_capital_per_trade: float = 0.05
    max_open_trades: int = 1
    kill_switch_loss_pct: float = 10.0
    dry_run: bool = True
    quote_currency: str = "USDT"

    @model_validator(mode="after")
    def validate_values(self) -> "RealConfig":
        _check_fraction("real.max_capital_per_trade", self.max_capital_per_trade)
        if self.kill_switch_loss_pct <= 0:
            raise ValueError("real.kill_switch_loss_pct must be > 0")
        self.quote_currency = self.quote_currency.strip().upper() or "USDT"
        return self


class ExchangeConfig(BaseModel):
    base_url: str = "https://api.binance.com"
    timeout_seconds: float = 10.0
    rate_limit_rps: float = 5.0
    rate_limit_burst: int = 10
    request_max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 20.0


class StorageConfig(BaseModel):
    enabled: bool = False
    db_path: str = "tradesim.sqlite3"


class AppConfig(BaseModel):
    symbols: list[str] = Field(default_factory=lambda: ["BTC/USDT"])
    trading: TradingConfig = Field(default_factory=TradingConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    backtest: BacktestConfig = Field(default_factory=BacktestConfig)
    paper: PaperConfig = Field(default_factory=PaperConfig)
    real: RealConfig = Field(default_factory=RealConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @model_validator(mode="after")
    def normalize_symbols(self) -> "AppConfig":
        self.symbols = [str(symbol).strip().upper() for symbol in self.symbols if str(symbol).strip()]
        return self


def load_config(path: str | Path | None) -> AppConfig:
    if path is None:
        return AppConfig()
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")
    with config_path.open("r", encoding="utf-8") as file:
        raw = yaml.safe_load(file) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config root must be a mapping: {config_path}")
    return AppConfig.model_validate(raw)
