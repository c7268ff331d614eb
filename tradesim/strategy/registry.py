from __future__ import annotations

import re
from collections.abc import Callable

from tradesim.config import AppConfig, ConfigurationError
from tradesim.strategy.contracts import BaseStrategy
from tradesim.strategy.dca import DcaStrategy
from tradesim.strategy.dma_trend import DmaTrendStrategy
from tradesim.strategy.ema_crossover import EmaCrossoverStrategy
from tradesim.strategy.golden_cross_htf import GoldenCrossHtfStrategy
from tradesim.strategy.momentum_trailing import MomentumTrailingStrategy
from tradesim.strategy.swing_trend import SwingTrendStrategy
from tradesim.strategy.trend_breakout import TrendBreakoutStrategy
from tradesim.strategy.trend_pullback import TrendPullbackStrategy

StrategyFactory = Callable[[AppConfig], BaseStrategy]

STRATEGY_FACTORIES: dict[str, StrategyFactory] = {
    "ema_crossover": lambda cfg: EmaCrossoverStrategy(cfg.risk, cfg.strategy.params),
    "trend_pullback": lambda cfg: TrendPullbackStrategy(cfg.risk, cfg.strategy.params),
    "golden_cross_htf": lambda cfg: GoldenCrossHtfStrategy(
        cfg.risk, cfg.strategy.params, cfg.strategy.golden_cross_htf
    ),
    "swing_trend": lambda cfg: SwingTrendStrategy(cfg.risk, cfg.strategy.params, cfg.strategy.swing_trend),
    "dca": lambda cfg: DcaStrategy(cfg.risk, cfg.strategy.params),
    "dma_trend": lambda cfg: DmaTrendStrategy(cfg.risk, cfg.strategy.params),
    "momentum_trailing": lambda cfg: MomentumTrailingStrategy(
        cfg.risk, cfg.strategy.params, cfg.strategy.momentum_trailing
    ),
    "trend_breakout": lambda cfg: TrendBreakoutStrategy(cfg.risk, cfg.strategy.params),
}


def normalize_strategy_name(name: str) -> str:
    """``goldenCrossHtf``, ``golden-cross-htf`` and ``GOLDEN_CROSS_HTF`` all map to ``golden_cross_htf``."""
    text = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", str(name).strip())
    return text.replace("-", "_").lower()


def available_strategies() -> list[str]:
    return sorted(STRATEGY_FACTORIES)


def build_strategy(name: str | None, config: AppConfig) -> BaseStrategy:
    key = normalize_strategy_name(name or config.strategy.name)
    factory = STRATEGY_FACTORIES.get(key)
    if factory is None:
        raise ConfigurationError(
            f"Unknown strategy '{name or config.strategy.name}'. Available: {', '.join(available_strategies())}"
        )
    return factory(config)
