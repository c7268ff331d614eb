from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from tradesim.clock import ensure_utc, timeframe_to_delta, utc_now
from tradesim.config import AppConfig, ConfigurationError, RealConfig
from tradesim.data.candles import Candle
from tradesim.data.exchange import ExchangeClient
from tradesim.data.feed import closed_candles, merge_history
from tradesim.engine.cycle import OrderGateway, TradeSink, TradingCycle, resolve_max_open_trades
from tradesim.portfolio.ledger import Portfolio
from tradesim.portfolio.models import Trade
from tradesim.reporting.diagnostics import EntryFunnel
from tradesim.risk import RiskCheck
from tradesim.strategy.registry import build_strategy

LOGGER = logging.getLogger(__name__)

MODES = ("paper", "real")


class RealBroker:
    """Order gateway for real mode.

    With ``dry_run`` set, orders are logged and never sent. The kill switch trips
    once the loss from the peak balance reaches ``kill_switch_loss_pct`` percent
    and stays tripped for the rest of the session.
    """

    def __init__(self, client: ExchangeClient, settings: RealConfig):
        self.client = client
        self.settings = settings
        self.dry_run = settings.dry_run
        self.kill_switch_triggered = False
        self.peak_balance = 0.0
        self.last_balance = 0.0
        self.protective_stops: dict[str, str] = {}

    def refresh(self, portfolio: Portfolio) -> bool:
        """Sync the tracked balance and evaluate the kill switch; False once tripped."""
        if self.kill_switch_triggered:
            return False
        if self.dry_run:
            balance = portfolio.account_value()
        else:
            balance = self.client.get_available_balance(self.settings.quote_currency)
        self.last_balance = balance
        self.peak_balance = max(self.peak_balance, balance)
        loss_pct = (self.peak_balance - balance) / self.peak_balance * 100 if self.peak_balance > 0 else 0.0
        if loss_pct >= self.settings.kill_switch_loss_pct:
            self.kill_switch_triggered = True
            LOGGER.error(
                "KILL SWITCH TRIGGERED loss_pct=%.4f threshold=%.4f balance=%.8f peak=%.8f",
                loss_pct,
                self.settings.kill_switch_loss_pct,
                balance,
                self.peak_balance,
            )
            return False
        return True

    def admit(self, portfolio: Portfolio, now: datetime) -> RiskCheck:
        if self.kill_switch_triggered:
            return RiskCheck(False, ["KILL_SWITCH"])
        if portfolio.balance <= 0 or (not self.dry_run and self.last_balance <= 0):
            return RiskCheck(False, ["INSUFFICIENT_BALANCE"])
        return RiskCheck(True, [])

    def submit_entry(self, trade: Trade) -> str:
        if self.dry_run:
            LOGGER.info(
                "DRY_RUN: simulated %s %s qty=%.8f price=%.8f sl=%s tp=%s",
                trade.side.entry_action,
                trade.symbol,
                trade.quantity,
                trade.entry_price,
                trade.stop_loss,
                trade.take_profit,
            )
            return f"dry-{trade.id}"
        order_id = self.client.place_order(
            trade.symbol,
            trade.side.entry_action,
            trade.quantity,
            price=trade.entry_price,
            order_type="limit",
        )
        LOGGER.info("Entry order placed %s %s qty=%.8f order_id=%s", trade.side.entry_action, trade.symbol, trade.quantity, order_id)
        if trade.take_profit is None and trade.stop_loss is not None:
            self.protective_stops[trade.id] = self.place_protective_stop(trade)
        return order_id

    def place_protective_stop(self, trade: Trade) -> str:
        """Resting exchange stop order at the runner's current stop level."""
        stop_id = self.client.place_trailing_stop(trade.symbol, trade.side.exit_action, trade.quantity, trade.stop_loss)
        LOGGER.info("Protective stop placed %s %s qty=%.8f stop=%.8f order_id=%s", trade.side.exit_action, trade.symbol, trade.quantity, trade.stop_loss, stop_id)
        return stop_id

    def submit_exit(self, trade: Trade, quantity: float, price: float, reason: str) -> str:
        if self.dry_run:
            LOGGER.info(
                "DRY_RUN: simulated %s %s qty=%.8f price=%.8f reason=%s",
                trade.side.exit_action,
                trade.symbol,
                quantity,
                price,
                reason,
            )
            return f"dry-{trade.id}-exit"
        order_id = self.client.place_order(trade.symbol, trade.side.exit_action, quantity, order_type="market")
        if quantity >= trade.quantity:
            self.protective_stops.pop(trade.id, None)
        LOGGER.info("Exit order placed %s %s qty=%.8f reason=%s order_id=%s", trade.side.exit_action, trade.symbol, quantity, reason, order_id)
        return order_id


@dataclass(slots=True)
class SymbolFeed:
    symbol: str
    cycle: TradingCycle
    history: list[Candle] = field(default_factory=list)
    htf_history: list[Candle] = field(default_factory=list)
    last_processed_at: datetime | None = None


class TradingSession:
    """One paper or real run: a portfolio and one cycle per symbol.

    Each ``tick`` fetches the latest candles, merges them into the bounded
    histories and runs the cycle once per newly closed candle. The still-forming
    candle is never handed to a strategy. Ticks must not overlap; the scheduler
    guarantees that.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        client: ExchangeClient,
        mode: str = "paper",
        symbols: Sequence[str] | None = None,
        strategy: str | None = None,
        timeframe: str | None = None,
        persister: TradeSink | None = None,
        broker: RealBroker | None = None,
    ):
        if mode not in MODES:
            raise ConfigurationError(f"Unsupported session mode '{mode}', expected one of {', '.join(MODES)}")
        names = [str(symbol).strip().upper() for symbol in (symbols or config.symbols) if str(symbol).strip()]
        if not names:
            raise ConfigurationError("At least one symbol is required")
        self.config = config
        self.client = client
        self.mode = mode
        self.timeframe = timeframe or config.backtest.timeframe
        try:
            self.ltf_period = timeframe_to_delta(self.timeframe)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc

        first_evaluator = build_strategy(strategy, config)
        self.strategy_name = first_evaluator.name
        self.htf_timeframe = first_evaluator.htf_timeframe
        htf_period = timeframe_to_delta(self.htf_timeframe) if self.htf_timeframe else None

        self.broker = broker
        if mode == "real" and self.broker is None:
            self.broker = RealBroker(client, config.real)
        gateway: OrderGateway | None = self.broker if mode == "real" else None

        self.portfolio = Portfolio(
            config.risk.initial_balance,
            fee_rate=config.trading.fee,
            slippage=config.trading.slippage,
        )
        self.funnel = EntryFunnel()
        self.feeds: dict[str, SymbolFeed] = {}
        for index, symbol in enumerate(names):
            evaluator = first_evaluator if index == 0 else build_strategy(strategy, config)
            if mode == "real":
                limit = resolve_max_open_trades(evaluator, config.real.max_open_trades)
                max_open = min(limit or config.real.max_open_trades, config.real.max_open_trades)
                capital = config.real.max_capital_per_trade
            else:
                max_open = resolve_max_open_trades(evaluator, config.paper.max_open_trades)
                capital = config.paper.max_capital_per_trade
            cycle = TradingCycle(
                symbol=symbol,
                strategy=evaluator,
                portfolio=self.portfolio,
                risk=config.risk,
                ltf_period=self.ltf_period,
                htf_period=htf_period,
                mode=mode,
                max_open_trades=max_open,
                max_capital_fraction=capital,
                gateway=gateway,
                persister=persister,
                funnel=self.funnel,
            )
            # the real-mode cap also applies over a strategy's own limit
            cycle.max_open_trades = max_open
            self.feeds[symbol] = SymbolFeed(symbol=symbol, cycle=cycle)
        self.ticks = 0

    @property
    def symbols(self) -> list[str]:
        return list(self.feeds)

    def _fetch(self, feed: SymbolFeed) -> None:
        settings = self.config.paper
        fetched = self.client.fetch_ohlcv(feed.symbol, self.timeframe, limit=settings.history_limit)
        merge_history(feed.history, fetched, cap=settings.history_cap)
        if self.htf_timeframe:
            htf = self.client.fetch_ohlcv(feed.symbol, self.htf_timeframe, limit=settings.history_limit)
            merge_history(feed.htf_history, htf, cap=settings.history_cap)

    def tick(self, now: datetime | None = None) -> int:
        """Run one tick; returns the number of symbols whose cycle ran."""
        now = ensure_utc(now or utc_now())
        self.ticks += 1
        if self.broker is not None and self.mode == "real" and not self.broker.refresh(self.portfolio):
            LOGGER.warning("Kill switch active, tick skipped")
            return 0

        ready: list[tuple[SymbolFeed, list[Candle]]] = []
        marks: dict[str, float] = {}
        for feed in self.feeds.values():
            self._fetch(feed)
            closed = closed_candles(feed.history, now, self.ltf_period)
            if not closed:
                continue
            marks[feed.symbol] = closed[-1].close
            if feed.last_processed_at is not None and closed[-1].timestamp <= feed.last_processed_at:
                continue
            ready.append((feed, closed))

        if self.mode == "real":
            for feed, _ in ready:
                marks[feed.symbol] = self.client.fetch_ticker(feed.symbol)

        for feed, closed in ready:
            feed.cycle.run(closed, feed.htf_history, mark_price=dict(marks))
            feed.last_processed_at = closed[-1].timestamp
            signal = feed.cycle.last_signal
            LOGGER.info(
                "%s tick symbol=%s candle=%s signal=%s reason=%s open=%d balance=%.2f",
                self.mode,
                feed.symbol,
                closed[-1].timestamp.isoformat(),
                signal.action if signal else "-",
                signal.reason if signal else "-",
                len(self.portfolio.open_trades),
                self.portfolio.balance,
            )
        return len(ready)

    def status(self) -> dict[str, object]:
        summary = self.portfolio.get_summary()
        status: dict[str, object] = {
            "mode": self.mode,
            "strategy": self.strategy_name,
            "symbols": self.symbols,
            "timeframe": self.timeframe,
            "ticks": self.ticks,
            "balance": round(summary.balance, 2),
            "equity": summary.equity,
            "totalPnl": summary.total_pnl,
            "maxDrawdown": summary.max_drawdown,
            "openTrades": [trade.to_dict() for trade in self.portfolio.open_trades],
            "closedTrades": summary.closed_trades,
            "diagnostics": self.funnel.to_dict(),
        }
        if self.broker is not None:
            status["dryRun"] = self.broker.dry_run
            status["killSwitchTriggered"] = self.broker.kill_switch_triggered
        return status
