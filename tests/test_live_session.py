from __future__ import annotations

from datetime import timedelta

import pytest

import tradesim.live.session as session_module
from helpers import START, FakeExchange, ScriptedStrategy, ascending_candles, buy, long_trade, make_config
from tradesim.config import AppConfig, ConfigurationError, RealConfig
from tradesim.live.session import RealBroker, TradingSession
from tradesim.portfolio.ledger import Portfolio


@pytest.fixture
def scripted(monkeypatch: pytest.MonkeyPatch):
    """Route the session's strategy lookup to ScriptedStrategy instances."""
    created: list[ScriptedStrategy] = []
    entries: dict = {}

    def factory(name, config):
        strategy = ScriptedStrategy(config.risk, entries)
        created.append(strategy)
        return strategy

    monkeypatch.setattr(session_module, "build_strategy", factory)
    return created, entries


def test_paper_tick_runs_once_per_closed_candle(scripted) -> None:
    created, entries = scripted
    candles = ascending_candles(80)
    entries[candles[58].timestamp] = buy(150.0, None)
    exchange = FakeExchange({"BTC/USDT": candles})
    exchange.reveal("BTC/USDT", 60)
    session = TradingSession(config=make_config(), client=exchange, mode="paper", symbols=["btc/usdt"])
    strategy = created[0]

    # candle 59 is still forming two minutes into its period
    now = candles[59].timestamp + timedelta(minutes=2)
    assert session.tick(now) == 1
    assert strategy.seen[-1][0] == candles[58].timestamp
    assert strategy.seen[-1][2] == 59
    assert [trade.id for trade in session.portfolio.open_trades] == ["BTCUSDT-00001"]

    assert session.tick(now) == 0
    assert len(strategy.seen) == 1

    exchange.reveal("BTC/USDT", 61)
    assert session.tick(candles[60].timestamp + timedelta(minutes=1)) == 1
    assert strategy.seen[-1][0] == candles[59].timestamp
    assert session.portfolio.open_trades[0].candle_count == 1

    status = session.status()
    assert status["mode"] == "paper"
    assert status["symbols"] == ["BTC/USDT"]
    assert status["ticks"] == 3
    assert len(status["openTrades"]) == 1
    assert "dryRun" not in status


def test_session_shares_portfolio_across_symbols(scripted) -> None:
    created, entries = scripted
    btc = ascending_candles(70)
    eth = ascending_candles(70, start_price=50.0)
    entries[btc[60].timestamp] = buy(None, None)
    exchange = FakeExchange({"BTC/USDT": btc, "ETH/USDT": eth})
    exchange.reveal("BTC/USDT", 62)
    exchange.reveal("ETH/USDT", 62)
    session = TradingSession(config=make_config(), client=exchange, symbols=["BTC/USDT", "ETH/USDT"])

    assert session.tick(btc[61].timestamp + timedelta(minutes=1)) == 2

    assert len(created) == 2
    assert sorted(trade.symbol for trade in session.portfolio.open_trades) == ["BTC/USDT", "ETH/USDT"]
    assert session.portfolio.equity_curve[-1].timestamp == btc[60].timestamp


def test_fetch_error_propagates_before_any_booking(scripted) -> None:
    candles = ascending_candles(70)
    exchange = FakeExchange({"BTC/USDT": candles})
    exchange.reveal("BTC/USDT", 62)
    exchange.fail_next = RuntimeError("exchange down")
    session = TradingSession(config=make_config(), client=exchange)

    with pytest.raises(RuntimeError):
        session.tick(candles[61].timestamp + timedelta(minutes=1))
    assert session.portfolio.equity_curve == []
    assert session.portfolio.closed_trades == []


def test_bad_session_arguments() -> None:
    exchange = FakeExchange({})
    with pytest.raises(ConfigurationError):
        TradingSession(config=make_config(), client=exchange, mode="backtest")
    with pytest.raises(ConfigurationError):
        TradingSession(config=AppConfig(symbols=[]), client=exchange)
    with pytest.raises(ConfigurationError):
        TradingSession(config=make_config(), client=exchange, timeframe="7x")


def test_dry_run_kill_switch_trips_on_loss_from_peak() -> None:
    portfolio = Portfolio(10000.0)
    broker = RealBroker(FakeExchange({}), RealConfig(kill_switch_loss_pct=10.0))

    assert broker.refresh(portfolio)
    assert broker.admit(portfolio, START).allowed
    portfolio.balance = 9100.0
    assert broker.refresh(portfolio)
    portfolio.balance = 9000.0

    assert broker.refresh(portfolio) is False
    assert broker.kill_switch_triggered
    assert broker.peak_balance == 10000.0
    check = broker.admit(portfolio, START)
    assert not check.allowed and check.reason_codes == ["KILL_SWITCH"]

    # stays tripped even after the balance recovers
    portfolio.balance = 12000.0
    assert broker.refresh(portfolio) is False


def test_dry_run_orders_are_never_sent() -> None:
    exchange = FakeExchange({})
    broker = RealBroker(exchange, RealConfig(dry_run=True))
    trade = long_trade()

    assert broker.submit_entry(trade) == "dry-T-1"
    assert broker.submit_exit(trade, 1.0, 110.0, "TAKE_PROFIT") == "dry-T-1-exit"
    assert exchange.orders == []


def test_live_broker_uses_exchange_balance_and_orders() -> None:
    exchange = FakeExchange({}, balance=0.0)
    broker = RealBroker(exchange, RealConfig(dry_run=False))
    portfolio = Portfolio(10000.0)
    trade = long_trade(quantity=0.25)

    assert broker.refresh(portfolio)
    assert broker.admit(portfolio, START).reason_codes == ["INSUFFICIENT_BALANCE"]

    exchange.balance = 500.0
    assert broker.refresh(portfolio)
    assert broker.admit(portfolio, START).allowed
    assert broker.submit_entry(trade) == "order-1"
    assert broker.submit_exit(trade, 0.25, 110.0, "TAKE_PROFIT") == "order-2"
    assert exchange.orders == [
        ("BTC/USDT", "BUY", 0.25, 100.0, "limit"),
        ("BTC/USDT", "SELL", 0.25, None, "market"),
    ]


def test_real_session_places_entry_and_skips_after_kill_switch(scripted) -> None:
    created, entries = scripted
    candles = ascending_candles(70)
    entries[candles[60].timestamp] = buy(150.0, None)
    exchange = FakeExchange({"BTC/USDT": candles}, balance=10000.0)
    exchange.reveal("BTC/USDT", 62)
    config = make_config(real={"dry_run": False})
    session = TradingSession(config=config, client=exchange, mode="real")

    assert session.tick(candles[61].timestamp + timedelta(minutes=1)) == 1
    # a runner entry (no take-profit) also rests a stop order on the exchange
    assert len(exchange.orders) == 2
    symbol, side, quantity, price, order_type = exchange.orders[0]
    assert (symbol, side, order_type) == ("BTC/USDT", "BUY", "limit")
    assert exchange.orders[1] == ("BTC/USDT", "SELL", quantity, 150.0, "stop_loss")
    assert session.broker.protective_stops == {"BTCUSDT-00001": "order-2"}
    # capped at real.max_capital_per_trade of the account value
    assert quantity * candles[60].close <= 0.05 * 10000.0 + 1e-6

    session.broker.kill_switch_triggered = True
    calls = exchange.fetch_calls
    assert session.tick(candles[61].timestamp + timedelta(minutes=1)) == 0
    assert exchange.fetch_calls == calls
    assert session.status()["killSwitchTriggered"] is True


def test_live_runner_entry_rests_a_stop_order() -> None:
    exchange = FakeExchange({}, balance=500.0)
    broker = RealBroker(exchange, RealConfig(dry_run=False))
    runner = long_trade(quantity=0.25, take_profit=None)

    assert broker.submit_entry(runner) == "order-1"
    assert exchange.orders[1] == ("BTC/USDT", "SELL", 0.25, 95.0, "stop_loss")
    assert broker.protective_stops == {"T-1": "order-2"}

    broker.submit_exit(runner, 0.25, 96.0, "TRAILING_STOP")
    assert broker.protective_stops == {}

    dry = RealBroker(exchange, RealConfig(dry_run=True))
    dry.submit_entry(runner)
    assert len(exchange.orders) == 3
