from __future__ import annotations

import json
import time

import pytest
import requests

from tradesim.data.exchange import (
    ExchangeAPIError,
    RestExchangeClient,
    RetryableExchangeAPIError,
    TokenBucketLimiter,
    _parse_retry_after,
    sign_query,
    symbol_to_market,
)


class _Response:
    def __init__(self, status_code: int, payload: object = None, headers: dict | None = None):
        self.status_code = status_code
        self.text = "" if payload is None else json.dumps(payload)
        self.headers = headers or {}

    def json(self) -> object:
        return json.loads(self.text)


class _Session:
    def __init__(self, responses: list) -> None:
        self.responses = list(responses)
        self.headers: dict[str, str] = {}
        self.calls: list[dict] = []

    def request(self, **kwargs) -> _Response:
        self.calls.append(kwargs)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(responses: list, **kwargs) -> tuple[RestExchangeClient, _Session]:
    session = _Session(responses)
    client = RestExchangeClient(
        "https://exchange.test/",
        "key",
        "secret",
        rate_limit_rps=1000.0,
        rate_limit_burst=100,
        request_max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        session=session,  # type: ignore[arg-type]
        **kwargs,
    )
    return client, session


KLINE = [1704067200000, "100", "101", "99", "100.5", "12", 1704067499999, "0", 0, "0", "0", "0"]


def test_token_bucket_limiter_applies_wait() -> None:
    limiter = TokenBucketLimiter(rate_per_second=5.0, burst=1)
    limiter.acquire()
    start = time.perf_counter()
    limiter.acquire()
    assert time.perf_counter() - start >= 0.15


def test_parse_retry_after() -> None:
    assert _parse_retry_after({"Retry-After": "3"}) == 3.0
    assert _parse_retry_after({"Retry-After": "soon"}) is None
    assert _parse_retry_after({}) is None


def test_rate_limited_request_is_retried() -> None:
    client, session = _client([_Response(429, {"msg": "slow down"}, {"Retry-After": "0"}), _Response(200, [KLINE])])

    candles = client.fetch_ohlcv("btc/usdt", "5m", limit=1)

    assert len(candles) == 1
    assert candles[0].close == 100.5
    assert candles[0].timestamp.isoformat() == "2024-01-01T00:00:00+00:00"
    assert session.calls[0]["url"] == "https://exchange.test/api/v3/klines"
    assert session.calls[0]["params"]["symbol"] == "BTCUSDT"
    metrics = client.metrics_snapshot()
    assert metrics["http_429_count"] == 1
    assert metrics["total_retries"] == 1
    assert metrics["total_requests"] == 2


def test_network_errors_exhaust_attempts() -> None:
    failure = requests.ConnectionError("Connection reset by peer")
    client, session = _client([failure, failure, failure])

    with pytest.raises(RetryableExchangeAPIError):
        client.fetch_ticker("BTC/USDT")
    assert len(session.calls) == 3
    assert client.metrics_snapshot()["network_disconnects"] == 3


def test_client_error_is_not_retried() -> None:
    client, session = _client([_Response(400, {"code": -1121, "msg": "Invalid symbol."})])

    with pytest.raises(ExchangeAPIError, match="HTTP 400"):
        client.fetch_ticker("NOPE/USDT")
    assert len(session.calls) == 1


def test_signed_order_and_balance() -> None:
    client, session = _client(
        [
            _Response(200, {"orderId": 42}),
            _Response(200, {"balances": [{"asset": "BTC", "free": "1"}, {"asset": "USDT", "free": "250.5"}]}),
        ]
    )

    order_id = client.place_order("BTC/USDT", "buy", 0.5, price=100.0, order_type="limit")
    balance = client.get_available_balance("usdt")

    assert order_id == "42"
    assert balance == 250.5
    params = session.calls[0]["params"]
    assert params["side"] == "BUY"
    assert params["type"] == "LIMIT"
    assert params["price"] == "100.00000000"
    assert params["timeInForce"] == "GTC"
    assert "signature" in params
    assert session.calls[0]["headers"] == {"X-MBX-APIKEY": "key"}


def test_signed_call_without_credentials() -> None:
    client = RestExchangeClient("https://exchange.test", session=_Session([]))  # type: ignore[arg-type]
    with pytest.raises(ExchangeAPIError, match="EXCHANGE_API_KEY"):
        client.get_available_balance("USDT")


def test_helpers() -> None:
    assert symbol_to_market(" eth/usdt ") == "ETHUSDT"
    assert len(sign_query("secret", "a=1")) == 64
