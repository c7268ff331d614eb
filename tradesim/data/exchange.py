from __future__ import annotations

import hashlib
import hmac
import logging
import random
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Protocol
from urllib.parse import urlencode

import requests

from tradesim.clock import to_millis
from tradesim.config import ExchangeConfig
from tradesim.data.candles import Candle, candles_from_ohlcv

LOGGER = logging.getLogger(__name__)


class ExchangeAPIError(RuntimeError):
    """Non-retryable exchange API error."""


class RetryableExchangeAPIError(ExchangeAPIError):
    """Retryable API/network error."""


class ExchangeClient(Protocol):
    def fetch_ohlcv(
        self,
        symbol: str,
        timeframe: str,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[Candle]:
        ...

    def fetch_ticker(self, symbol: str) -> float:
        ...

    def place_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        price: float | None = None,
        order_type: str = "market",
    ) -> str:
        ...

    def place_trailing_stop(self, symbol: str, side: str, quantity: float, stop_price: float) -> str:
        ...

    def get_available_balance(self, currency: str) -> float:
        ...


@dataclass(slots=True)
class ExchangeClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    http_429_count: int = 0
    network_disconnects: int = 0


class TokenBucketLimiter:
    def __init__(self, rate_per_second: float, burst: int):
        self.rate_per_second = max(0.1, float(rate_per_second))
        self.capacity = max(1, int(burst))
        self.tokens = float(self.capacity)
        self.last_refill = time.monotonic()
        self.lock = threading.Lock()

    def acquire(self) -> None:
        while True:
            wait_seconds = 0.0
            with self.lock:
                now = time.monotonic()
                elapsed = max(0.0, now - self.last_refill)
                self.tokens = min(
                    float(self.capacity),
                    self.tokens + elapsed * self.rate_per_second,
                )
                self.last_refill = now
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                wait_seconds = (1.0 - self.tokens) / self.rate_per_second
            time.sleep(wait_seconds)


def _is_disconnect_error(exc: requests.RequestException) -> bool:
    text = str(exc).lower()
    patterns = (
        "remote end closed connection",
        "remote disconnected",
        "connection aborted",
        "connection reset",
    )
    return any(item in text for item in patterns)


def _parse_retry_after(headers: Any) -> float | None:
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        parsed = float(value.strip())
    except ValueError:
        return None
    if parsed < 0:
        return None
    return parsed


def symbol_to_market(symbol: str) -> str:
    return symbol.replace("/", "").strip().upper()


def sign_query(secret: str, query: str) -> str:
    return hmac.new(secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()


class RestExchangeClient:
    """
    Binance-style spot REST client.

    Public endpoints: GET /api/v3/klines, GET /api/v3/ticker/price.
    Signed endpoints (X-MBX-APIKEY header, HMAC-SHA256 ``signature`` over the query):
    POST /api/v3/order, GET /api/v3/account.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        api_secret: str | None = None,
        timeout_seconds: float = 10.0,
        *,
        rate_limit_rps: float = 5.0,
        rate_limit_burst: int = 10,
        request_max_attempts: int = 4,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 20.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout_seconds = timeout_seconds
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.0, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))

        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        self._limiter = TokenBucketLimiter(rate_per_second=rate_limit_rps, burst=rate_limit_burst)
        self._metrics = ExchangeClientMetrics()
        self._metrics_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: ExchangeConfig,
        api_key: str | None = None,
        api_secret: str | None = None,
    ) -> "RestExchangeClient":
        return cls(
            config.base_url,
            api_key,
            api_secret,
            config.timeout_seconds,
            rate_limit_rps=config.rate_limit_rps,
            rate_limit_burst=config.rate_limit_burst,
            request_max_attempts=config.request_max_attempts,
            backoff_base_seconds=config.backoff_base_seconds,
            backoff_max_seconds=config.backoff_max_seconds,
        )

    def _metric_add(self, field_name: str, value: int = 1) -> None:
        with self._metrics_lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + value)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            return asdict(self._metrics)

    def _sleep_retry(self, *, endpoint: str, attempt: int, reason: str, retry_after: float | None = None) -> None:
        if retry_after is not None:
            sleep_seconds = max(0.0, retry_after)
        else:
            exponential = min(
                self.backoff_max_seconds,
                self.backoff_base_seconds * (2 ** max(0, attempt - 1)),
            )
            jitter = random.uniform(0.0, max(0.01, exponential * 0.2)) if exponential > 0 else 0.0
            sleep_seconds = min(self.backoff_max_seconds, exponential + jitter)
        self._metric_add("total_retries", 1)
        LOGGER.warning(
            "Retrying exchange call endpoint=%s attempt=%d/%d sleep=%.2fs reason=%s",
            endpoint,
            attempt,
            self.request_max_attempts,
            sleep_seconds,
            reason,
        )
        time.sleep(sleep_seconds)

    def _signed_params(self, params: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key or not self.api_secret:
            raise ExchangeAPIError("EXCHANGE_API_KEY and EXCHANGE_API_SECRET must be set for signed endpoints")
        signed = {**params, "timestamp": int(time.time() * 1000)}
        signed["signature"] = sign_query(self.api_secret, urlencode(signed))
        return signed

    def _send_http(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None,
        headers: dict[str, str],
    ) -> requests.Response:
        self._limiter.acquire()
        self._metric_add("total_requests", 1)
        return self.session.request(
            method=method,
            url=f"{self.base_url}{path}",
            params=params,
            headers=headers,
            timeout=self.timeout_seconds,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        signed: bool = False,
    ) -> Any:
        for attempt in range(1, self.request_max_attempts + 1):
            query = self._signed_params(params or {}) if signed else params
            headers = {"X-MBX-APIKEY": self.api_key} if signed and self.api_key else {}
            try:
                response = self._send_http(method=method, path=path, params=query, headers=headers)
            except requests.RequestException as exc:
                if _is_disconnect_error(exc):
                    self._metric_add("network_disconnects", 1)
                if attempt >= self.request_max_attempts:
                    raise RetryableExchangeAPIError(f"Network error {method} {path}: {exc}") from exc
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"network:{type(exc).__name__}")
                continue

            if response.status_code == 429:
                self._metric_add("http_429_count", 1)
                if attempt >= self.request_max_attempts:
                    raise RetryableExchangeAPIError(
                        f"Retryable API error: HTTP {response.status_code} {response.text}"
                    )
                self._sleep_retry(
                    endpoint=path,
                    attempt=attempt,
                    reason="http_429",
                    retry_after=_parse_retry_after(response.headers),
                )
                continue

            if response.status_code in (500, 502, 503, 504):
                if attempt >= self.request_max_attempts:
                    raise RetryableExchangeAPIError(
                        f"Retryable API error: HTTP {response.status_code} {response.text}"
                    )
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"http_{response.status_code}")
                continue

            if response.status_code >= 400:
                raise ExchangeAPIError(f"API error {method} {path}: HTTP {response.status_code} {response.text}")

            if not response.text:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                raise ExchangeAPIError(f"Invalid JSON from {method} {path}") from exc

        raise RetryableExchangeAPIError(f"Could not complete request {method} {path}")

    def fetch_ohlcv(
        self,
        symbol: str,
        timeframe: str,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[Candle]:
        params: dict[str, Any] = {
            "symbol": symbol_to_market(symbol),
            "interval": timeframe,
            "limit": int(limit),
        }
        if since is not None:
            params["startTime"] = to_millis(since)
        payload = self._request("GET", "/api/v3/klines", params=params)
        if not isinstance(payload, list):
            raise ExchangeAPIError(f"Unexpected klines payload for {symbol}")
        return candles_from_ohlcv([row[:6] for row in payload if isinstance(row, list) and len(row) >= 6])

    def fetch_ticker(self, symbol: str) -> float:
        payload = self._request("GET", "/api/v3/ticker/price", params={"symbol": symbol_to_market(symbol)})
        try:
            price = float(payload.get("price", 0.0))
        except (AttributeError, TypeError, ValueError) as exc:
            raise ExchangeAPIError(f"Missing ticker price for {symbol}") from exc
        if price <= 0:
            raise ExchangeAPIError(f"Missing ticker price for {symbol}")
        return price

    def place_order(
        self,
        symbol: str,
        side: str,
        quantity: float,
        price: float | None = None,
        order_type: str = "market",
    ) -> str:
        params: dict[str, Any] = {
            "symbol": symbol_to_market(symbol),
            "side": side.upper(),
            "type": order_type.upper(),
            "quantity": f"{quantity:.8f}",
        }
        if order_type.lower() == "limit":
            if price is None:
                raise ExchangeAPIError("Limit orders require a price")
            params["price"] = f"{price:.8f}"
            params["timeInForce"] = "GTC"
        payload = self._request("POST", "/api/v3/order", params=params, signed=True)
        order_id = payload.get("orderId") if isinstance(payload, dict) else None
        if order_id is None:
            raise ExchangeAPIError(f"Order rejected for {symbol}: {payload}")
        return str(order_id)

    def place_trailing_stop(self, symbol: str, side: str, quantity: float, stop_price: float) -> str:
        params = {
            "symbol": symbol_to_market(symbol),
            "side": side.upper(),
            "type": "STOP_LOSS",
            "quantity": f"{quantity:.8f}",
            "stopPrice": f"{stop_price:.8f}",
        }
        payload = self._request("POST", "/api/v3/order", params=params, signed=True)
        order_id = payload.get("orderId") if isinstance(payload, dict) else None
        if order_id is None:
            raise ExchangeAPIError(f"Stop order rejected for {symbol}: {payload}")
        return str(order_id)

    def get_available_balance(self, currency: str) -> float:
        payload = self._request("GET", "/api/v3/account", signed=True)
        balances = payload.get("balances", []) if isinstance(payload, dict) else []
        wanted = currency.strip().upper()
        for item in balances:
            if str(item.get("asset", "")).upper() == wanted:
                return max(0.0, float(item.get("free", 0.0)))
        return 0.0
