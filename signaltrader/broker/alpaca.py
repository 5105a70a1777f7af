from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import quote

import requests

from signaltrader.broker.models import (
    AccountSnapshot,
    BrokerOrder,
    BrokerPosition,
    MarketClock,
    Quote,
    asset_class_for,
)
from signaltrader.clock import ensure_utc

LOGGER = logging.getLogger(__name__)


class BrokerAPIError(RuntimeError):
    """Non-retryable brokerage API error."""


class RetryableBrokerAPIError(BrokerAPIError):
    """Retryable API/network error."""


class BrokerAuthError(BrokerAPIError):
    """Credentials rejected by the brokerage."""


@dataclass(slots=True)
class BrokerClientMetrics:
    total_requests: int = 0
    total_retries: int = 0
    http_429_count: int = 0
    network_errors: int = 0
    orders_submitted: int = 0


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


def _decimal(value: Any, default: Decimal | None = Decimal("0")) -> Decimal | None:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def _parse_dt(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Trim nanosecond precision to what fromisoformat accepts.
    if "." in text:
        head, _, tail = text.partition(".")
        end = 0
        while end < len(tail) and tail[end].isdigit():
            end += 1
        digits, suffix = tail[:end], tail[end:]
        text = f"{head}.{digits[:6]}{suffix}"
    return ensure_utc(datetime.fromisoformat(text))


class AlpacaClient:
    """
    Alpaca-style trading REST client.

    Reads are retried a bounded number of times on 429/5xx/network errors.
    Order submission is never retried here: a failed submit surfaces to the
    caller and the next cycle starts over with a fresh preview.
    """

    def __init__(
        self,
        *,
        base_url: str,
        data_url: str,
        api_key: str,
        api_secret: str,
        timeout_seconds: float = 10.0,
        rate_limit_rps: float = 3.0,
        rate_limit_burst: int = 5,
        request_max_attempts: int = 2,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 5.0,
        session: requests.Session | None = None,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.data_url = data_url.strip().rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.request_max_attempts = max(1, int(request_max_attempts))
        self.backoff_base_seconds = max(0.0, float(backoff_base_seconds))
        self.backoff_max_seconds = max(self.backoff_base_seconds, float(backoff_max_seconds))
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
                "APCA-API-KEY-ID": api_key,
                "APCA-API-SECRET-KEY": api_secret,
            }
        )
        self._limiter = TokenBucketLimiter(rate_per_second=rate_limit_rps, burst=rate_limit_burst)
        self._metrics = BrokerClientMetrics()
        self._metrics_lock = threading.Lock()

    def _metric_add(self, field_name: str, value: int = 1) -> None:
        with self._metrics_lock:
            setattr(self._metrics, field_name, getattr(self._metrics, field_name) + value)

    def metrics_snapshot(self) -> dict[str, int]:
        with self._metrics_lock:
            return asdict(self._metrics)

    def _sleep_retry(self, *, endpoint: str, attempt: int, reason: str, retry_after: float | None = None) -> None:
        if retry_after is not None:
            sleep_seconds = min(self.backoff_max_seconds, max(0.0, retry_after))
        else:
            exponential = min(
                self.backoff_max_seconds,
                self.backoff_base_seconds * (2 ** max(0, attempt - 1)),
            )
            jitter = random.uniform(0.0, max(0.01, exponential * 0.2))
            sleep_seconds = min(self.backoff_max_seconds, exponential + jitter)
        self._metric_add("total_retries", 1)
        LOGGER.warning(
            "Retrying broker call endpoint=%s attempt=%d/%d sleep=%.2fs reason=%s",
            endpoint,
            attempt,
            self.request_max_attempts,
            sleep_seconds,
            reason,
        )
        time.sleep(sleep_seconds)

    def _request(
        self,
        method: str,
        path: str,
        *,
        base: str | None = None,
        params: dict[str, Any] | None = None,
        json_payload: dict[str, Any] | None = None,
    ) -> Any:
        url = f"{base or self.base_url}{path}"
        max_attempts = self.request_max_attempts if method == "GET" else 1
        for attempt in range(1, max_attempts + 1):
            self._limiter.acquire()
            self._metric_add("total_requests", 1)
            try:
                response = self.session.request(
                    method=method,
                    url=url,
                    params=params,
                    json=json_payload,
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                self._metric_add("network_errors", 1)
                if attempt >= max_attempts:
                    raise RetryableBrokerAPIError(f"Network error {method} {path}: {exc}") from exc
                self._sleep_retry(endpoint=path, attempt=attempt, reason=f"network:{type(exc).__name__}")
                continue

            if response.status_code == 429 or response.status_code in (500, 502, 503, 504):
                if response.status_code == 429:
                    self._metric_add("http_429_count", 1)
                if attempt >= max_attempts:
                    raise RetryableBrokerAPIError(
                        f"Retryable broker error {method} {path}: HTTP {response.status_code} {response.text}"
                    )
                self._sleep_retry(
                    endpoint=path,
                    attempt=attempt,
                    reason=f"http_{response.status_code}",
                    retry_after=_parse_retry_after(response.headers),
                )
                continue

            if response.status_code in (401, 403):
                raise BrokerAuthError(f"Broker rejected credentials: HTTP {response.status_code} {response.text}")
            if response.status_code >= 400:
                raise BrokerAPIError(f"Broker error {method} {path}: HTTP {response.status_code} {response.text}")
            if response.status_code == 204 or not response.content:
                return None
            try:
                return response.json(parse_float=Decimal)
            except ValueError as exc:
                raise BrokerAPIError(f"Invalid JSON from {method} {path}") from exc
        raise RetryableBrokerAPIError(f"Broker call failed after retries {method} {path}")

    def get_account(self) -> AccountSnapshot:
        payload = self._request("GET", "/v2/account") or {}
        return AccountSnapshot(
            equity=_decimal(payload.get("equity")),
            cash=_decimal(payload.get("cash")),
            buying_power=_decimal(payload.get("buying_power")),
            account_id=str(payload.get("id", "")),
            currency=str(payload.get("currency", "USD")),
            trading_blocked=bool(payload.get("trading_blocked", False)),
        )

    def get_positions(self) -> list[BrokerPosition]:
        payload = self._request("GET", "/v2/positions") or []
        positions: list[BrokerPosition] = []
        for item in payload:
            symbol = str(item.get("symbol", "")).strip().upper()
            if not symbol:
                continue
            raw_class = str(item.get("asset_class", "")).strip().lower()
            positions.append(
                BrokerPosition(
                    symbol=symbol,
                    qty=_decimal(item.get("qty")),
                    market_value=_decimal(item.get("market_value")),
                    avg_entry_price=_decimal(item.get("avg_entry_price")),
                    current_price=_decimal(item.get("current_price")),
                    unrealized_pl=_decimal(item.get("unrealized_pl")),
                    side=str(item.get("side", "long")).lower(),
                    asset_class="crypto" if raw_class == "crypto" else asset_class_for(symbol),
                )
            )
        return positions

    def get_clock(self) -> MarketClock:
        payload = self._request("GET", "/v2/clock") or {}
        timestamp = _parse_dt(payload.get("timestamp"))
        next_open = _parse_dt(payload.get("next_open"))
        next_close = _parse_dt(payload.get("next_close"))
        if timestamp is None or next_open is None or next_close is None:
            raise BrokerAPIError(f"Incomplete clock payload: {payload}")
        return MarketClock(
            timestamp=timestamp,
            is_open=bool(payload.get("is_open", False)),
            next_open=next_open,
            next_close=next_close,
        )

    def get_quotes(self, symbols: list[str]) -> dict[str, Quote]:
        quotes: dict[str, Quote] = {}
        equities = sorted({s for s in symbols if asset_class_for(s) == "us_equity"})
        cryptos = sorted({s for s in symbols if asset_class_for(s) == "crypto"})
        if equities:
            payload = self._request(
                "GET",
                "/v2/stocks/snapshots",
                base=self.data_url,
                params={"symbols": ",".join(equities)},
            ) or {}
            for symbol, snapshot in payload.items():
                quotes[symbol.upper()] = self._quote_from_snapshot(symbol.upper(), snapshot or {})
        if cryptos:
            payload = self._request(
                "GET",
                "/v1beta3/crypto/us/snapshots",
                base=self.data_url,
                params={"symbols": ",".join(cryptos)},
            ) or {}
            for symbol, snapshot in (payload.get("snapshots") or {}).items():
                quotes[symbol.upper()] = self._quote_from_snapshot(symbol.upper(), snapshot or {})
        return quotes

    @staticmethod
    def _quote_from_snapshot(symbol: str, snapshot: dict[str, Any]) -> Quote:
        latest_quote = snapshot.get("latestQuote") or {}
        latest_trade = snapshot.get("latestTrade") or {}
        return Quote(
            symbol=symbol,
            bid=_decimal(latest_quote.get("bp"), None),
            ask=_decimal(latest_quote.get("ap"), None),
            last=_decimal(latest_trade.get("p"), None),
        )

    @staticmethod
    def _order_from_payload(payload: dict[str, Any]) -> BrokerOrder:
        return BrokerOrder(
            order_id=str(payload.get("id", "")),
            client_order_id=str(payload.get("client_order_id", "")),
            symbol=str(payload.get("symbol", "")).upper(),
            side=str(payload.get("side", "")).lower(),
            status=str(payload.get("status", "")).upper(),
            filled_qty=_decimal(payload.get("filled_qty")),
            filled_avg_price=_decimal(payload.get("filled_avg_price"), None),
            submitted_at=_parse_dt(payload.get("submitted_at")),
        )

    def submit_order(self, params: dict[str, Any], *, client_order_id: str) -> BrokerOrder:
        body = dict(params)
        body["client_order_id"] = client_order_id
        payload = self._request("POST", "/v2/orders", json_payload=body) or {}
        self._metric_add("orders_submitted", 1)
        order = self._order_from_payload(payload)
        if not order.order_id:
            raise BrokerAPIError(f"Order response missing id for client_order_id={client_order_id}")
        return order

    def get_order(self, order_id: str) -> BrokerOrder:
        payload = self._request("GET", f"/v2/orders/{quote(order_id, safe='')}") or {}
        return self._order_from_payload(payload)

    def cancel_all_orders(self) -> int:
        payload = self._request("DELETE", "/v2/orders")
        return len(payload) if isinstance(payload, list) else 0
