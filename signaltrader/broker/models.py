from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol

FILLED_STATUSES = {"FILLED"}
DEAD_STATUSES = {"CANCELED", "CANCELLED", "EXPIRED", "REJECTED", "DONE_FOR_DAY"}


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    equity: Decimal
    cash: Decimal
    buying_power: Decimal
    account_id: str = ""
    currency: str = "USD"
    trading_blocked: bool = False


@dataclass(frozen=True, slots=True)
class BrokerPosition:
    symbol: str
    qty: Decimal
    market_value: Decimal
    avg_entry_price: Decimal
    current_price: Decimal
    unrealized_pl: Decimal = Decimal("0")
    side: str = "long"
    asset_class: str = "us_equity"


@dataclass(frozen=True, slots=True)
class MarketClock:
    timestamp: datetime
    is_open: bool
    next_open: datetime
    next_close: datetime


@dataclass(frozen=True, slots=True)
class Quote:
    symbol: str
    bid: Decimal | None
    ask: Decimal | None
    last: Decimal | None

    def price_for(self, side: str) -> Decimal | None:
        if side == "buy" and self.ask is not None and self.ask > 0:
            return self.ask
        if side == "sell" and self.bid is not None and self.bid > 0:
            return self.bid
        return self.last


@dataclass(frozen=True, slots=True)
class BrokerOrder:
    order_id: str
    client_order_id: str
    symbol: str
    side: str
    status: str
    filled_qty: Decimal = Decimal("0")
    filled_avg_price: Decimal | None = None
    submitted_at: datetime | None = None

    @property
    def is_filled(self) -> bool:
        return self.status.upper() in FILLED_STATUSES

    @property
    def is_dead(self) -> bool:
        return self.status.upper() in DEAD_STATUSES


class BrokerProvider(Protocol):
    def get_account(self) -> AccountSnapshot:
        ...

    def get_positions(self) -> list[BrokerPosition]:
        ...

    def get_clock(self) -> MarketClock:
        ...

    def get_quotes(self, symbols: list[str]) -> dict[str, Quote]:
        ...

    def submit_order(self, params: dict[str, Any], *, client_order_id: str) -> BrokerOrder:
        ...

    def get_order(self, order_id: str) -> BrokerOrder:
        ...

    def cancel_all_orders(self) -> int:
        ...


def asset_class_for(symbol: str) -> str:
    return "crypto" if "/" in symbol else "us_equity"
