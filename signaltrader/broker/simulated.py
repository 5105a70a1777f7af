from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from signaltrader.broker.alpaca import BrokerAPIError
from signaltrader.broker.models import (
    AccountSnapshot,
    BrokerOrder,
    BrokerPosition,
    MarketClock,
    Quote,
    asset_class_for,
)
from signaltrader.clock import utc_now

LOGGER = logging.getLogger(__name__)


class DryRunBroker:
    """
    In-memory broker for dry-run mode and tests.

    Market orders fill immediately at the last set price. Nothing leaves
    the process.
    """

    def __init__(
        self,
        *,
        cash: Decimal = Decimal("100000"),
        market_open: bool = True,
        now: datetime | None = None,
    ):
        self.cash = cash
        self.market_open = market_open
        self._now = now
        self.prices: dict[str, Decimal] = {}
        self.holdings: dict[str, tuple[Decimal, Decimal]] = {}
        self.orders: dict[str, BrokerOrder] = {}
        self.submitted: list[dict[str, Any]] = []
        self.cancel_calls = 0
        self.fail_submits = 0
        self.lock = threading.Lock()

    def now(self) -> datetime:
        return self._now or utc_now()

    def set_price(self, symbol: str, price: Decimal) -> None:
        self.prices[symbol.upper()] = Decimal(price)

    def set_position(self, symbol: str, qty: Decimal, avg_price: Decimal) -> None:
        self.holdings[symbol.upper()] = (Decimal(qty), Decimal(avg_price))

    def _equity(self) -> Decimal:
        total = self.cash
        for symbol, (qty, avg) in self.holdings.items():
            total += qty * self.prices.get(symbol, avg)
        return total

    def get_account(self) -> AccountSnapshot:
        with self.lock:
            return AccountSnapshot(
                equity=self._equity(),
                cash=self.cash,
                buying_power=self.cash,
                account_id="DRY-RUN",
            )

    def get_positions(self) -> list[BrokerPosition]:
        with self.lock:
            out: list[BrokerPosition] = []
            for symbol, (qty, avg) in sorted(self.holdings.items()):
                price = self.prices.get(symbol, avg)
                out.append(
                    BrokerPosition(
                        symbol=symbol,
                        qty=qty,
                        market_value=qty * price,
                        avg_entry_price=avg,
                        current_price=price,
                        unrealized_pl=(price - avg) * qty,
                        asset_class=asset_class_for(symbol),
                    )
                )
            return out

    def get_clock(self) -> MarketClock:
        now = self.now()
        return MarketClock(
            timestamp=now,
            is_open=self.market_open,
            next_open=now if self.market_open else now + timedelta(hours=12),
            next_close=now + timedelta(hours=6),
        )

    def get_quotes(self, symbols: list[str]) -> dict[str, Quote]:
        quotes: dict[str, Quote] = {}
        for symbol in symbols:
            price = self.prices.get(symbol.upper())
            if price is not None:
                quotes[symbol.upper()] = Quote(symbol=symbol.upper(), bid=price, ask=price, last=price)
        return quotes

    def submit_order(self, params: dict[str, Any], *, client_order_id: str) -> BrokerOrder:
        with self.lock:
            if self.fail_submits > 0:
                self.fail_submits -= 1
                raise BrokerAPIError("simulated submit failure")
            symbol = str(params["symbol"]).upper()
            side = str(params["side"])
            price = self.prices.get(symbol)
            if price is None:
                raise BrokerAPIError(f"no price for {symbol}")
            if "qty" in params:
                qty = Decimal(str(params["qty"]))
            else:
                qty = (Decimal(str(params["notional"])) / price).quantize(Decimal("0.000001"))
            held_qty, avg = self.holdings.get(symbol, (Decimal("0"), price))
            if side == "buy":
                new_qty = held_qty + qty
                avg = ((held_qty * avg) + (qty * price)) / new_qty
                self.holdings[symbol] = (new_qty, avg)
                self.cash -= qty * price
            else:
                new_qty = held_qty - qty
                self.cash += qty * price
                if new_qty == 0:
                    self.holdings.pop(symbol, None)
                else:
                    self.holdings[symbol] = (new_qty, avg)
            order = BrokerOrder(
                order_id=f"DRY-{uuid.uuid4().hex[:12]}",
                client_order_id=client_order_id,
                symbol=symbol,
                side=side,
                status="FILLED",
                filled_qty=qty,
                filled_avg_price=price,
                submitted_at=self.now(),
            )
            self.orders[order.order_id] = order
            self.submitted.append({**params, "client_order_id": client_order_id})
            LOGGER.info("DRY-RUN fill %s %s qty=%s price=%s", side, symbol, qty, price)
            return order

    def get_order(self, order_id: str) -> BrokerOrder:
        order = self.orders.get(order_id)
        if order is None:
            raise BrokerAPIError(f"unknown order {order_id}")
        return order

    def cancel_all_orders(self) -> int:
        with self.lock:
            self.cancel_calls += 1
            cancelled = 0
            for order_id, order in list(self.orders.items()):
                if not order.is_filled and not order.is_dead:
                    self.orders[order_id] = replace(order, status="CANCELED")
                    cancelled += 1
            return cancelled
