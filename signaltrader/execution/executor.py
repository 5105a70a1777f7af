from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from signaltrader.broker.alpaca import BrokerAPIError
from signaltrader.broker.models import BrokerOrder, BrokerProvider, MarketClock
from signaltrader.clock import utc_now
from signaltrader.policy.approval import ApprovalProtocol
from signaltrader.policy.contracts import OrderPreview, TradingHaltedError
from signaltrader.storage.models import OrderRecord
from signaltrader.storage.store import StateStore

LOGGER = logging.getLogger(__name__)

SESSIONLESS_ASSET_CLASSES = {"crypto"}


class MarketClosedError(RuntimeError):
    """Day order refused because the regular session is closed."""


@dataclass(slots=True)
class SubmitResult:
    approval_id: str
    order: BrokerOrder
    record: OrderRecord


class OrderExecutor:
    """Token-gated order submission; the only path from an approval to the broker."""

    def __init__(self, *, broker: BrokerProvider, approvals: ApprovalProtocol, store: StateStore):
        self.broker = broker
        self.approvals = approvals
        self.store = store

    def _ensure_not_halted(self) -> None:
        state = self.store.get_risk_state()
        if state.kill_switch_active:
            raise TradingHaltedError(f"kill switch active: {state.kill_switch_reason or 'no reason'}")

    def submit(
        self,
        token: str,
        preview: OrderPreview,
        *,
        purpose: str,
        reason: str = "",
        clock: MarketClock | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> SubmitResult:
        now = now or utc_now()
        self._ensure_not_halted()
        params = preview.order_params()
        if (
            clock is not None
            and not clock.is_open
            and preview.asset_class not in SESSIONLESS_ASSET_CLASSES
            and params.get("time_in_force") == "day"
        ):
            raise MarketClosedError(f"market closed; day order for {preview.symbol} refused")

        validated = self.approvals.redeem(token, params, now=now)
        # Kill switch may have fired between the first check and consumption.
        self._ensure_not_halted()
        try:
            order = self.broker.submit_order(validated.params, client_order_id=validated.approval_id)
        except BrokerAPIError as exc:
            LOGGER.warning(
                "Order submit failed %s %s approval_id=%s: %s",
                preview.side,
                preview.symbol,
                validated.approval_id,
                exc,
            )
            raise

        record = OrderRecord(
            order_id=order.order_id,
            client_order_id=validated.approval_id,
            symbol=preview.symbol,
            side=preview.side,
            order_type=preview.order_type,
            purpose=purpose,
            status=order.status,
            submitted_at=now,
            updated_at=now,
            qty=preview.qty,
            notional=preview.notional,
            filled_qty=order.filled_qty,
            filled_avg_price=order.filled_avg_price,
            reason=reason,
            metadata={
                **(metadata or {}),
                "estimated_price": str(preview.estimated_price),
                "asset_class": preview.asset_class,
            },
        )
        self.store.upsert_order(record)
        LOGGER.info(
            "Order submitted %s %s order_id=%s status=%s approval_id=%s purpose=%s",
            preview.side,
            preview.symbol,
            order.order_id,
            order.status,
            validated.approval_id,
            purpose,
        )
        return SubmitResult(approval_id=validated.approval_id, order=order, record=record)

    def refresh_open_orders(self, *, now: datetime | None = None) -> list[tuple[OrderRecord, BrokerOrder]]:
        """Poll working orders; returns those that reached a terminal state."""
        now = now or utc_now()
        finished: list[tuple[OrderRecord, BrokerOrder]] = []
        for record in self.store.list_open_orders():
            try:
                remote = self.broker.get_order(record.order_id)
            except BrokerAPIError as exc:
                LOGGER.warning("Order status unavailable order_id=%s: %s", record.order_id, exc)
                continue
            if remote.status == record.status and remote.filled_qty == record.filled_qty:
                continue
            record.status = remote.status
            record.filled_qty = remote.filled_qty
            record.filled_avg_price = remote.filled_avg_price
            record.updated_at = now
            self.store.upsert_order(record)
            if remote.is_filled or remote.is_dead:
                finished.append((record, remote))
        return finished

    def has_working_order(self, symbol: str) -> bool:
        return bool(self.store.list_open_orders(symbol))
