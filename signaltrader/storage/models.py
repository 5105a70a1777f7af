from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class PositionState(str, Enum):
    NONE = "NONE"
    OPEN = "OPEN"
    CLOSING = "CLOSING"


class ApprovalStatus(str, Enum):
    ISSUED = "ISSUED"
    CONSUMED = "CONSUMED"
    EXPIRED = "EXPIRED"
    INVALIDATED = "INVALIDATED"


@dataclass(slots=True)
class PositionEntry:
    symbol: str
    qty: Decimal
    entry_time: datetime
    entry_price: Decimal
    highest_price: Decimal
    take_profit_pct: float
    stop_loss_pct: float
    trailing_stop_pct: float | None = None
    asset_class: str = "us_equity"
    entry_conviction: float = 0.0
    entry_volume: float = 0.0
    entry_sources: list[str] = field(default_factory=list)
    entry_reason: str = ""
    state: PositionState = PositionState.OPEN
    exit_reason: str | None = None
    last_mention_at: datetime | None = None
    updated_at: datetime | None = None

    def unrealized_pct(self, price: Decimal) -> Decimal:
        if self.entry_price <= 0:
            return Decimal("0")
        return (price - self.entry_price) / self.entry_price * Decimal("100")


@dataclass(frozen=True, slots=True)
class RiskState:
    kill_switch_active: bool = False
    kill_switch_reason: str | None = None
    kill_switch_at: datetime | None = None
    daily_loss: Decimal = Decimal("0")
    loss_day: str | None = None
    last_loss_at: datetime | None = None
    cooldown_until: datetime | None = None
    version: int = 0
    updated_at: datetime | None = None

    def cooldown_active(self, now: datetime) -> bool:
        return self.cooldown_until is not None and now < self.cooldown_until


@dataclass(slots=True)
class ApprovalRecord:
    approval_id: str
    params: dict[str, Any]
    params_digest: str
    status: ApprovalStatus
    issued_at: datetime
    expires_at: datetime
    consumed_at: datetime | None = None
    invalidated_reason: str | None = None


@dataclass(slots=True)
class OrderRecord:
    order_id: str
    client_order_id: str
    symbol: str
    side: str
    order_type: str
    purpose: str
    status: str
    submitted_at: datetime
    updated_at: datetime
    qty: Decimal | None = None
    notional: Decimal | None = None
    filled_qty: Decimal = Decimal("0")
    filled_avg_price: Decimal | None = None
    reason: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ClosedTradeRecord:
    symbol: str
    qty: Decimal
    entry_price: Decimal
    exit_price: Decimal
    realized_pnl: Decimal
    exit_reason: str
    opened_at: datetime
    closed_at: datetime
