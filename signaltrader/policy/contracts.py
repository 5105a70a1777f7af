from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal


@dataclass(frozen=True, slots=True)
class OrderPreview:
    symbol: str
    side: str
    order_type: str
    estimated_price: Decimal
    asset_class: str = "us_equity"
    time_in_force: str = "day"
    qty: Decimal | None = None
    notional: Decimal | None = None
    limit_price: Decimal | None = None
    stop_price: Decimal | None = None

    def __post_init__(self) -> None:
        if self.side not in {"buy", "sell"}:
            raise ValueError(f"order side must be buy or sell, got {self.side!r}")
        if self.qty is None and self.notional is None:
            raise ValueError("order requires qty or notional")
        if self.qty is not None and self.qty <= 0:
            raise ValueError("order qty must be > 0")
        if self.notional is not None and self.notional <= 0:
            raise ValueError("order notional must be > 0")

    @property
    def estimated_cost(self) -> Decimal:
        if self.notional is not None:
            return self.notional
        qty = self.qty if self.qty is not None else Decimal("0")
        return qty * self.estimated_price

    def order_params(self) -> dict[str, str]:
        """Exact broker parameters the approval token binds to."""
        params = {
            "symbol": self.symbol,
            "side": self.side,
            "type": self.order_type,
            "time_in_force": self.time_in_force,
        }
        if self.qty is not None:
            params["qty"] = str(self.qty)
        if self.notional is not None:
            params["notional"] = str(self.notional)
        if self.limit_price is not None:
            params["limit_price"] = str(self.limit_price)
        if self.stop_price is not None:
            params["stop_price"] = str(self.stop_price)
        return params


@dataclass(frozen=True, slots=True)
class PolicyViolation:
    rule: str
    message: str


@dataclass(frozen=True, slots=True)
class PolicyResult:
    allowed: bool
    violations: tuple[PolicyViolation, ...] = ()
    warnings: tuple[PolicyViolation, ...] = ()
    approval_token: str | None = None
    approval_id: str | None = None
    expires_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def rule_ids(self) -> list[str]:
        return [item.rule for item in self.violations]

    @property
    def warning_ids(self) -> list[str]:
        return [item.rule for item in self.warnings]

    def with_approval(self, *, token: str, approval_id: str, expires_at: datetime) -> "PolicyResult":
        return replace(self, approval_token=token, approval_id=approval_id, expires_at=expires_at)


class TradingHaltedError(RuntimeError):
    """Kill switch is active; no new approvals or submissions are accepted."""
