from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal

from signaltrader.broker.models import AccountSnapshot, BrokerPosition, MarketClock
from signaltrader.clock import utc_now
from signaltrader.config import PolicyConfig
from signaltrader.policy.contracts import OrderPreview, PolicyResult, PolicyViolation
from signaltrader.storage.models import RiskState

LOGGER = logging.getLogger(__name__)

SESSIONLESS_ASSET_CLASSES = {"crypto"}


def _dec(value: float | int | Decimal) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _money(value: Decimal) -> str:
    return f"${value.quantize(Decimal('0.01'))}"


def _pct(value: Decimal) -> str:
    return f"{(value * 100).quantize(Decimal('0.01'))}%"


class PolicyEngine:
    """
    Declarative pre-trade checks shared by entries and exits.

    Every rule runs on every call so a rejected order reports all the
    reasons it failed, not just the first one. The engine keeps no state
    between calls; everything it needs arrives as snapshots.
    """

    def __init__(self, config: PolicyConfig):
        self.config = config

    def evaluate(
        self,
        *,
        order: OrderPreview,
        account: AccountSnapshot,
        positions: list[BrokerPosition],
        clock: MarketClock,
        risk_state: RiskState,
        now: datetime | None = None,
    ) -> PolicyResult:
        now = now or utc_now()
        violations: list[PolicyViolation] = []
        warnings: list[PolicyViolation] = []
        symbol = order.symbol.strip().upper()
        held = {position.symbol.strip().upper(): position for position in positions}
        cost = order.estimated_cost

        self._check_kill_switch(risk_state, violations)
        self._check_cooldown(risk_state, now, violations)
        self._check_daily_loss(risk_state, account, violations)
        self._check_session(order, clock, violations, warnings)
        self._check_symbol(symbol, violations)
        self._check_order_type(order, violations)
        if not self._reduces_held_position(order, symbol, held):
            self._check_notional(cost, violations)
        if order.side == "buy":
            self._check_concentration(symbol, cost, held, account, violations, warnings)
            self._check_open_positions(symbol, held, violations)
            self._check_funds(cost, account, violations)
        else:
            self._check_short_selling(order, symbol, held, violations)

        allowed = not violations
        result = PolicyResult(
            allowed=allowed,
            violations=tuple(violations),
            warnings=tuple(warnings),
            metadata={"estimated_cost": str(cost), "symbol": symbol, "side": order.side},
        )
        if allowed:
            LOGGER.info(
                "Policy allowed %s %s cost=%s warnings=%s",
                order.side,
                symbol,
                cost,
                ",".join(result.warning_ids) or "-",
            )
        else:
            LOGGER.info(
                "Policy rejected %s %s cost=%s rules=%s",
                order.side,
                symbol,
                cost,
                ",".join(result.rule_ids),
            )
        return result

    def _check_kill_switch(self, risk_state: RiskState, violations: list[PolicyViolation]) -> None:
        if risk_state.kill_switch_active:
            reason = risk_state.kill_switch_reason or "no reason given"
            violations.append(PolicyViolation("kill_switch", f"Kill switch is active: {reason}"))

    def _check_cooldown(self, risk_state: RiskState, now: datetime, violations: list[PolicyViolation]) -> None:
        until = risk_state.cooldown_until
        if until is not None and risk_state.cooldown_active(now):
            violations.append(
                PolicyViolation(
                    "loss_cooldown",
                    f"Trading paused after loss until {until.isoformat()}",
                )
            )

    def _check_daily_loss(
        self,
        risk_state: RiskState,
        account: AccountSnapshot,
        violations: list[PolicyViolation],
    ) -> None:
        if account.equity <= 0:
            violations.append(
                PolicyViolation("daily_loss_limit", "Account equity unavailable; daily loss limit cannot be verified")
            )
            return
        loss_pct = risk_state.daily_loss / account.equity
        limit = _dec(self.config.max_daily_loss_pct)
        if loss_pct >= limit:
            violations.append(
                PolicyViolation(
                    "daily_loss_limit",
                    f"Daily loss {_pct(loss_pct)} reached limit {_pct(limit)}",
                )
            )

    def _check_session(
        self,
        order: OrderPreview,
        clock: MarketClock,
        violations: list[PolicyViolation],
        warnings: list[PolicyViolation],
    ) -> None:
        if order.asset_class in SESSIONLESS_ASSET_CLASSES:
            return
        if not self.config.trading_hours_only or clock.is_open:
            return
        if self.config.extended_hours_allowed:
            warnings.append(PolicyViolation("extended_hours", "Order placed outside regular trading hours"))
            return
        violations.append(PolicyViolation("trading_hours", "Market is closed"))

    def _check_symbol(self, symbol: str, violations: list[PolicyViolation]) -> None:
        if symbol in self.config.deny_symbols:
            violations.append(PolicyViolation("symbol_denied", f"{symbol} is on the deny list"))
        allowed_symbols = self.config.allowed_symbols
        if allowed_symbols is not None and symbol not in allowed_symbols:
            violations.append(PolicyViolation("symbol_not_allowed", f"{symbol} is not on the allow list"))

    def _check_order_type(self, order: OrderPreview, violations: list[PolicyViolation]) -> None:
        if order.order_type.strip().lower() not in self.config.allowed_order_types:
            violations.append(
                PolicyViolation("order_type_not_allowed", f"Order type {order.order_type} is not allowed")
            )

    @staticmethod
    def _reduces_held_position(order: OrderPreview, symbol: str, held: dict[str, BrokerPosition]) -> bool:
        position = held.get(symbol)
        if order.side != "sell" or order.qty is None or position is None:
            return False
        return Decimal("0") < order.qty <= position.qty

    def _check_notional(self, cost: Decimal, violations: list[PolicyViolation]) -> None:
        limit = self.config.max_notional_per_trade
        if cost > limit:
            violations.append(
                PolicyViolation("max_notional", f"Order value {_money(cost)} exceeds max {_money(limit)}")
            )

    def _check_concentration(
        self,
        symbol: str,
        cost: Decimal,
        held: dict[str, BrokerPosition],
        account: AccountSnapshot,
        violations: list[PolicyViolation],
        warnings: list[PolicyViolation],
    ) -> None:
        if account.equity <= 0:
            violations.append(
                PolicyViolation("max_position_pct", "Account equity unavailable; position size cannot be verified")
            )
            return
        existing = abs(held[symbol].market_value) if symbol in held else Decimal("0")
        position_pct = (existing + cost) / account.equity
        ceiling = _dec(self.config.max_position_pct_equity)
        if position_pct > ceiling:
            violations.append(
                PolicyViolation(
                    "max_position_pct",
                    f"Position would be {_pct(position_pct)} of equity (max {_pct(ceiling)})",
                )
            )
        elif position_pct > ceiling * _dec(self.config.position_warning_ratio):
            warnings.append(
                PolicyViolation(
                    "position_size_warning",
                    f"Position would be {_pct(position_pct)} of equity, near max {_pct(ceiling)}",
                )
            )

    def _check_open_positions(
        self,
        symbol: str,
        held: dict[str, BrokerPosition],
        violations: list[PolicyViolation],
    ) -> None:
        if symbol in held:
            return
        if len(held) >= self.config.max_open_positions:
            violations.append(
                PolicyViolation(
                    "max_open_positions",
                    f"Already holding {len(held)} positions (max {self.config.max_open_positions})",
                )
            )

    def _check_short_selling(
        self,
        order: OrderPreview,
        symbol: str,
        held: dict[str, BrokerPosition],
        violations: list[PolicyViolation],
    ) -> None:
        if self.config.allow_short_selling:
            return
        position = held.get(symbol)
        held_qty = position.qty if position is not None and position.qty > 0 else Decimal("0")
        if order.qty is not None:
            exceeds = order.qty > held_qty
        else:
            held_value = abs(position.market_value) if position is not None and held_qty > 0 else Decimal("0")
            exceeds = order.estimated_cost > held_value
        if exceeds:
            violations.append(
                PolicyViolation(
                    "short_selling_blocked",
                    f"Sell would exceed held quantity {held_qty} of {symbol}; short selling is disabled",
                )
            )

    def _check_funds(self, cost: Decimal, account: AccountSnapshot, violations: list[PolicyViolation]) -> None:
        if self.config.use_cash_only:
            if cost > account.cash:
                violations.append(
                    PolicyViolation(
                        "insufficient_funds",
                        f"Order value {_money(cost)} exceeds available cash {_money(account.cash)}",
                    )
                )
            return
        if cost > account.buying_power:
            violations.append(
                PolicyViolation(
                    "insufficient_funds",
                    f"Order value {_money(cost)} exceeds buying power {_money(account.buying_power)}",
                )
            )
