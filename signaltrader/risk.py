from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from signaltrader.broker.alpaca import BrokerAPIError
from signaltrader.broker.models import AccountSnapshot, BrokerProvider
from signaltrader.clock import trading_day, utc_now
from signaltrader.config import PolicyConfig
from signaltrader.monitoring.alerts import AlertDispatcher
from signaltrader.policy.approval import ApprovalProtocol
from signaltrader.storage.models import RiskState
from signaltrader.storage.store import StateStore

LOGGER = logging.getLogger(__name__)
SECURITY_LOGGER = logging.getLogger("signaltrader.security")

RESUME_CONFIRMATION = "CONFIRM_RESUME_TRADING"
RESUME_MESSAGE = b"DISABLE_KILL_SWITCH"


class ResumeRejectedError(PermissionError):
    """Kill switch disable request failed confirmation."""


def resume_code(secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), RESUME_MESSAGE, hashlib.sha256).hexdigest()


class RiskController:
    """Owns every write to the persisted risk state."""

    def __init__(
        self,
        *,
        store: StateStore,
        approvals: ApprovalProtocol,
        broker: BrokerProvider,
        policy: PolicyConfig,
        timezone_name: str,
        kill_switch_secret: str | None = None,
        alerts: AlertDispatcher | None = None,
    ):
        self.store = store
        self.approvals = approvals
        self.broker = broker
        self.policy = policy
        self.timezone_name = timezone_name
        self.kill_switch_secret = kill_switch_secret
        self.alerts = alerts

    def snapshot(self) -> RiskState:
        return self.store.get_risk_state()

    def _alert(self, **kwargs: Any) -> None:
        if self.alerts is not None:
            self.alerts.send(**kwargs)

    def enable_kill_switch(self, reason: str, *, now: datetime | None = None) -> RiskState:
        now = now or utc_now()
        reason = reason.strip() or "manual"
        state = self.store.update_risk_state(
            lambda current: replace(
                current,
                kill_switch_active=True,
                kill_switch_reason=reason,
                kill_switch_at=now,
                updated_at=now,
            )
        )
        revoked = self.approvals.invalidate_outstanding(f"kill_switch:{reason}")
        cancelled = 0
        try:
            cancelled = self.broker.cancel_all_orders()
        except BrokerAPIError as exc:
            LOGGER.error("Kill switch could not cancel open orders: %s", exc)
        SECURITY_LOGGER.warning(
            "Kill switch ENABLED reason=%s revoked_approvals=%d cancelled_orders=%d",
            reason,
            revoked,
            cancelled,
        )
        self._alert(
            event="KILL_SWITCH_ENABLED",
            level="error",
            message=f"Trading halted: {reason}",
            context={"revoked_approvals": revoked, "cancelled_orders": cancelled},
            dedupe_key=f"kill-switch-on-{reason}",
        )
        return state

    def disable_kill_switch(
        self,
        *,
        confirmation: str,
        code: str,
        now: datetime | None = None,
    ) -> RiskState:
        if confirmation != RESUME_CONFIRMATION:
            raise ResumeRejectedError(f"confirmation must be {RESUME_CONFIRMATION}")
        if not self.kill_switch_secret:
            raise ResumeRejectedError("KILL_SWITCH_SECRET is not configured")
        if not hmac.compare_digest(resume_code(self.kill_switch_secret), str(code)):
            SECURITY_LOGGER.error("Kill switch disable rejected: invalid resume code")
            raise ResumeRejectedError("invalid resume code")
        now = now or utc_now()
        state = self.store.update_risk_state(
            lambda current: replace(
                current,
                kill_switch_active=False,
                kill_switch_reason=None,
                kill_switch_at=None,
                updated_at=now,
            )
        )
        SECURITY_LOGGER.warning("Kill switch DISABLED")
        self._alert(event="KILL_SWITCH_DISABLED", level="warning", message="Trading resumed", dedupe_key="kill-switch-off")
        return state

    def roll_trading_day(self, now: datetime) -> bool:
        day = trading_day(now, self.timezone_name).isoformat()
        changed = self.store.reset_daily_loss_if_new_day(day, now)
        if changed:
            LOGGER.info("Daily loss counter reset for trading_day=%s", day)
        return changed

    def record_realized_pnl(self, pnl: Decimal, *, now: datetime | None = None) -> RiskState:
        now = now or utc_now()
        if pnl >= 0:
            return self.snapshot()
        loss = -pnl
        cooldown_minutes = self.policy.cooldown_minutes_after_loss

        def _apply(current: RiskState) -> RiskState:
            return replace(
                current,
                daily_loss=current.daily_loss + loss,
                last_loss_at=now,
                cooldown_until=now + timedelta(minutes=cooldown_minutes) if cooldown_minutes > 0 else current.cooldown_until,
                updated_at=now,
            )

        state = self.store.update_risk_state(_apply)
        LOGGER.info(
            "Realized loss recorded loss=%s daily_loss=%s cooldown_until=%s",
            loss,
            state.daily_loss,
            state.cooldown_until.isoformat() if state.cooldown_until else "-",
        )
        return state

    def status(self, account: AccountSnapshot | None = None, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or utc_now()
        state = self.snapshot()
        daily_loss_pct: str | None = None
        if account is not None and account.equity > 0:
            daily_loss_pct = str((state.daily_loss / account.equity * 100).quantize(Decimal("0.01")))
        return {
            "kill_switch_active": state.kill_switch_active,
            "kill_switch_reason": state.kill_switch_reason,
            "daily_loss": str(state.daily_loss),
            "daily_loss_pct": daily_loss_pct,
            "loss_day": state.loss_day,
            "cooldown_active": state.cooldown_active(now),
            "cooldown_until": state.cooldown_until.isoformat() if state.cooldown_until else None,
            "limits": {
                "max_daily_loss_pct": self.policy.max_daily_loss_pct,
                "max_position_pct_equity": self.policy.max_position_pct_equity,
                "max_notional_per_trade": str(self.policy.max_notional_per_trade),
                "max_open_positions": self.policy.max_open_positions,
            },
        }
