from __future__ import annotations

from datetime import datetime
from enum import Enum

from signaltrader.broker.models import MarketClock
from signaltrader.clock import to_timezone
from signaltrader.config import SchedulerConfig


class SessionPhase(str, Enum):
    OPEN = "OPEN"
    PRE_OPEN = "PRE_OPEN"
    AFTER_HOURS = "AFTER_HOURS"
    OVERNIGHT = "OVERNIGHT"
    NON_TRADING_DAY = "NON_TRADING_DAY"


def classify_session(clock: MarketClock, now: datetime, config: SchedulerConfig) -> SessionPhase:
    if clock.is_open:
        return SessionPhase.OPEN
    local_now = to_timezone(now, config.exchange_timezone)
    local_next_open = to_timezone(clock.next_open, config.exchange_timezone)
    local_time = local_now.timetz().replace(tzinfo=None)
    if local_next_open.date() == local_now.date():
        if local_time >= config.pre_open_start:
            return SessionPhase.PRE_OPEN
        return SessionPhase.OVERNIGHT
    if local_now.weekday() >= 5 or local_time < config.regular_close:
        # Weekday with no session today before the close is a holiday.
        return SessionPhase.NON_TRADING_DAY
    if local_time < config.after_hours_end:
        return SessionPhase.AFTER_HOURS
    return SessionPhase.OVERNIGHT


def next_cycle_delay(
    phase: SessionPhase,
    config: SchedulerConfig,
    *,
    continuous_assets_enabled: bool = False,
) -> int:
    delays = {
        SessionPhase.OPEN: config.open_seconds,
        SessionPhase.PRE_OPEN: config.pre_open_seconds,
        SessionPhase.AFTER_HOURS: config.after_hours_seconds,
        SessionPhase.OVERNIGHT: config.overnight_seconds,
        SessionPhase.NON_TRADING_DAY: config.non_trading_day_seconds,
    }
    delay = delays[phase]
    if continuous_assets_enabled:
        delay = min(delay, config.continuous_seconds)
    return delay
