from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from signaltrader.broker.models import MarketClock
from signaltrader.config import SchedulerConfig
from signaltrader.scheduler import SessionPhase, classify_session, next_cycle_delay

# 2026-03-02 is a Monday; New York is UTC-5 before the March DST switch.
MONDAY_OPEN_UTC = datetime(2026, 3, 2, 14, 30, tzinfo=timezone.utc)
TUESDAY_OPEN_UTC = MONDAY_OPEN_UTC + timedelta(days=1)
MONDAY_NEXT_OPEN_AFTER_WEEKEND = datetime(2026, 3, 9, 13, 30, tzinfo=timezone.utc)


def _closed_clock(now: datetime, next_open: datetime) -> MarketClock:
    return MarketClock(timestamp=now, is_open=False, next_open=next_open, next_close=next_open + timedelta(hours=6, minutes=30))


def test_open_clock_is_open_phase() -> None:
    now = datetime(2026, 3, 2, 16, 0, tzinfo=timezone.utc)
    clock = MarketClock(timestamp=now, is_open=True, next_open=TUESDAY_OPEN_UTC, next_close=now + timedelta(hours=5))
    assert classify_session(clock, now, SchedulerConfig()) == SessionPhase.OPEN


@pytest.mark.parametrize(
    ("now", "next_open", "expected"),
    [
        (datetime(2026, 3, 2, 13, 0, tzinfo=timezone.utc), MONDAY_OPEN_UTC, SessionPhase.PRE_OPEN),
        (datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc), MONDAY_OPEN_UTC, SessionPhase.OVERNIGHT),
        (datetime(2026, 3, 2, 22, 0, tzinfo=timezone.utc), TUESDAY_OPEN_UTC, SessionPhase.AFTER_HOURS),
        (datetime(2026, 3, 3, 2, 0, tzinfo=timezone.utc), TUESDAY_OPEN_UTC, SessionPhase.OVERNIGHT),
        (datetime(2026, 3, 7, 17, 0, tzinfo=timezone.utc), MONDAY_NEXT_OPEN_AFTER_WEEKEND, SessionPhase.NON_TRADING_DAY),
        (datetime(2026, 3, 2, 16, 0, tzinfo=timezone.utc), TUESDAY_OPEN_UTC, SessionPhase.NON_TRADING_DAY),
    ],
)
def test_closed_market_phases(now: datetime, next_open: datetime, expected: SessionPhase) -> None:
    assert classify_session(_closed_clock(now, next_open), now, SchedulerConfig()) == expected


def test_delay_is_shortest_when_open_and_longest_on_non_trading_days() -> None:
    config = SchedulerConfig()
    delays = {phase: next_cycle_delay(phase, config) for phase in SessionPhase}
    assert delays[SessionPhase.OPEN] == min(delays.values())
    assert delays[SessionPhase.NON_TRADING_DAY] == max(delays.values())


def test_continuous_assets_cap_the_delay() -> None:
    config = SchedulerConfig(continuous_seconds=60)
    assert next_cycle_delay(SessionPhase.NON_TRADING_DAY, config, continuous_assets_enabled=True) == 60
    assert next_cycle_delay(SessionPhase.OPEN, config, continuous_assets_enabled=True) == 30
