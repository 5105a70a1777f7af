from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def _get_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError as exc:
        raise RuntimeError(
            f"Timezone '{timezone_name}' is not available. "
            "Install tzdata in your environment: pip install tzdata"
        ) from exc


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_timezone(dt: datetime, timezone_name: str) -> datetime:
    return ensure_utc(dt).astimezone(_get_zone(timezone_name))


def trading_day(dt: datetime, timezone_name: str = "America/New_York") -> date:
    return to_timezone(dt, timezone_name).date()


def hours_between(start: datetime, end: datetime) -> float:
    return (ensure_utc(end) - ensure_utc(start)).total_seconds() / 3600.0
