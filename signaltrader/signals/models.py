from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from signaltrader.clock import ensure_utc


class SourceKind(str, Enum):
    DIRECT = "direct"
    SOCIAL = "social"
    NEWS = "news"
    FILING = "filing"
    MOMENTUM = "momentum"


@dataclass(frozen=True, slots=True)
class Signal:
    symbol: str
    source: str
    sentiment: float
    volume: float
    weight: float
    observed_at: datetime

    def __post_init__(self) -> None:
        if not self.symbol:
            raise ValueError("signal symbol must not be empty")
        if not (-1.0 <= self.sentiment <= 1.0):
            raise ValueError(f"signal sentiment must be in [-1,1], got {self.sentiment}")
        if not (0.0 <= self.weight <= 1.0):
            raise ValueError(f"signal weight must be in [0,1], got {self.weight}")
        if self.volume < 0:
            raise ValueError(f"signal volume must be >= 0, got {self.volume}")


@dataclass(frozen=True, slots=True)
class AggregatedConviction:
    symbol: str
    sentiment: float
    weighted_volume: float
    source_count: int
    computed_at: datetime
    sources: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class RawSignalEvent:
    kind: SourceKind
    source: str
    observed_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "RawSignalEvent":
        kind = SourceKind(str(raw["kind"]).strip().lower())
        observed = raw.get("observed_at") or raw.get("timestamp")
        if isinstance(observed, datetime):
            observed_at = observed
        else:
            observed_at = datetime.fromisoformat(str(observed).replace("Z", "+00:00"))
        payload = raw.get("payload")
        if payload is None:
            payload = {k: v for k, v in raw.items() if k not in {"kind", "source", "observed_at", "timestamp"}}
        return cls(
            kind=kind,
            source=str(raw.get("source") or kind.value).strip().lower(),
            observed_at=ensure_utc(observed_at),
            payload=dict(payload),
        )
