from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from signaltrader.config import SignalsConfig
from signaltrader.signals.models import RawSignalEvent, Signal, SourceKind

LOGGER = logging.getLogger(__name__)


class MalformedEventError(ValueError):
    """Raw event payload cannot be mapped to a signal."""


def _clamp(value: float, min_value: float, max_value: float) -> float:
    return max(min_value, min(max_value, value))


def _symbol(value: Any) -> str:
    symbol = str(value or "").strip().upper()
    if not symbol:
        raise MalformedEventError("missing symbol")
    return symbol


def _number(payload: dict[str, Any], key: str, default: float | None = None) -> float:
    raw = payload.get(key, default)
    if raw is None:
        raise MalformedEventError(f"missing {key}")
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"{key} is not numeric: {raw!r}") from exc
    if not math.isfinite(value):
        raise MalformedEventError(f"{key} is not finite: {raw!r}")
    return value


class SignalNormalizer:
    def __init__(self, config: SignalsConfig):
        self.config = config
        self._handlers: dict[SourceKind, Callable[[RawSignalEvent, float], list[Signal]]] = {
            SourceKind.DIRECT: self._from_direct,
            SourceKind.SOCIAL: self._from_social,
            SourceKind.NEWS: self._from_news,
            SourceKind.FILING: self._from_filing,
            SourceKind.MOMENTUM: self._from_momentum,
        }

    def weight_for(self, event: RawSignalEvent) -> float:
        configured = self.config.source_weights.get(event.source)
        if configured is not None:
            return configured
        own = event.payload.get("weight")
        if own is not None:
            try:
                value = float(own)
            except (TypeError, ValueError):
                return self.config.default_source_weight
            if not math.isfinite(value):
                raise MalformedEventError(f"weight is not finite: {own!r}")
            return _clamp(value, 0.0, 1.0)
        return self.config.default_source_weight

    def _make(self, event: RawSignalEvent, *, symbol: str, sentiment: float, volume: float, weight: float) -> Signal:
        return Signal(
            symbol=symbol,
            source=event.source,
            sentiment=_clamp(sentiment, -1.0, 1.0),
            volume=max(0.0, volume),
            weight=_clamp(weight, 0.0, 1.0),
            observed_at=event.observed_at,
        )

    def _from_direct(self, event: RawSignalEvent, weight: float) -> list[Signal]:
        payload = event.payload
        return [
            self._make(
                event,
                symbol=_symbol(payload.get("symbol")),
                sentiment=_number(payload, "sentiment"),
                volume=_number(payload, "volume", 1.0),
                weight=weight,
            )
        ]

    def _from_social(self, event: RawSignalEvent, weight: float) -> list[Signal]:
        payload = event.payload
        bullish = max(0.0, _number(payload, "bullish", 0.0))
        bearish = max(0.0, _number(payload, "bearish", 0.0))
        total = bullish + bearish
        if total <= 0:
            raise MalformedEventError("social event without bullish/bearish counts")
        mentions = payload.get("mentions")
        volume = _number(payload, "mentions") if mentions is not None else total
        return [
            self._make(
                event,
                symbol=_symbol(payload.get("symbol")),
                sentiment=(bullish - bearish) / total,
                volume=volume,
                weight=weight,
            )
        ]

    def _from_news(self, event: RawSignalEvent, weight: float) -> list[Signal]:
        payload = event.payload
        symbols = payload.get("symbols")
        if isinstance(symbols, str):
            symbols = [symbols]
        if not symbols:
            raise MalformedEventError("news event without symbols")
        sentiment = _number(payload, "sentiment")
        volume = _number(payload, "volume", 1.0)
        seen: set[str] = set()
        out: list[Signal] = []
        for raw_symbol in symbols:
            symbol = _symbol(raw_symbol)
            if symbol in seen:
                continue
            seen.add(symbol)
            out.append(self._make(event, symbol=symbol, sentiment=sentiment, volume=volume, weight=weight))
        return out

    def _from_filing(self, event: RawSignalEvent, weight: float) -> list[Signal]:
        payload = event.payload
        return [
            self._make(
                event,
                symbol=_symbol(payload.get("symbol")),
                sentiment=_number(payload, "sentiment"),
                volume=_number(payload, "count", 1.0),
                weight=weight,
            )
        ]

    def _from_momentum(self, event: RawSignalEvent, weight: float) -> list[Signal]:
        payload = event.payload
        change_pct = _number(payload, "change_pct")
        return [
            self._make(
                event,
                symbol=_symbol(payload.get("symbol")),
                sentiment=change_pct / self.config.momentum_scale_pct,
                volume=_number(payload, "volume", 1.0),
                weight=weight,
            )
        ]

    def normalize(self, event: RawSignalEvent) -> list[Signal]:
        handler = self._handlers[event.kind]
        return handler(event, self.weight_for(event))

    def normalize_batch(self, events: Iterable[RawSignalEvent], *, now: datetime) -> list[Signal]:
        cutoff = now - timedelta(minutes=self.config.max_signal_age_minutes)
        signals: list[Signal] = []
        skipped = 0
        stale = 0
        for event in events:
            if event.observed_at < cutoff:
                stale += 1
                continue
            try:
                signals.extend(self.normalize(event))
            except (MalformedEventError, ValueError) as exc:
                skipped += 1
                LOGGER.warning("Skipping malformed %s event source=%s: %s", event.kind.value, event.source, exc)
        if skipped or stale:
            LOGGER.info("Signal normalization dropped malformed=%d stale=%d kept=%d", skipped, stale, len(signals))
        return signals
