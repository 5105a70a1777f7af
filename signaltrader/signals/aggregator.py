from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime
from typing import Iterable

from signaltrader.signals.models import AggregatedConviction, Signal


def aggregate(
    signals: Iterable[Signal],
    *,
    min_weighted_volume: float,
    as_of: datetime,
) -> list[AggregatedConviction]:
    """
    Fuse per-source signals into one ranked conviction per symbol.

    Each signal contributes ``weight * log1p(volume)`` to its symbol's
    denominator and that amount times its sentiment to the numerator.
    Symbols whose total weighted volume falls below ``min_weighted_volume``
    are dropped. Output is ranked by conviction, then weighted volume,
    then symbol, and does not depend on input order.
    """
    grouped: dict[str, list[Signal]] = defaultdict(list)
    for item in signals:
        grouped[item.symbol.strip().upper()].append(item)

    results: list[AggregatedConviction] = []
    for symbol, items in grouped.items():
        evidence = [item.weight * math.log1p(item.volume) for item in items]
        weighted_volume = math.fsum(evidence)
        if weighted_volume <= 0 or weighted_volume < min_weighted_volume:
            continue
        numerator = math.fsum(item.sentiment * mass for item, mass in zip(items, evidence))
        conviction = max(-1.0, min(1.0, numerator / weighted_volume))
        sources = tuple(sorted({item.source for item in items}))
        results.append(
            AggregatedConviction(
                symbol=symbol,
                sentiment=conviction,
                weighted_volume=weighted_volume,
                source_count=len(sources),
                computed_at=as_of,
                sources=sources,
            )
        )
    results.sort(key=lambda item: (-item.sentiment, -item.weighted_volume, item.symbol))
    return results


def by_symbol(convictions: Iterable[AggregatedConviction]) -> dict[str, AggregatedConviction]:
    return {item.symbol: item for item in convictions}
