from __future__ import annotations

import math
import random
from datetime import datetime, timezone

import pytest

from signaltrader.signals.aggregator import aggregate, by_symbol
from signaltrader.signals.models import Signal

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def _signal(symbol: str, source: str, sentiment: float, volume: float, weight: float) -> Signal:
    return Signal(
        symbol=symbol,
        source=source,
        sentiment=sentiment,
        volume=volume,
        weight=weight,
        observed_at=NOW,
    )


def _five_sources() -> list[Signal]:
    weights = [0.9, 0.75, 0.5, 0.5, 0.3]
    sentiments = [0.8, 0.6, -0.2, 0.1, 0.4]
    names = ["sec_filing", "news", "reddit", "stocktwits", "crypto_momentum"]
    return [_signal("X", name, s, 10.0, w) for name, s, w in zip(names, sentiments, weights)]


def test_weighted_mean_with_equal_volumes() -> None:
    result = aggregate(_five_sources(), min_weighted_volume=0.0, as_of=NOW)
    assert len(result) == 1
    conviction = result[0]
    assert conviction.symbol == "X"
    assert conviction.sentiment == pytest.approx(1.24 / 2.95, rel=1e-9)
    assert conviction.weighted_volume == pytest.approx(2.95 * math.log1p(10.0), rel=1e-9)
    assert conviction.source_count == 5
    assert conviction.computed_at == NOW


def test_result_does_not_depend_on_input_order() -> None:
    signals = _five_sources() + [
        _signal("Y", "news", 0.5, 3.0, 0.75),
        _signal("Z", "reddit", -0.4, 50.0, 0.5),
    ]
    baseline = aggregate(signals, min_weighted_volume=0.0, as_of=NOW)
    rng = random.Random(7)
    for _ in range(10):
        shuffled = list(signals)
        rng.shuffle(shuffled)
        again = aggregate(shuffled, min_weighted_volume=0.0, as_of=NOW)
        assert [item.symbol for item in again] == [item.symbol for item in baseline]
        for left, right in zip(again, baseline):
            assert left.sentiment == pytest.approx(right.sentiment, abs=1e-12)
            assert left.sources == right.sources


def test_symbols_below_volume_floor_are_dropped() -> None:
    signals = [
        _signal("THIN", "reddit", 0.9, 1.0, 0.5),
        _signal("THICK", "reddit", 0.9, 100.0, 0.5),
    ]
    result = aggregate(signals, min_weighted_volume=1.0, as_of=NOW)
    assert [item.symbol for item in result] == ["THICK"]


def test_zero_volume_never_divides_by_zero() -> None:
    result = aggregate([_signal("NOPE", "news", 1.0, 0.0, 0.75)], min_weighted_volume=0.0, as_of=NOW)
    assert result == []


def test_ranking_breaks_ties_by_volume_then_symbol() -> None:
    signals = [
        _signal("BBB", "news", 0.5, 10.0, 0.5),
        _signal("AAA", "news", 0.5, 10.0, 0.5),
        _signal("CCC", "news", 0.5, 40.0, 0.5),
        _signal("DDD", "news", 0.9, 2.0, 0.5),
    ]
    result = aggregate(signals, min_weighted_volume=0.0, as_of=NOW)
    assert [item.symbol for item in result] == ["DDD", "CCC", "AAA", "BBB"]


def test_symbols_are_grouped_case_insensitively() -> None:
    signals = [
        _signal("aapl", "news", 0.5, 5.0, 0.75),
        _signal("AAPL", "reddit", 0.1, 5.0, 0.5),
    ]
    result = by_symbol(aggregate(signals, min_weighted_volume=0.0, as_of=NOW))
    assert set(result) == {"AAPL"}
    assert result["AAPL"].sources == ("news", "reddit")
