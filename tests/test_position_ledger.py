from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from signaltrader.broker.models import BrokerPosition
from signaltrader.config import AppConfig, parse_config
from signaltrader.positions.ledger import InvalidTransitionError, PositionLedger
from signaltrader.signals.models import AggregatedConviction
from signaltrader.storage.db import get_connection, init_db
from signaltrader.storage.models import PositionState
from signaltrader.storage.store import StateStore

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def _ledger(tmp_path, config: AppConfig | None = None) -> PositionLedger:
    conn = get_connection(tmp_path / "ledger.db")
    init_db(conn)
    return PositionLedger(StateStore(conn), config or AppConfig())


def _broker_position(symbol: str, qty: str, avg: str, price: str, asset_class: str = "us_equity") -> BrokerPosition:
    return BrokerPosition(
        symbol=symbol,
        qty=Decimal(qty),
        market_value=Decimal(qty) * Decimal(price),
        avg_entry_price=Decimal(avg),
        current_price=Decimal(price),
        asset_class=asset_class,
    )


def test_full_lifecycle(tmp_path) -> None:
    ledger = _ledger(tmp_path)
    conviction = AggregatedConviction(
        symbol="AAPL", sentiment=0.6, weighted_volume=4.2, source_count=2, computed_at=NOW, sources=("news", "reddit")
    )
    assert ledger.state_of("AAPL") == PositionState.NONE
    entry = ledger.open_position(
        symbol="AAPL", qty=Decimal("5"), fill_price=Decimal("190"), asset_class="us_equity", now=NOW, conviction=conviction
    )
    assert ledger.state_of("AAPL") == PositionState.OPEN
    assert entry.entry_sources == ["news", "reddit"]
    assert entry.entry_volume == 4.2

    ledger.mark_closing(entry, "take_profit", NOW)
    assert ledger.state_of("AAPL") == PositionState.CLOSING
    assert ledger.get("AAPL").exit_reason == "take_profit"

    closed = ledger.confirm_close("AAPL")
    assert closed is not None
    assert ledger.state_of("AAPL") == PositionState.NONE


def test_cannot_open_twice(tmp_path) -> None:
    ledger = _ledger(tmp_path)
    ledger.open_position(symbol="AAPL", qty=Decimal("1"), fill_price=Decimal("10"), asset_class="us_equity", now=NOW)
    with pytest.raises(InvalidTransitionError):
        ledger.open_position(symbol="AAPL", qty=Decimal("1"), fill_price=Decimal("10"), asset_class="us_equity", now=NOW)


def test_confirm_close_requires_closing(tmp_path) -> None:
    ledger = _ledger(tmp_path)
    ledger.open_position(symbol="AAPL", qty=Decimal("1"), fill_price=Decimal("10"), asset_class="us_equity", now=NOW)
    with pytest.raises(InvalidTransitionError):
        ledger.confirm_close("AAPL")


def test_high_water_mark_only_rises(tmp_path) -> None:
    ledger = _ledger(tmp_path)
    entry = ledger.open_position(
        symbol="AAPL", qty=Decimal("1"), fill_price=Decimal("100"), asset_class="us_equity", now=NOW
    )
    ledger.ratchet(entry, Decimal("120"), NOW)
    ledger.ratchet(entry, Decimal("105"), NOW + timedelta(minutes=1))
    assert ledger.get("AAPL").highest_price == Decimal("120")


def test_crypto_uses_crypto_exit_levels(tmp_path) -> None:
    config = parse_config({"crypto": {"enabled": True, "take_profit_pct": 15.0, "stop_loss_pct": 7.0}})
    ledger = _ledger(tmp_path, config)
    entry = ledger.open_position(
        symbol="BTC/USD", qty=Decimal("0.01"), fill_price=Decimal("60000"), asset_class="crypto", now=NOW
    )
    assert (entry.take_profit_pct, entry.stop_loss_pct) == (15.0, 7.0)


def test_reconcile_adopts_and_drops(tmp_path) -> None:
    ledger = _ledger(tmp_path)
    ledger.open_position(symbol="GONE", qty=Decimal("3"), fill_price=Decimal("10"), asset_class="us_equity", now=NOW)
    closing = ledger.open_position(
        symbol="SOLD", qty=Decimal("2"), fill_price=Decimal("10"), asset_class="us_equity", now=NOW
    )
    ledger.mark_closing(closing, "stop_loss", NOW)
    ledger.open_position(symbol="KEPT", qty=Decimal("4"), fill_price=Decimal("10"), asset_class="us_equity", now=NOW)

    closed = ledger.reconcile(
        [_broker_position("KEPT", "6", "10", "11"), _broker_position("NEW", "2", "50", "55")],
        NOW,
    )
    assert closed == ["SOLD"]
    assert ledger.state_of("GONE") == PositionState.NONE
    assert ledger.get("KEPT").qty == Decimal("6")
    adopted = ledger.get("NEW")
    assert adopted is not None
    assert adopted.entry_reason == "adopted"
    assert adopted.highest_price == Decimal("55")
