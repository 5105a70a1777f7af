from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from signaltrader.storage.db import get_connection, init_db
from signaltrader.storage.models import (
    ApprovalRecord,
    ApprovalStatus,
    OrderRecord,
    PositionEntry,
    PositionState,
)
from signaltrader.storage.store import StateStore

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def _store(tmp_path) -> StateStore:
    conn = get_connection(tmp_path / "state.db")
    init_db(conn)
    return StateStore(conn)


def _approval(approval_id: str, *, expires_in: int = 300) -> ApprovalRecord:
    return ApprovalRecord(
        approval_id=approval_id,
        params={"symbol": "AAPL", "side": "buy", "qty": "10"},
        params_digest="digest",
        status=ApprovalStatus.ISSUED,
        issued_at=NOW,
        expires_at=NOW + timedelta(seconds=expires_in),
    )


def test_risk_state_singleton_starts_clean(tmp_path) -> None:
    store = _store(tmp_path)
    state = store.get_risk_state()
    assert state.kill_switch_active is False
    assert state.daily_loss == Decimal("0")
    assert state.version == 0


def test_compare_and_set_rejects_stale_version(tmp_path) -> None:
    store = _store(tmp_path)
    current = store.get_risk_state()
    assert store.compare_and_set_risk_state(current.version, replace(current, daily_loss=Decimal("10")))
    assert not store.compare_and_set_risk_state(current.version, replace(current, daily_loss=Decimal("99")))
    reloaded = store.get_risk_state()
    assert reloaded.daily_loss == Decimal("10")
    assert reloaded.version == current.version + 1


def test_update_risk_state_applies_mutation(tmp_path) -> None:
    store = _store(tmp_path)
    updated = store.update_risk_state(lambda s: replace(s, daily_loss=s.daily_loss + Decimal("12.50")))
    assert updated.daily_loss == Decimal("12.50")
    assert store.get_risk_state().daily_loss == Decimal("12.50")


def test_daily_loss_resets_once_per_day(tmp_path) -> None:
    store = _store(tmp_path)
    assert store.reset_daily_loss_if_new_day("2026-03-02", NOW)
    store.update_risk_state(lambda s: replace(s, daily_loss=Decimal("250")))
    assert not store.reset_daily_loss_if_new_day("2026-03-02", NOW)
    assert store.get_risk_state().daily_loss == Decimal("250")
    assert store.reset_daily_loss_if_new_day("2026-03-03", NOW + timedelta(days=1))
    state = store.get_risk_state()
    assert state.daily_loss == Decimal("0")
    assert state.loss_day == "2026-03-03"


def test_approval_consumed_exactly_once(tmp_path) -> None:
    store = _store(tmp_path)
    store.add_approval(_approval("a1"))
    assert store.consume_approval("a1", NOW)
    assert not store.consume_approval("a1", NOW)
    record = store.get_approval("a1")
    assert record is not None
    assert record.status == ApprovalStatus.CONSUMED
    assert record.consumed_at == NOW


def test_expired_approval_cannot_be_consumed(tmp_path) -> None:
    store = _store(tmp_path)
    store.add_approval(_approval("a2", expires_in=60))
    assert not store.consume_approval("a2", NOW + timedelta(seconds=61))
    assert store.expire_approvals(NOW + timedelta(seconds=61)) == 1
    assert store.get_approval("a2").status == ApprovalStatus.EXPIRED


def test_invalidate_outstanding_only_touches_issued(tmp_path) -> None:
    store = _store(tmp_path)
    store.add_approval(_approval("a3"))
    store.add_approval(_approval("a4"))
    store.consume_approval("a3", NOW)
    assert store.invalidate_outstanding_approvals("kill_switch:test") == 1
    assert store.get_approval("a3").status == ApprovalStatus.CONSUMED
    record = store.get_approval("a4")
    assert record.status == ApprovalStatus.INVALIDATED
    assert record.invalidated_reason == "kill_switch:test"


def test_position_roundtrip_keeps_decimals(tmp_path) -> None:
    store = _store(tmp_path)
    entry = PositionEntry(
        symbol="BTC/USD",
        qty=Decimal("0.012345"),
        entry_time=NOW,
        entry_price=Decimal("64000.10"),
        highest_price=Decimal("64000.10"),
        take_profit_pct=10.0,
        stop_loss_pct=5.0,
        trailing_stop_pct=None,
        asset_class="crypto",
        entry_sources=["crypto_momentum"],
    )
    store.upsert_position(entry)
    loaded = store.get_position("BTC/USD")
    assert loaded is not None
    assert loaded.qty == Decimal("0.012345")
    assert loaded.entry_price == Decimal("64000.10")
    assert loaded.trailing_stop_pct is None
    assert loaded.state == PositionState.OPEN
    assert loaded.entry_sources == ["crypto_momentum"]
    store.delete_position("BTC/USD")
    assert store.list_positions() == []


def test_open_orders_exclude_terminal_statuses(tmp_path) -> None:
    store = _store(tmp_path)
    for order_id, status in (("o1", "NEW"), ("o2", "PARTIALLY_FILLED"), ("o3", "FILLED"), ("o4", "CANCELED")):
        store.upsert_order(
            OrderRecord(
                order_id=order_id,
                client_order_id=f"c-{order_id}",
                symbol="AAPL",
                side="buy",
                order_type="market",
                purpose="entry",
                status=status,
                submitted_at=NOW,
                updated_at=NOW,
                qty=Decimal("1"),
            )
        )
    assert {order.order_id for order in store.list_open_orders()} == {"o1", "o2"}
    assert store.list_open_orders("MSFT") == []
