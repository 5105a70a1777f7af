from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from signaltrader.policy import (
    ApprovalBindingError,
    ApprovalError,
    ApprovalExpiredError,
    ApprovalIntegrityError,
    ApprovalInvalidatedError,
    ApprovalProtocol,
    ApprovalReplayError,
    OrderPreview,
    PolicyResult,
    PolicyViolation,
    TradingHaltedError,
)
from signaltrader.storage.db import get_connection, init_db
from signaltrader.storage.models import ApprovalStatus
from signaltrader.storage.store import StateStore

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
SECRET = "unit-test-approval-secret"


def _protocol(tmp_path) -> tuple[ApprovalProtocol, StateStore]:
    conn = get_connection(tmp_path / "approvals.db")
    init_db(conn)
    store = StateStore(conn)
    return ApprovalProtocol(store, SECRET, default_ttl_seconds=300), store


def _preview(qty: str = "10") -> OrderPreview:
    return OrderPreview(
        symbol="AAPL",
        side="buy",
        order_type="market",
        estimated_price=Decimal("190.25"),
        qty=Decimal(qty),
    )


ALLOWED = PolicyResult(allowed=True)


def test_issue_then_redeem_once(tmp_path) -> None:
    protocol, store = _protocol(tmp_path)
    preview = _preview()
    issued = protocol.issue(preview, ALLOWED, now=NOW)
    assert issued.expires_at == NOW + timedelta(seconds=300)

    validated = protocol.redeem(issued.token, preview.order_params(), now=NOW + timedelta(seconds=5))
    assert validated.approval_id == issued.approval_id
    assert validated.params == preview.order_params()
    assert store.get_approval(issued.approval_id).status == ApprovalStatus.CONSUMED

    with pytest.raises(ApprovalReplayError):
        protocol.redeem(issued.token, preview.order_params(), now=NOW + timedelta(seconds=6))


def test_approve_attaches_token_to_result(tmp_path) -> None:
    protocol, _ = _protocol(tmp_path)
    result = protocol.approve(_preview(), ALLOWED, ttl_seconds=60, now=NOW)
    assert result.allowed
    assert result.approval_token
    assert result.approval_id
    assert result.expires_at == NOW + timedelta(seconds=60)


def test_rejected_result_cannot_be_approved(tmp_path) -> None:
    protocol, _ = _protocol(tmp_path)
    rejected = PolicyResult(allowed=False, violations=(PolicyViolation("max_notional", "too big"),))
    with pytest.raises(ApprovalError):
        protocol.issue(_preview(), rejected, now=NOW)


def test_kill_switch_blocks_issuance(tmp_path) -> None:
    protocol, store = _protocol(tmp_path)
    store.update_risk_state(lambda s: replace(s, kill_switch_active=True, kill_switch_reason="test"))
    with pytest.raises(TradingHaltedError):
        protocol.issue(_preview(), ALLOWED, now=NOW)


def test_concurrent_redeem_has_single_winner(tmp_path) -> None:
    protocol, _ = _protocol(tmp_path)
    preview = _preview()
    issued = protocol.issue(preview, ALLOWED, now=NOW)
    outcomes: list[str] = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def _worker() -> None:
        barrier.wait()
        try:
            protocol.redeem(issued.token, preview.order_params(), now=NOW + timedelta(seconds=1))
            label = "ok"
        except ApprovalReplayError:
            label = "replay"
        with lock:
            outcomes.append(label)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert outcomes.count("ok") == 1
    assert outcomes.count("replay") == 7


def test_tampered_token_fails_integrity(tmp_path) -> None:
    protocol, _ = _protocol(tmp_path)
    issued = protocol.issue(_preview(), ALLOWED, now=NOW)
    body, signature = issued.token.rsplit(".", 1)
    forged = f"{body}.{'0' * len(signature)}"
    with pytest.raises(ApprovalIntegrityError):
        protocol.validate(forged, now=NOW)
    with pytest.raises(ApprovalIntegrityError):
        protocol.validate("not-a-token", now=NOW)


def test_token_from_other_secret_is_rejected(tmp_path) -> None:
    protocol, store = _protocol(tmp_path)
    other = ApprovalProtocol(store, "another-secret-with-length", default_ttl_seconds=300)
    issued = other.issue(_preview(), ALLOWED, now=NOW)
    with pytest.raises(ApprovalIntegrityError):
        protocol.validate(issued.token, now=NOW)


def test_changed_parameters_fail_binding(tmp_path) -> None:
    protocol, store = _protocol(tmp_path)
    issued = protocol.issue(_preview("10"), ALLOWED, now=NOW)
    with pytest.raises(ApprovalBindingError):
        protocol.redeem(issued.token, _preview("11").order_params(), now=NOW)
    assert store.get_approval(issued.approval_id).status == ApprovalStatus.ISSUED


def test_expired_token_is_refused(tmp_path) -> None:
    protocol, _ = _protocol(tmp_path)
    preview = _preview()
    issued = protocol.issue(preview, ALLOWED, ttl_seconds=30, now=NOW)
    with pytest.raises(ApprovalExpiredError):
        protocol.redeem(issued.token, preview.order_params(), now=NOW + timedelta(seconds=30))


def test_expire_stale_marks_records(tmp_path) -> None:
    protocol, store = _protocol(tmp_path)
    issued = protocol.issue(_preview(), ALLOWED, ttl_seconds=30, now=NOW)
    assert protocol.expire_stale(now=NOW + timedelta(minutes=5)) == 1
    assert store.get_approval(issued.approval_id).status == ApprovalStatus.EXPIRED
    with pytest.raises(ApprovalExpiredError):
        protocol.validate(issued.token, now=NOW + timedelta(minutes=5))


def test_invalidated_token_is_refused(tmp_path) -> None:
    protocol, _ = _protocol(tmp_path)
    preview = _preview()
    issued = protocol.issue(preview, ALLOWED, now=NOW)
    assert protocol.invalidate(issued.approval_id, "advisor_declined")
    with pytest.raises(ApprovalInvalidatedError):
        protocol.redeem(issued.token, preview.order_params(), now=NOW)


def test_short_secret_is_rejected(tmp_path) -> None:
    _, store = _protocol(tmp_path)
    with pytest.raises(ValueError):
        ApprovalProtocol(store, "short")
