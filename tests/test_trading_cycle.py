from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from signaltrader.advisor import AdvisorVerdict
from signaltrader.broker.alpaca import BrokerAPIError
from signaltrader.broker.models import BrokerOrder
from signaltrader.broker.simulated import DryRunBroker
from signaltrader.config import AppConfig, parse_config
from signaltrader.cycle import TradingCycle
from signaltrader.execution.executor import OrderExecutor
from signaltrader.monitoring.alerts import AlertConfig, AlertDispatcher
from signaltrader.policy import ApprovalProtocol, PolicyEngine
from signaltrader.positions.exits import ExitEvaluator
from signaltrader.positions.ledger import PositionLedger
from signaltrader.risk import RiskController
from signaltrader.signals.models import RawSignalEvent, SourceKind
from signaltrader.signals.normalize import SignalNormalizer
from signaltrader.storage.db import get_connection, init_db
from signaltrader.storage.models import PositionState
from signaltrader.storage.store import StateStore

NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class _QueuedSource:
    def __init__(self, *batches: list[RawSignalEvent]):
        self.batches = list(batches)

    def poll(self, now: datetime) -> list[RawSignalEvent]:
        return self.batches.pop(0) if self.batches else []


class _FixedAdvisor:
    def __init__(self, verdict: AdvisorVerdict | None):
        self.verdict = verdict
        self.calls = 0

    def review(self, preview, conviction):
        self.calls += 1
        return self.verdict


class _AccountDownBroker(DryRunBroker):
    def get_account(self):
        raise BrokerAPIError("account endpoint down")


def _event(symbol: str, sentiment: float, volume: float = 20.0) -> RawSignalEvent:
    return RawSignalEvent(
        kind=SourceKind.DIRECT,
        source="manual",
        observed_at=NOW - timedelta(minutes=1),
        payload={"symbol": symbol, "sentiment": sentiment, "volume": volume},
    )


def _build(tmp_path, *batches, config: AppConfig | None = None, broker: DryRunBroker | None = None, advisor=None):
    config = config or AppConfig()
    conn = get_connection(tmp_path / "cycle.db")
    init_db(conn)
    store = StateStore(conn)
    broker = broker or DryRunBroker(now=NOW)
    broker.set_price("AAPL", Decimal("100"))
    alerts = AlertDispatcher(AlertConfig(enabled=True, cooldown_seconds=0))
    approvals = ApprovalProtocol(store, "cycle-test-approval-secret")
    risk = RiskController(
        store=store,
        approvals=approvals,
        broker=broker,
        policy=config.policy,
        timezone_name=config.timezone,
        alerts=alerts,
    )
    ledger = PositionLedger(store, config)
    cycle = TradingCycle(
        config=config,
        broker=broker,
        store=store,
        ledger=ledger,
        engine=PolicyEngine(config.policy),
        approvals=approvals,
        executor=OrderExecutor(broker=broker, approvals=approvals, store=store),
        risk=risk,
        exit_evaluator=ExitEvaluator(config.exits),
        normalizer=SignalNormalizer(config.signals),
        sources=[_QueuedSource(*batches)],
        advisor=advisor,
        alerts=alerts,
    )
    return cycle, store, broker, ledger, risk, alerts


def _approval_statuses(store: StateStore) -> list[str]:
    return [row["status"] for row in store.conn.execute("SELECT status FROM approvals").fetchall()]


def test_entry_opens_position_with_consumed_approval(tmp_path) -> None:
    cycle, store, broker, ledger, _, _ = _build(tmp_path, [_event("AAPL", 0.8)])
    report = cycle.run_once(NOW)
    cycle.close()

    assert report.status == "ok"
    assert report.entries_submitted == ["AAPL"]
    assert report.next_delay_seconds == AppConfig().scheduler.open_seconds
    assert broker.submitted[0]["qty"] == "50"
    entry = ledger.get("AAPL")
    assert entry is not None
    assert entry.state == PositionState.OPEN
    assert entry.qty == Decimal("50")
    assert entry.entry_sources == ["manual"]
    assert _approval_statuses(store) == ["CONSUMED"]


def test_take_profit_exit_closes_position(tmp_path) -> None:
    cycle, store, broker, ledger, risk, alerts = _build(tmp_path, [_event("AAPL", 0.8)])
    cycle.run_once(NOW)
    broker.set_price("AAPL", Decimal("111"))
    report = cycle.run_once(NOW + timedelta(minutes=1))
    cycle.close()

    assert report.exits_submitted == ["AAPL"]
    assert report.closed == ["AAPL"]
    assert ledger.state_of("AAPL") == PositionState.NONE
    assert broker.holdings == {}
    assert store.count_closed_trades() == 1
    assert risk.snapshot().daily_loss == Decimal("0")
    assert any("POSITION_CLOSED" in text for text in alerts.sent)


def test_stop_loss_records_loss_and_cooldown(tmp_path) -> None:
    cycle, _, broker, ledger, risk, _ = _build(tmp_path, [_event("AAPL", 0.8)])
    cycle.run_once(NOW)
    broker.set_price("AAPL", Decimal("90"))
    report = cycle.run_once(NOW + timedelta(minutes=1))
    cycle.close()

    assert report.closed == ["AAPL"]
    state = risk.snapshot()
    assert state.daily_loss == Decimal("500")
    assert state.cooldown_active(NOW + timedelta(minutes=2))
    assert ledger.state_of("AAPL") == PositionState.NONE


def test_cycle_is_skipped_while_another_runs(tmp_path) -> None:
    cycle, _, broker, _, _, _ = _build(tmp_path, [_event("AAPL", 0.8)])
    cycle._lock.acquire()
    try:
        report = cycle.run_once(NOW)
    finally:
        cycle._lock.release()
    cycle.close()
    assert report.status == "busy"
    assert broker.submitted == []


def test_kill_switch_suppresses_entries(tmp_path) -> None:
    cycle, _, broker, ledger, risk, _ = _build(tmp_path, [_event("AAPL", 0.8)])
    risk.enable_kill_switch("manual", now=NOW)
    report = cycle.run_once(NOW)
    cycle.close()
    assert report.status == "halted"
    assert report.entries_submitted == []
    assert broker.submitted == []
    assert ledger.entries() == []


def test_failed_snapshot_skips_cycle(tmp_path) -> None:
    cycle, _, broker, _, _, _ = _build(tmp_path, [_event("AAPL", 0.8)], broker=_AccountDownBroker(now=NOW))
    report = cycle.run_once(NOW)
    cycle.close()
    assert report.status == "skipped"
    assert report.next_delay_seconds == AppConfig().scheduler.open_seconds
    assert broker.submitted == []


def test_advisor_decline_invalidates_approval(tmp_path) -> None:
    config = parse_config({"advisor": {"enabled": True, "min_confidence": 0.6}})
    advisor = _FixedAdvisor(AdvisorVerdict(approve=False, confidence=0.9))
    cycle, store, broker, _, _, _ = _build(tmp_path, [_event("AAPL", 0.8)], config=config, advisor=advisor)
    report = cycle.run_once(NOW)
    cycle.close()
    assert advisor.calls == 1
    assert report.rejected == {"AAPL": ["advisor_declined"]}
    assert broker.submitted == []
    assert _approval_statuses(store) == ["INVALIDATED"]


def test_failed_submit_burns_token_and_retries_next_cycle(tmp_path) -> None:
    broker = DryRunBroker(now=NOW)
    broker.fail_submits = 1
    cycle, store, _, ledger, _, _ = _build(
        tmp_path, [_event("AAPL", 0.8)], [_event("AAPL", 0.8)], broker=broker
    )
    first = cycle.run_once(NOW)
    assert first.entries_submitted == []
    assert first.errors
    assert ledger.state_of("AAPL") == PositionState.NONE

    second = cycle.run_once(NOW + timedelta(minutes=1))
    cycle.close()
    assert second.entries_submitted == ["AAPL"]
    assert sorted(_approval_statuses(store)) == ["CONSUMED", "CONSUMED"]


def test_entries_are_capped_and_ranked(tmp_path) -> None:
    config = parse_config({"entry": {"max_entries_per_cycle": 1}})
    broker = DryRunBroker(now=NOW)
    broker.set_price("MSFT", Decimal("50"))
    cycle, _, _, ledger, _, _ = _build(
        tmp_path, [_event("AAPL", 0.5), _event("MSFT", 0.9), _event("WEAK", 0.1)], config=config, broker=broker
    )
    report = cycle.run_once(NOW)
    cycle.close()
    assert report.entries_submitted == ["MSFT"]
    assert [entry.symbol for entry in ledger.entries()] == ["MSFT"]


def test_closed_market_rejects_equity_entry(tmp_path) -> None:
    cycle, _, broker, _, _, _ = _build(tmp_path, [_event("AAPL", 0.8)], broker=DryRunBroker(now=NOW, market_open=False))
    report = cycle.run_once(NOW)
    cycle.close()
    assert report.rejected == {"AAPL": ["trading_hours"]}
    assert broker.submitted == []


class _LaggingSellBroker(DryRunBroker):
    """Sells rest as NEW and fill while the positions snapshot is being read."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.hold_sells = False
        self.fill_on_positions_read = False
        self.pending: list[tuple[str, dict]] = []

    def submit_order(self, params, *, client_order_id):
        if params["side"] != "sell" or not self.hold_sells:
            return super().submit_order(params, client_order_id=client_order_id)
        order = BrokerOrder(
            order_id=f"HELD-{len(self.pending)}",
            client_order_id=client_order_id,
            symbol=str(params["symbol"]).upper(),
            side="sell",
            status="NEW",
            submitted_at=self.now(),
        )
        self.orders[order.order_id] = order
        self.submitted.append({**params, "client_order_id": client_order_id})
        self.pending.append((order.order_id, params))
        return order

    def get_positions(self):
        snapshot = super().get_positions()
        if self.fill_on_positions_read:
            self.fill_on_positions_read = False
            for order_id, params in self.pending:
                symbol = str(params["symbol"]).upper()
                qty = Decimal(str(params["qty"]))
                price = self.prices[symbol]
                held_qty, avg = self.holdings[symbol]
                if held_qty == qty:
                    self.holdings.pop(symbol)
                else:
                    self.holdings[symbol] = (held_qty - qty, avg)
                self.cash += qty * price
                self.orders[order_id] = replace(
                    self.orders[order_id], status="FILLED", filled_qty=qty, filled_avg_price=price
                )
            self.pending.clear()
        return snapshot


def _sells(broker: DryRunBroker) -> list[dict]:
    return [params for params in broker.submitted if params["side"] == "sell"]


def test_sell_filled_after_positions_read_is_not_readopted(tmp_path) -> None:
    broker = _LaggingSellBroker(now=NOW)
    cycle, store, _, ledger, _, _ = _build(tmp_path, [_event("AAPL", 0.8)], broker=broker)
    cycle.run_once(NOW)
    broker.set_price("AAPL", Decimal("115"))
    broker.hold_sells = True
    pending = cycle.run_once(NOW + timedelta(minutes=1))
    assert pending.exits_submitted == ["AAPL"]
    assert ledger.state_of("AAPL") == PositionState.CLOSING

    broker.fill_on_positions_read = True
    report = cycle.run_once(NOW + timedelta(minutes=2))
    cycle.close()

    assert report.closed == ["AAPL"]
    assert report.exits_submitted == []
    assert len(_sells(broker)) == 1
    assert ledger.state_of("AAPL") == PositionState.NONE
    assert broker.holdings == {}
    assert store.count_closed_trades() == 1


def test_failed_exit_stays_closing_and_retries_with_stored_reason(tmp_path) -> None:
    cycle, store, broker, ledger, _, _ = _build(tmp_path, [_event("AAPL", 0.8)])
    cycle.run_once(NOW)
    broker.set_price("AAPL", Decimal("115"))
    broker.fail_submits = 1
    failed = cycle.run_once(NOW + timedelta(minutes=1))
    assert failed.exits_submitted == []
    assert failed.errors
    entry = ledger.get("AAPL")
    assert entry is not None
    assert entry.state == PositionState.CLOSING
    assert entry.exit_reason == "take_profit"
    assert _sells(broker) == []

    retried = cycle.run_once(NOW + timedelta(minutes=2))
    cycle.close()
    assert retried.exits_submitted == ["AAPL"]
    assert retried.closed == ["AAPL"]
    assert len(_sells(broker)) == 1
    reasons = [row["reason"] for row in store.conn.execute("SELECT reason FROM orders WHERE side = 'sell'").fetchall()]
    assert reasons == ["take_profit"]
    assert ledger.state_of("AAPL") == PositionState.NONE
