from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any

from signaltrader.advisor import DecisionAdvisor, passes_gate
from signaltrader.broker.alpaca import BrokerAPIError
from signaltrader.broker.models import (
    AccountSnapshot,
    BrokerOrder,
    BrokerPosition,
    BrokerProvider,
    MarketClock,
    Quote,
    asset_class_for,
)
from signaltrader.clock import utc_now
from signaltrader.config import AppConfig
from signaltrader.execution.executor import MarketClosedError, OrderExecutor
from signaltrader.monitoring.alerts import AlertDispatcher
from signaltrader.policy.approval import (
    ApprovalError,
    ApprovalIntegrityError,
    ApprovalProtocol,
)
from signaltrader.policy.contracts import OrderPreview, TradingHaltedError
from signaltrader.policy.engine import PolicyEngine
from signaltrader.positions.exits import ExitEvaluator
from signaltrader.positions.ledger import PositionLedger
from signaltrader.risk import RiskController
from signaltrader.scheduler import SessionPhase, classify_session, next_cycle_delay
from signaltrader.signals.aggregator import aggregate, by_symbol
from signaltrader.signals.models import AggregatedConviction, RawSignalEvent
from signaltrader.signals.normalize import SignalNormalizer
from signaltrader.signals.sources import SignalSource
from signaltrader.storage.models import ClosedTradeRecord, OrderRecord, PositionState
from signaltrader.storage.store import StateStore

LOGGER = logging.getLogger(__name__)

EQUITY_QTY_STEP = Decimal("1")
CRYPTO_QTY_STEP = Decimal("0.000001")


class SnapshotUnavailableError(RuntimeError):
    """A read-only broker snapshot failed or timed out."""


@dataclass(slots=True)
class CycleReport:
    started_at: datetime
    status: str = "ok"
    phase: SessionPhase | None = None
    next_delay_seconds: int | None = None
    convictions: int = 0
    entries_submitted: list[str] = field(default_factory=list)
    exits_submitted: list[str] = field(default_factory=list)
    closed: list[str] = field(default_factory=list)
    rejected: dict[str, list[str]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)


class TradingCycle:
    """
    One gather -> aggregate -> decide -> exit pass at a time.

    Broker reads fan out on a small thread pool with a bounded wait; all
    writes (risk state, ledger transitions, token consumption) happen on
    the calling thread while the cycle lock is held.
    """

    def __init__(
        self,
        *,
        config: AppConfig,
        broker: BrokerProvider,
        store: StateStore,
        ledger: PositionLedger,
        engine: PolicyEngine,
        approvals: ApprovalProtocol,
        executor: OrderExecutor,
        risk: RiskController,
        exit_evaluator: ExitEvaluator,
        normalizer: SignalNormalizer,
        sources: list[SignalSource],
        advisor: DecisionAdvisor | None = None,
        alerts: AlertDispatcher | None = None,
    ):
        self.config = config
        self.broker = broker
        self.store = store
        self.ledger = ledger
        self.engine = engine
        self.approvals = approvals
        self.executor = executor
        self.risk = risk
        self.exit_evaluator = exit_evaluator
        self.normalizer = normalizer
        self.sources = sources
        self.advisor = advisor
        self.alerts = alerts
        self._lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="signaltrader-read")

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)

    def _alert(self, **kwargs: Any) -> None:
        if self.alerts is not None:
            self.alerts.send(**kwargs)

    def run_once(self, now: datetime | None = None) -> CycleReport:
        started = now or utc_now()
        if not self._lock.acquire(blocking=False):
            LOGGER.info("Cycle skipped: previous cycle still running")
            return CycleReport(started_at=started, status="busy")
        try:
            return self._run(started)
        finally:
            self._lock.release()

    # Reads

    def _wait(self, future: Any, label: str) -> Any:
        try:
            return future.result(timeout=self.config.scheduler.read_timeout_seconds)
        except FutureTimeoutError as exc:
            future.cancel()
            raise SnapshotUnavailableError(f"{label} timed out") from exc
        except BrokerAPIError as exc:
            raise SnapshotUnavailableError(f"{label} failed: {exc}") from exc

    def _read_snapshots(self) -> tuple[AccountSnapshot, list[BrokerPosition], MarketClock]:
        account_f = self._pool.submit(self.broker.get_account)
        positions_f = self._pool.submit(self.broker.get_positions)
        clock_f = self._pool.submit(self.broker.get_clock)
        return (
            self._wait(account_f, "account"),
            self._wait(positions_f, "positions"),
            self._wait(clock_f, "clock"),
        )

    def _read_quotes(self, symbols: list[str]) -> dict[str, Quote]:
        if not symbols:
            return {}
        return self._wait(self._pool.submit(self.broker.get_quotes, symbols), "quotes")

    def _gather_events(self, now: datetime) -> list[RawSignalEvent]:
        events: list[RawSignalEvent] = []
        for source in self.sources:
            try:
                events.extend(source.poll(now))
            except (OSError, ValueError) as exc:
                LOGGER.warning("Signal source %s failed: %s", type(source).__name__, exc)
        return events

    # Cycle

    def _run(self, now: datetime) -> CycleReport:
        report = CycleReport(started_at=now)
        self.risk.roll_trading_day(now)
        self.approvals.expire_stale(now=now)
        try:
            account, positions, clock = self._read_snapshots()
        except SnapshotUnavailableError as exc:
            LOGGER.warning("Cycle skipped: %s", exc)
            report.status = "skipped"
            report.errors.append(str(exc))
            report.next_delay_seconds = self.config.scheduler.open_seconds
            return report

        report.phase = classify_session(clock, now, self.config.scheduler)
        report.next_delay_seconds = next_cycle_delay(
            report.phase,
            self.config.scheduler,
            continuous_assets_enabled=self.config.crypto.enabled,
        )

        finished = self.executor.refresh_open_orders(now=now)
        for record, remote in finished:
            self._apply_order_result(record, remote, now, report)
        if any(remote.filled_qty > 0 for _, remote in finished):
            # Fills landed after the positions read; that snapshot is stale.
            try:
                positions = self._wait(self._pool.submit(self.broker.get_positions), "positions")
            except SnapshotUnavailableError as exc:
                LOGGER.warning("Cycle stopped after fills: %s", exc)
                report.errors.append(str(exc))
                return report
        settled = set(report.closed)
        positions = [position for position in positions if position.symbol not in settled]
        report.closed.extend(self.ledger.reconcile(positions, now))

        signals = self.normalizer.normalize_batch(self._gather_events(now), now=now)
        convictions = aggregate(
            signals,
            min_weighted_volume=self.config.signals.min_weighted_volume,
            as_of=now,
        )
        report.convictions = len(convictions)
        conviction_map = by_symbol(convictions)
        candidates = self._entry_candidates(convictions, positions)

        held_symbols = [entry.symbol for entry in self.ledger.entries()]
        wanted = sorted(set(held_symbols) | {item.symbol for item in candidates})
        try:
            quotes = self._read_quotes(wanted)
        except SnapshotUnavailableError as exc:
            LOGGER.warning("Quotes unavailable; skipping exits and entries this cycle: %s", exc)
            report.errors.append(str(exc))
            return report

        try:
            self._evaluate_exits(account, positions, clock, quotes, conviction_map, now, report)
            risk_state = self.risk.snapshot()
            if risk_state.kill_switch_active:
                LOGGER.info("Entries suppressed: kill switch active reason=%s", risk_state.kill_switch_reason)
                report.status = "halted"
            else:
                self._enter_positions(account, positions, clock, quotes, candidates, now, report)
        except ApprovalIntegrityError as exc:
            self._engage_integrity_halt(exc, report)

        LOGGER.info(
            "Cycle done phase=%s convictions=%d entries=%s exits=%s closed=%s rejected=%d next=%ss",
            report.phase.value if report.phase else "-",
            report.convictions,
            ",".join(report.entries_submitted) or "-",
            ",".join(report.exits_submitted) or "-",
            ",".join(report.closed) or "-",
            len(report.rejected),
            report.next_delay_seconds,
        )
        return report

    def _engage_integrity_halt(self, exc: ApprovalIntegrityError, report: CycleReport) -> None:
        self.risk.enable_kill_switch(f"integrity:{type(exc).__name__}")
        self._alert(
            event="APPROVAL_INTEGRITY",
            level="error",
            message=str(exc),
            dedupe_key="approval-integrity",
        )
        report.status = "halted"
        report.errors.append(str(exc))

    # Entries

    def _entry_candidates(
        self,
        convictions: list[AggregatedConviction],
        positions: list[BrokerPosition],
    ) -> list[AggregatedConviction]:
        entry_cfg = self.config.entry
        held = {position.symbol for position in positions} | {entry.symbol for entry in self.ledger.entries()}
        out: list[AggregatedConviction] = []
        for conviction in convictions:
            if len(out) >= entry_cfg.max_entries_per_cycle:
                break
            if conviction.sentiment < entry_cfg.min_sentiment_score:
                break
            if conviction.source_count < entry_cfg.min_sources:
                continue
            symbol = conviction.symbol
            if symbol in held or symbol in entry_cfg.ticker_blacklist:
                continue
            if asset_class_for(symbol) == "crypto" and not (
                self.config.crypto.enabled and symbol in self.config.crypto.symbols
            ):
                continue
            if self.executor.has_working_order(symbol):
                continue
            out.append(conviction)
        return out

    def _size_entry(self, conviction: AggregatedConviction, price: Decimal, cash: Decimal) -> Decimal:
        asset_class = asset_class_for(conviction.symbol)
        cap = self.config.crypto.max_position_value if asset_class == "crypto" else self.config.entry.max_position_value
        budget = min(cap, cash * Decimal(str(self.config.entry.position_size_pct_of_cash)) / Decimal("100"))
        if budget <= 0 or price <= 0:
            return Decimal("0")
        step = CRYPTO_QTY_STEP if asset_class == "crypto" else EQUITY_QTY_STEP
        return (budget / price).quantize(step, rounding=ROUND_DOWN)

    def _time_in_force(self, asset_class: str) -> str:
        return "gtc" if asset_class == "crypto" else self.config.entry.time_in_force

    def _enter_positions(
        self,
        account: AccountSnapshot,
        positions: list[BrokerPosition],
        clock: MarketClock,
        quotes: dict[str, Quote],
        candidates: list[AggregatedConviction],
        now: datetime,
        report: CycleReport,
    ) -> None:
        working_account = account
        working_positions = list(positions)
        for conviction in candidates:
            symbol = conviction.symbol
            quote = quotes.get(symbol)
            price = quote.price_for("buy") if quote is not None else None
            if price is None or price <= 0:
                LOGGER.info("Entry skipped %s: no price", symbol)
                continue
            qty = self._size_entry(conviction, price, working_account.cash)
            if qty <= 0:
                LOGGER.info("Entry skipped %s: size rounds to zero at price=%s", symbol, price)
                continue
            asset_class = asset_class_for(symbol)
            order_type = self.config.entry.order_type
            preview = OrderPreview(
                symbol=symbol,
                side="buy",
                order_type=order_type,
                estimated_price=price,
                asset_class=asset_class,
                time_in_force=self._time_in_force(asset_class),
                qty=qty,
                limit_price=price if order_type == "limit" else None,
            )
            submitted = self._approve_and_submit(
                preview,
                purpose="entry",
                reason=f"sentiment={conviction.sentiment:.3f} sources={conviction.source_count}",
                account=working_account,
                positions=working_positions,
                clock=clock,
                now=now,
                report=report,
                conviction=conviction,
            )
            if not submitted:
                continue
            cost = preview.estimated_cost
            working_account = replace(
                working_account,
                cash=working_account.cash - cost,
                buying_power=working_account.buying_power - cost,
            )
            working_positions.append(
                BrokerPosition(
                    symbol=symbol,
                    qty=qty,
                    market_value=cost,
                    avg_entry_price=price,
                    current_price=price,
                    asset_class=asset_class,
                )
            )

    # Exits

    def _evaluate_exits(
        self,
        account: AccountSnapshot,
        positions: list[BrokerPosition],
        clock: MarketClock,
        quotes: dict[str, Quote],
        conviction_map: dict[str, AggregatedConviction],
        now: datetime,
        report: CycleReport,
    ) -> None:
        for entry in self.ledger.entries():
            conviction = conviction_map.get(entry.symbol)
            if conviction is not None:
                self.ledger.record_mention(entry, conviction.computed_at)
            if self.executor.has_working_order(entry.symbol):
                continue
            quote = quotes.get(entry.symbol)
            price = quote.price_for("sell") if quote is not None else None
            if price is None or price <= 0:
                LOGGER.warning("Exit check skipped %s: no price", entry.symbol)
                continue
            self.ledger.ratchet(entry, price, now)
            if entry.state == PositionState.OPEN:
                decision = self.exit_evaluator.evaluate(entry, price, now, conviction)
                if decision is None:
                    continue
                LOGGER.info("Exit triggered %s reason=%s %s", entry.symbol, decision.reason, decision.detail)
                self.ledger.mark_closing(entry, decision.reason, now)
            reason = entry.exit_reason or "retry"
            preview = OrderPreview(
                symbol=entry.symbol,
                side="sell",
                order_type="market",
                estimated_price=price,
                asset_class=entry.asset_class,
                time_in_force=self._time_in_force(entry.asset_class),
                qty=entry.qty,
            )
            self._approve_and_submit(
                preview,
                purpose="exit",
                reason=reason,
                account=account,
                positions=positions,
                clock=clock,
                now=now,
                report=report,
            )

    # Shared path

    def _approve_and_submit(
        self,
        preview: OrderPreview,
        *,
        purpose: str,
        reason: str,
        account: AccountSnapshot,
        positions: list[BrokerPosition],
        clock: MarketClock,
        now: datetime,
        report: CycleReport,
        conviction: AggregatedConviction | None = None,
    ) -> bool:
        symbol = preview.symbol
        result = self.engine.evaluate(
            order=preview,
            account=account,
            positions=positions,
            clock=clock,
            risk_state=self.risk.snapshot(),
            now=now,
        )
        if not result.allowed:
            report.rejected[symbol] = result.rule_ids
            return False
        try:
            issued = self.approvals.issue(
                preview,
                result,
                ttl_seconds=self.config.policy.approval_token_ttl_seconds,
                now=now,
            )
        except TradingHaltedError as exc:
            LOGGER.info("Approval refused %s: %s", symbol, exc)
            report.rejected[symbol] = ["kill_switch"]
            return False

        if purpose == "entry" and self.advisor is not None and self.config.advisor.enabled:
            verdict = self.advisor.review(preview, conviction)
            if not passes_gate(verdict, self.config.advisor.min_confidence):
                label = "advisor_unavailable" if verdict is None else "advisor_declined"
                self.approvals.invalidate(issued.approval_id, label)
                report.rejected[symbol] = [label]
                return False

        metadata: dict[str, Any] = {}
        if conviction is not None:
            metadata = {
                "sentiment": conviction.sentiment,
                "weighted_volume": conviction.weighted_volume,
                "sources": list(conviction.sources),
            }
        try:
            submitted = self.executor.submit(
                issued.token,
                preview,
                purpose=purpose,
                reason=reason,
                clock=clock,
                metadata=metadata,
                now=now,
            )
        except MarketClosedError as exc:
            self.approvals.invalidate(issued.approval_id, "market_closed")
            report.rejected[symbol] = ["market_closed"]
            LOGGER.info("Submit refused %s: %s", symbol, exc)
            return False
        except BrokerAPIError as exc:
            report.errors.append(f"{symbol}: {exc}")
            return False
        except TradingHaltedError as exc:
            LOGGER.info("Submit refused %s: %s", symbol, exc)
            report.rejected[symbol] = ["kill_switch"]
            return False
        except ApprovalIntegrityError:
            raise
        except ApprovalError as exc:
            LOGGER.warning("Approval not usable for %s: %s", symbol, exc)
            report.errors.append(f"{symbol}: {exc}")
            return False

        if purpose == "entry":
            report.entries_submitted.append(symbol)
        else:
            report.exits_submitted.append(symbol)
        self._alert(
            event="ORDER_SUBMITTED",
            message=f"{preview.side} {symbol} qty={preview.qty} reason={reason}",
            dedupe_key=f"order-{submitted.approval_id}",
        )
        if submitted.order.is_filled:
            self._apply_order_result(submitted.record, submitted.order, now, report, conviction=conviction)
        return True

    def _apply_order_result(
        self,
        record: OrderRecord,
        remote: BrokerOrder,
        now: datetime,
        report: CycleReport,
        *,
        conviction: AggregatedConviction | None = None,
    ) -> None:
        symbol = record.symbol
        if remote.is_dead and remote.filled_qty <= 0:
            if record.side == "sell":
                LOGGER.warning("Exit order %s for %s ended %s; will retry", record.order_id, symbol, remote.status)
            else:
                LOGGER.info("Entry order %s for %s ended %s", record.order_id, symbol, remote.status)
            return
        fill_price = remote.filled_avg_price or Decimal(str(record.metadata.get("estimated_price", "0")))
        fill_qty = remote.filled_qty if remote.filled_qty > 0 else (record.qty or Decimal("0"))
        if record.side == "buy":
            if self.ledger.get(symbol) is not None:
                return
            if conviction is None and "sentiment" in record.metadata:
                conviction = AggregatedConviction(
                    symbol=symbol,
                    sentiment=float(record.metadata["sentiment"]),
                    weighted_volume=float(record.metadata.get("weighted_volume", 0.0)),
                    source_count=len(record.metadata.get("sources", [])),
                    computed_at=record.submitted_at,
                    sources=tuple(record.metadata.get("sources", [])),
                )
            self.ledger.open_position(
                symbol=symbol,
                qty=fill_qty,
                fill_price=fill_price,
                asset_class=str(record.metadata.get("asset_class") or asset_class_for(symbol)),
                now=now,
                conviction=conviction,
                reason=record.reason,
            )
            return

        entry = self.ledger.get(symbol)
        if entry is None:
            return
        realized = (fill_price - entry.entry_price) * fill_qty
        self.store.add_closed_trade(
            ClosedTradeRecord(
                symbol=symbol,
                qty=fill_qty,
                entry_price=entry.entry_price,
                exit_price=fill_price,
                realized_pnl=realized,
                exit_reason=entry.exit_reason or record.reason,
                opened_at=entry.entry_time,
                closed_at=now,
            )
        )
        self.risk.record_realized_pnl(realized, now=now)
        if fill_qty < entry.qty:
            entry.qty = entry.qty - fill_qty
            entry.updated_at = now
            self.store.upsert_position(entry)
            LOGGER.info("Partial exit %s filled=%s remaining=%s", symbol, fill_qty, entry.qty)
            return
        if entry.state != PositionState.CLOSING:
            self.ledger.mark_closing(entry, record.reason or "external", now)
        self.ledger.confirm_close(symbol)
        report.closed.append(symbol)
        self._alert(
            event="POSITION_CLOSED",
            message=f"{symbol} pnl={realized.quantize(Decimal('0.01'))} reason={entry.exit_reason or record.reason}",
            dedupe_key=f"close-{record.order_id}",
        )
