from __future__ import annotations

import json
import logging
import sqlite3
import threading
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable

from signaltrader.storage.models import (
    ApprovalRecord,
    ApprovalStatus,
    ClosedTradeRecord,
    OrderRecord,
    PositionEntry,
    PositionState,
    RiskState,
)

LOGGER = logging.getLogger(__name__)

TERMINAL_ORDER_STATUSES = ("FILLED", "CANCELED", "CANCELLED", "EXPIRED", "REJECTED", "DONE_FOR_DAY", "REPLACED")


class StaleRiskStateError(RuntimeError):
    """Risk state changed concurrently and the update could not be applied."""


def _to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _to_text(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return str(value)


def _from_text(value: str | None) -> Decimal | None:
    if value is None:
        return None
    return Decimal(value)


class StateStore:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.lock = threading.Lock()

    # Risk state

    def get_risk_state(self) -> RiskState:
        with self.lock:
            row = self.conn.execute("SELECT * FROM risk_state WHERE id = 1").fetchone()
        if row is None:
            return RiskState()
        return RiskState(
            kill_switch_active=bool(row["kill_switch_active"]),
            kill_switch_reason=row["kill_switch_reason"],
            kill_switch_at=_from_iso(row["kill_switch_at"]),
            daily_loss=Decimal(row["daily_loss"]),
            loss_day=row["loss_day"],
            last_loss_at=_from_iso(row["last_loss_at"]),
            cooldown_until=_from_iso(row["cooldown_until"]),
            version=int(row["version"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def compare_and_set_risk_state(self, expected_version: int, state: RiskState) -> bool:
        with self.lock:
            cursor = self.conn.execute(
                """
                UPDATE risk_state SET
                    kill_switch_active = ?,
                    kill_switch_reason = ?,
                    kill_switch_at = ?,
                    daily_loss = ?,
                    loss_day = ?,
                    last_loss_at = ?,
                    cooldown_until = ?,
                    updated_at = ?,
                    version = version + 1
                WHERE id = 1 AND version = ?
                """,
                (
                    int(state.kill_switch_active),
                    state.kill_switch_reason,
                    _to_iso(state.kill_switch_at),
                    str(state.daily_loss),
                    state.loss_day,
                    _to_iso(state.last_loss_at),
                    _to_iso(state.cooldown_until),
                    _to_iso(state.updated_at),
                    expected_version,
                ),
            )
            self.conn.commit()
            return cursor.rowcount == 1

    def update_risk_state(
        self,
        mutate: Callable[[RiskState], RiskState],
        *,
        max_attempts: int = 5,
    ) -> RiskState:
        for _ in range(max(1, max_attempts)):
            current = self.get_risk_state()
            updated = mutate(current)
            if self.compare_and_set_risk_state(current.version, updated):
                return replace(updated, version=current.version + 1)
            LOGGER.debug("Risk state version %d moved, retrying update", current.version)
        raise StaleRiskStateError(f"Risk state update failed after {max_attempts} attempts")

    def reset_daily_loss_if_new_day(self, day: str, now: datetime) -> bool:
        with self.lock:
            cursor = self.conn.execute(
                """
                UPDATE risk_state SET
                    daily_loss = '0',
                    loss_day = ?,
                    updated_at = ?,
                    version = version + 1
                WHERE id = 1 AND (loss_day IS NULL OR loss_day <> ?)
                """,
                (day, _to_iso(now), day),
            )
            self.conn.commit()
            return cursor.rowcount == 1

    # Approvals

    def add_approval(self, record: ApprovalRecord) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO approvals (
                    approval_id, params, params_digest, status, issued_at, expires_at,
                    consumed_at, invalidated_reason
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.approval_id,
                    json.dumps(record.params, sort_keys=True),
                    record.params_digest,
                    record.status.value,
                    _to_iso(record.issued_at),
                    _to_iso(record.expires_at),
                    _to_iso(record.consumed_at),
                    record.invalidated_reason,
                ),
            )
            self.conn.commit()

    def get_approval(self, approval_id: str) -> ApprovalRecord | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM approvals WHERE approval_id = ?",
                (approval_id,),
            ).fetchone()
        if row is None:
            return None
        return ApprovalRecord(
            approval_id=row["approval_id"],
            params=json.loads(row["params"]),
            params_digest=row["params_digest"],
            status=ApprovalStatus(row["status"]),
            issued_at=_from_iso(row["issued_at"]),
            expires_at=_from_iso(row["expires_at"]),
            consumed_at=_from_iso(row["consumed_at"]),
            invalidated_reason=row["invalidated_reason"],
        )

    def consume_approval(self, approval_id: str, now: datetime) -> bool:
        with self.lock:
            cursor = self.conn.execute(
                """
                UPDATE approvals SET status = ?, consumed_at = ?
                WHERE approval_id = ? AND status = ? AND expires_at > ?
                """,
                (
                    ApprovalStatus.CONSUMED.value,
                    _to_iso(now),
                    approval_id,
                    ApprovalStatus.ISSUED.value,
                    _to_iso(now),
                ),
            )
            self.conn.commit()
            return cursor.rowcount == 1

    def invalidate_approval(self, approval_id: str, reason: str) -> bool:
        with self.lock:
            cursor = self.conn.execute(
                """
                UPDATE approvals SET status = ?, invalidated_reason = ?
                WHERE approval_id = ? AND status = ?
                """,
                (ApprovalStatus.INVALIDATED.value, reason, approval_id, ApprovalStatus.ISSUED.value),
            )
            self.conn.commit()
            return cursor.rowcount == 1

    def invalidate_outstanding_approvals(self, reason: str) -> int:
        with self.lock:
            cursor = self.conn.execute(
                "UPDATE approvals SET status = ?, invalidated_reason = ? WHERE status = ?",
                (ApprovalStatus.INVALIDATED.value, reason, ApprovalStatus.ISSUED.value),
            )
            self.conn.commit()
            return int(cursor.rowcount)

    def expire_approvals(self, now: datetime) -> int:
        with self.lock:
            cursor = self.conn.execute(
                "UPDATE approvals SET status = ? WHERE status = ? AND expires_at <= ?",
                (ApprovalStatus.EXPIRED.value, ApprovalStatus.ISSUED.value, _to_iso(now)),
            )
            self.conn.commit()
            return int(cursor.rowcount)

    # Positions

    def upsert_position(self, entry: PositionEntry) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO positions (
                    symbol, state, qty, asset_class, entry_time, entry_price, highest_price,
                    take_profit_pct, stop_loss_pct, trailing_stop_pct, entry_conviction,
                    entry_volume, entry_sources, entry_reason, exit_reason, last_mention_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(symbol) DO UPDATE SET
                    state=excluded.state,
                    qty=excluded.qty,
                    highest_price=excluded.highest_price,
                    take_profit_pct=excluded.take_profit_pct,
                    stop_loss_pct=excluded.stop_loss_pct,
                    trailing_stop_pct=excluded.trailing_stop_pct,
                    exit_reason=excluded.exit_reason,
                    last_mention_at=excluded.last_mention_at,
                    updated_at=excluded.updated_at
                """,
                (
                    entry.symbol,
                    entry.state.value,
                    str(entry.qty),
                    entry.asset_class,
                    _to_iso(entry.entry_time),
                    str(entry.entry_price),
                    str(entry.highest_price),
                    entry.take_profit_pct,
                    entry.stop_loss_pct,
                    entry.trailing_stop_pct,
                    entry.entry_conviction,
                    entry.entry_volume,
                    json.dumps(entry.entry_sources),
                    entry.entry_reason,
                    entry.exit_reason,
                    _to_iso(entry.last_mention_at),
                    _to_iso(entry.updated_at),
                ),
            )
            self.conn.commit()

    def _row_to_position(self, row: sqlite3.Row) -> PositionEntry:
        return PositionEntry(
            symbol=row["symbol"],
            qty=Decimal(row["qty"]),
            entry_time=_from_iso(row["entry_time"]),
            entry_price=Decimal(row["entry_price"]),
            highest_price=Decimal(row["highest_price"]),
            take_profit_pct=float(row["take_profit_pct"]),
            stop_loss_pct=float(row["stop_loss_pct"]),
            trailing_stop_pct=row["trailing_stop_pct"],
            asset_class=row["asset_class"],
            entry_conviction=float(row["entry_conviction"]),
            entry_volume=float(row["entry_volume"]),
            entry_sources=json.loads(row["entry_sources"]),
            entry_reason=row["entry_reason"],
            state=PositionState(row["state"]),
            exit_reason=row["exit_reason"],
            last_mention_at=_from_iso(row["last_mention_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def get_position(self, symbol: str) -> PositionEntry | None:
        with self.lock:
            row = self.conn.execute("SELECT * FROM positions WHERE symbol = ?", (symbol,)).fetchone()
        return self._row_to_position(row) if row is not None else None

    def list_positions(self) -> list[PositionEntry]:
        with self.lock:
            rows = self.conn.execute("SELECT * FROM positions ORDER BY symbol").fetchall()
        return [self._row_to_position(row) for row in rows]

    def delete_position(self, symbol: str) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM positions WHERE symbol = ?", (symbol,))
            self.conn.commit()

    # Orders

    def upsert_order(self, order: OrderRecord) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO orders (
                    order_id, client_order_id, symbol, side, order_type, purpose, status, qty, notional,
                    filled_qty, filled_avg_price, reason, submitted_at, updated_at, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(order_id) DO UPDATE SET
                    status=excluded.status,
                    filled_qty=excluded.filled_qty,
                    filled_avg_price=excluded.filled_avg_price,
                    updated_at=excluded.updated_at,
                    metadata=excluded.metadata
                """,
                (
                    order.order_id,
                    order.client_order_id,
                    order.symbol,
                    order.side,
                    order.order_type,
                    order.purpose,
                    order.status,
                    _to_text(order.qty),
                    _to_text(order.notional),
                    str(order.filled_qty),
                    _to_text(order.filled_avg_price),
                    order.reason,
                    _to_iso(order.submitted_at),
                    _to_iso(order.updated_at),
                    json.dumps(order.metadata),
                ),
            )
            self.conn.commit()

    def _row_to_order(self, row: sqlite3.Row) -> OrderRecord:
        return OrderRecord(
            order_id=row["order_id"],
            client_order_id=row["client_order_id"],
            symbol=row["symbol"],
            side=row["side"],
            order_type=row["order_type"],
            purpose=row["purpose"],
            status=row["status"],
            submitted_at=_from_iso(row["submitted_at"]),
            updated_at=_from_iso(row["updated_at"]),
            qty=_from_text(row["qty"]),
            notional=_from_text(row["notional"]),
            filled_qty=Decimal(row["filled_qty"]),
            filled_avg_price=_from_text(row["filled_avg_price"]),
            reason=row["reason"],
            metadata=json.loads(row["metadata"]),
        )

    def list_open_orders(self, symbol: str | None = None) -> list[OrderRecord]:
        placeholders = ",".join("?" for _ in TERMINAL_ORDER_STATUSES)
        query = f"SELECT * FROM orders WHERE status NOT IN ({placeholders})"
        params: list[str] = list(TERMINAL_ORDER_STATUSES)
        if symbol is not None:
            query += " AND symbol = ?"
            params.append(symbol)
        query += " ORDER BY submitted_at"
        with self.lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_order(row) for row in rows]

    def get_order(self, order_id: str) -> OrderRecord | None:
        with self.lock:
            row = self.conn.execute("SELECT * FROM orders WHERE order_id = ?", (order_id,)).fetchone()
        return self._row_to_order(row) if row is not None else None

    # Closed trades

    def add_closed_trade(self, record: ClosedTradeRecord) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO closed_trades (
                    symbol, qty, entry_price, exit_price, realized_pnl, exit_reason, opened_at, closed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.symbol,
                    str(record.qty),
                    str(record.entry_price),
                    str(record.exit_price),
                    str(record.realized_pnl),
                    record.exit_reason,
                    _to_iso(record.opened_at),
                    _to_iso(record.closed_at),
                ),
            )
            self.conn.commit()

    def count_closed_trades(self) -> int:
        with self.lock:
            row = self.conn.execute("SELECT COUNT(*) FROM closed_trades").fetchone()
        return int(row[0])
