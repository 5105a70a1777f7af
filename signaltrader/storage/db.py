from __future__ import annotations

import sqlite3
from pathlib import Path


def get_connection(db_path: str | Path) -> sqlite3.Connection:
    path = Path(db_path)
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=30000;")
    return conn


def _table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row[1]) for row in rows}


def _ensure_column(
    conn: sqlite3.Connection,
    table_name: str,
    column_name: str,
    column_sql: str,
) -> None:
    if column_name in _table_columns(conn, table_name):
        return
    conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_sql}")


def init_db(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS risk_state (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            kill_switch_active INTEGER NOT NULL DEFAULT 0,
            kill_switch_reason TEXT,
            kill_switch_at TEXT,
            daily_loss TEXT NOT NULL DEFAULT '0',
            loss_day TEXT,
            last_loss_at TEXT,
            cooldown_until TEXT,
            version INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS positions (
            symbol TEXT PRIMARY KEY,
            state TEXT NOT NULL,
            qty TEXT NOT NULL,
            asset_class TEXT NOT NULL,
            entry_time TEXT NOT NULL,
            entry_price TEXT NOT NULL,
            highest_price TEXT NOT NULL,
            take_profit_pct REAL NOT NULL,
            stop_loss_pct REAL NOT NULL,
            trailing_stop_pct REAL,
            entry_conviction REAL NOT NULL DEFAULT 0,
            entry_volume REAL NOT NULL DEFAULT 0,
            entry_sources TEXT NOT NULL DEFAULT '[]',
            entry_reason TEXT NOT NULL DEFAULT '',
            exit_reason TEXT,
            last_mention_at TEXT,
            updated_at TEXT
        );

        CREATE TABLE IF NOT EXISTS approvals (
            approval_id TEXT PRIMARY KEY,
            params TEXT NOT NULL,
            params_digest TEXT NOT NULL,
            status TEXT NOT NULL,
            issued_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            consumed_at TEXT,
            invalidated_reason TEXT
        );

        CREATE TABLE IF NOT EXISTS orders (
            order_id TEXT PRIMARY KEY,
            client_order_id TEXT NOT NULL,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            order_type TEXT NOT NULL,
            purpose TEXT NOT NULL,
            status TEXT NOT NULL,
            qty TEXT,
            notional TEXT,
            filled_qty TEXT NOT NULL DEFAULT '0',
            filled_avg_price TEXT,
            reason TEXT NOT NULL DEFAULT '',
            submitted_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            metadata TEXT NOT NULL DEFAULT '{}'
        );

        CREATE TABLE IF NOT EXISTS closed_trades (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            symbol TEXT NOT NULL,
            qty TEXT NOT NULL,
            entry_price TEXT NOT NULL,
            exit_price TEXT NOT NULL,
            realized_pnl TEXT NOT NULL,
            exit_reason TEXT NOT NULL,
            opened_at TEXT NOT NULL,
            closed_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_approvals_status ON approvals(status);
        CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
        CREATE INDEX IF NOT EXISTS idx_orders_client_order_id ON orders(client_order_id);
        CREATE INDEX IF NOT EXISTS idx_closed_trades_closed_at ON closed_trades(closed_at);
        """
    )
    # Runtime migration support for existing databases.
    _ensure_column(conn, "positions", "last_mention_at", "TEXT")
    _ensure_column(conn, "orders", "metadata", "TEXT NOT NULL DEFAULT '{}'")
    conn.execute("INSERT OR IGNORE INTO risk_state (id, version) VALUES (1, 0)")
    conn.commit()
