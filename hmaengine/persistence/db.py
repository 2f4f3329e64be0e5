from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator


# =========================
# Time helpers
# =========================
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# Database class
# =========================
class DB:
    """
    Single source of truth for SQLite access.
    Default path: data/hmaengine.db
    """

    def __init__(self, path: str = "data/hmaengine.db"):
        self.path = path

        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)

        self._init()

    # -------------------------
    # Connection manager
    # -------------------------
    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    # -------------------------
    # Init / migrations
    # -------------------------
    def _init(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            # =========================
            # Runs (one per service start)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    started_at TEXT NOT NULL,
                    stopped_at TEXT,
                    mode TEXT NOT NULL,
                    config_json TEXT,
                    status TEXT NOT NULL DEFAULT 'RUNNING'
                )
                """
            )

            # =========================
            # Events (audit log)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp_utc TEXT NOT NULL,
                    run_id TEXT,
                    cycle_id TEXT,
                    symbol TEXT,
                    event_type TEXT NOT NULL,
                    action TEXT,
                    details_json TEXT
                )
                """
            )

            # =========================
            # Run summary (derived from events)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS run_summary (
                    run_id TEXT PRIMARY KEY,
                    entries INTEGER NOT NULL DEFAULT 0,
                    exits INTEGER NOT NULL DEFAULT 0,
                    rejections INTEGER NOT NULL DEFAULT 0,
                    errors INTEGER NOT NULL DEFAULT 0,
                    hma_refreshes INTEGER NOT NULL DEFAULT 0,
                    last_event_at TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Engine records (JSON payloads, restart-safe)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS monitored_symbols (
                    id TEXT PRIMARY KEY,
                    symbol TEXT NOT NULL,
                    trigger_status TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS active_positions (
                    id TEXT PRIMARY KEY,
                    symbol TEXT NOT NULL,
                    order_status TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_orders (
                    order_id TEXT PRIMARY KEY,
                    record_id TEXT NOT NULL,
                    purpose TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS order_modifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    record_id TEXT NOT NULL,
                    modification_type TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    timestamp_utc TEXT NOT NULL
                )
                """
            )

            # =========================
            # Trade fills (for realized PnL)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS trade_fills (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    cycle_id TEXT,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,                 -- BUY/SELL
                    action TEXT NOT NULL,               -- OPEN/CLOSE
                    qty REAL NOT NULL,
                    price REAL NOT NULL,
                    order_id TEXT,
                    exit_reason TEXT,                   -- only for CLOSE
                    realized_pnl REAL,                  -- only for CLOSE
                    timestamp_utc TEXT NOT NULL
                )
                """
            )

            # =========================
            # Indexes
            # =========================
            conn.execute("CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_time ON events(timestamp_utc)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_symbol ON events(symbol)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_mods_symbol ON order_modifications(symbol)"
            )

            conn.commit()

        finally:
            conn.close()
