# hmaengine/persistence/state_store.py

from __future__ import annotations

import json
from dataclasses import asdict
from typing import Dict, List

from hmaengine.persistence.db import DB, utc_now_iso
from hmaengine.runner.models import (
    ActivePosition,
    ModificationType,
    MonitoredSymbol,
    OrderModification,
    PendingOrder,
)


def _dumps(d: dict) -> str:
    return json.dumps(d, ensure_ascii=False, default=str)


class StateStore:
    """
    Restart-safe persistence of engine records as JSON payloads.
    Every save is an UPSERT; the engine's in-memory maps stay authoritative while running.
    """

    def __init__(self, db: DB):
        self.db = db

    # ---------- MONITORED SYMBOLS ----------
    def load_symbols(self) -> Dict[str, MonitoredSymbol]:
        with self.db.connect() as conn:
            rows = conn.execute("SELECT id, payload_json FROM monitored_symbols").fetchall()
        return {r["id"]: MonitoredSymbol.from_dict(json.loads(r["payload_json"])) for r in rows}

    def save_symbol(self, rec: MonitoredSymbol) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO monitored_symbols(id, symbol, trigger_status, payload_json, updated_at)
                VALUES (?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                    symbol=excluded.symbol,
                    trigger_status=excluded.trigger_status,
                    payload_json=excluded.payload_json,
                    updated_at=excluded.updated_at
                """,
                (rec.id, rec.symbol, rec.trigger_status.value, _dumps(rec.to_dict()), utc_now_iso()),
            )

    def delete_symbol(self, record_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM monitored_symbols WHERE id = ?", (record_id,))

    # ---------- POSITIONS ----------
    def load_positions(self) -> Dict[str, ActivePosition]:
        with self.db.connect() as conn:
            rows = conn.execute("SELECT id, payload_json FROM active_positions").fetchall()
        return {r["id"]: ActivePosition.from_dict(json.loads(r["payload_json"])) for r in rows}

    def save_position(self, pos: ActivePosition) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO active_positions(id, symbol, order_status, payload_json, updated_at)
                VALUES (?,?,?,?,?)
                ON CONFLICT(id) DO UPDATE SET
                    symbol=excluded.symbol,
                    order_status=excluded.order_status,
                    payload_json=excluded.payload_json,
                    updated_at=excluded.updated_at
                """,
                (pos.id, pos.symbol, pos.order_status.value, _dumps(pos.to_dict()), utc_now_iso()),
            )

    def delete_position(self, position_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM active_positions WHERE id = ?", (position_id,))

    # ---------- PENDING ORDERS ----------
    def load_pending_orders(self) -> List[PendingOrder]:
        with self.db.connect() as conn:
            rows = conn.execute("SELECT payload_json FROM pending_orders").fetchall()
        return [PendingOrder.from_dict(json.loads(r["payload_json"])) for r in rows]

    def replace_pending_orders(self, orders: List[PendingOrder]) -> None:
        """Snapshot the tracker's resting orders (shutdown / reconcile)."""
        with self.db.connect() as conn:
            conn.execute("DELETE FROM pending_orders")
            for o in orders:
                conn.execute(
                    """
                    INSERT INTO pending_orders(order_id, record_id, purpose, payload_json, updated_at)
                    VALUES (?,?,?,?,?)
                    """,
                    (o.order_id, o.record_id, o.purpose.value, _dumps(o.to_dict()), utc_now_iso()),
                )

    # ---------- ORDER MODIFICATIONS (append-only) ----------
    def append_modification(self, mod: OrderModification) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO order_modifications(symbol, record_id, modification_type, payload_json, timestamp_utc)
                VALUES (?,?,?,?,?)
                """,
                (mod.symbol, mod.record_id, mod.modification_type.value, _dumps(asdict(mod)), utc_now_iso()),
            )

    def load_modifications(self) -> List[OrderModification]:
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT payload_json FROM order_modifications ORDER BY id ASC"
            ).fetchall()
        out: List[OrderModification] = []
        for r in rows:
            d = json.loads(r["payload_json"])
            d["modification_type"] = ModificationType(d["modification_type"])
            out.append(OrderModification(**d))
        return out
