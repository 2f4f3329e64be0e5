from __future__ import annotations

from typing import Any, Dict, List, Optional

from hmaengine.ops.context import current_ids
from hmaengine.persistence.db import DB, utc_now_iso


def record_fill(
    db: DB,
    symbol: str,
    side: str,  # BUY/SELL
    action: str,  # OPEN/CLOSE
    qty: float,
    price: float,
    order_id: Optional[str] = None,
    exit_reason: Optional[str] = None,
    realized_pnl: Optional[float] = None,
    run_id: Optional[str] = None,
) -> None:
    ctx_run, ctx_cycle = current_ids()
    with db.connect() as conn:
        conn.execute(
            """
            INSERT INTO trade_fills(run_id, cycle_id, symbol, side, action, qty, price, order_id, exit_reason, realized_pnl, timestamp_utc)
            VALUES (?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                run_id or ctx_run,
                ctx_cycle,
                symbol,
                side,
                action,
                float(qty),
                float(price),
                order_id,
                exit_reason,
                float(realized_pnl) if realized_pnl is not None else None,
                utc_now_iso(),
            ),
        )


def list_fills(db: DB, limit: int = 100) -> List[Dict[str, Any]]:
    with db.connect() as conn:
        rows = conn.execute(
            "SELECT * FROM trade_fills ORDER BY id DESC LIMIT ?", (int(limit),)
        ).fetchall()
    return [dict(r) for r in rows[::-1]]


def realized_totals(db: DB) -> Dict[str, Any]:
    with db.connect() as conn:
        row = conn.execute(
            """
            SELECT COUNT(*) AS closes,
                   COALESCE(SUM(realized_pnl), 0) AS pnl,
                   SUM(CASE WHEN realized_pnl > 0 THEN 1 ELSE 0 END) AS wins
            FROM trade_fills WHERE action = 'CLOSE'
            """
        ).fetchone()
        opens = conn.execute(
            "SELECT COUNT(*) AS cnt FROM trade_fills WHERE action = 'OPEN'"
        ).fetchone()["cnt"]
    return {
        "trades_executed": int(opens or 0),
        "trades_closed": int(row["closes"] or 0),
        "winning_trades": int(row["wins"] or 0),
        "realized_pnl": float(row["pnl"] or 0.0),
    }
