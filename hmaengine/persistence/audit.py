from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from hmaengine.ops.context import current_ids
from hmaengine.persistence.db import DB, utc_now_iso

log = logging.getLogger("hmaengine.audit")

_COLUMNS = ("id", "timestamp_utc", "run_id", "cycle_id", "symbol", "event_type", "action", "details_json")


def _row_to_event(row) -> Dict[str, Any]:
    out = {k: row[k] for k in _COLUMNS if k != "details_json"}
    out["details"] = json.loads(row["details_json"] or "{}")
    return out


class Audit:
    """
    Domain event log.

    The SQLite `events` table is the source of truth; every event is also
    appended to a JSONL file so it can be followed with `tail -f`.
    run_id / cycle_id come from the calling context first, then from the run
    this Audit was bound to at startup (worker threads do not inherit the
    startup context).
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/engine_audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)
        self.run_id: Optional[str] = None
        self._file_lock = threading.Lock()

    def event(
        self,
        event_type: str,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        ctx_run, ctx_cycle = current_ids()
        record = {
            "timestamp_utc": utc_now_iso(),
            "run_id": ctx_run or self.run_id,
            "cycle_id": ctx_cycle,
            "symbol": symbol,
            "event_type": event_type,
            "action": action,
        }
        details_json = json.dumps(details or {}, ensure_ascii=False, default=str)

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO events(timestamp_utc, run_id, cycle_id, symbol, event_type, action, details_json)
                VALUES (:timestamp_utc, :run_id, :cycle_id, :symbol, :event_type, :action, :details_json)
                """,
                {**record, "details_json": details_json},
            )

        self._mirror({**record, "details": details or {}})

    def tail(self, limit: int = 50, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        """Latest events, oldest first. Optionally only one instrument's."""
        sql = f"SELECT {', '.join(_COLUMNS)} FROM events"
        args: List[Any] = []
        if symbol:
            sql += " WHERE symbol = ?"
            args.append(symbol)
        sql += " ORDER BY id DESC LIMIT ?"
        args.append(int(limit))

        with self.db.connect() as conn:
            rows = conn.execute(sql, args).fetchall()
        return [_row_to_event(r) for r in reversed(rows)]

    def _mirror(self, obj: Dict[str, Any]) -> None:
        line = json.dumps(obj, ensure_ascii=False, default=str)
        try:
            with self._file_lock:
                self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
                with self.jsonl_path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
        except OSError as e:
            # the DB row is already written
            log.warning("audit jsonl write failed: %s", e)
