from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from hmaengine.core.config import Settings, settings
from hmaengine.persistence.db import DB, utc_now_iso

SECRET_KEYS = ("BROKER_API_KEY", "BROKER_API_SECRET")


def safe_config_snapshot(cfg: Settings = settings) -> Dict[str, Any]:
    snap = cfg.model_dump()
    # mask secrets
    for k in SECRET_KEYS:
        if snap.get(k):
            snap[k] = "***"
    return snap


@dataclass(frozen=True)
class RunInfo:
    run_id: str
    started_at: str
    mode: str
    status: str


class RunManager:
    """
    Run lifecycle + stats.
    - Run is persisted in DB.
    - Stats are derived from the events table (source of truth).
    """

    def __init__(self, db: Optional[DB] = None, cfg: Settings = settings) -> None:
        self.db = db or DB(cfg.DB_PATH)
        self.cfg = cfg

    def start(self) -> RunInfo:
        run_id = str(uuid.uuid4())
        started_at = utc_now_iso()
        mode = self.cfg.EXECUTION_MODE

        config_json = json.dumps(safe_config_snapshot(self.cfg), ensure_ascii=False, default=str)

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO runs (run_id, started_at, stopped_at, mode, config_json, status)
                VALUES (?, ?, NULL, ?, ?, 'RUNNING')
                """,
                (run_id, started_at, mode, config_json),
            )
            conn.execute(
                """
                INSERT INTO run_summary (run_id, entries, exits, rejections, errors, hma_refreshes, last_event_at, updated_at)
                VALUES (?, 0, 0, 0, 0, 0, NULL, ?)
                """,
                (run_id, utc_now_iso()),
            )

        return RunInfo(run_id=run_id, started_at=started_at, mode=mode, status="RUNNING")

    def stop(self, run_id: str, status: str = "STOPPED") -> None:
        # write first, then recompute the summary on a fresh connection
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE runs SET stopped_at = ?, status = ? WHERE run_id = ?",
                (utc_now_iso(), status, run_id),
            )
        self.refresh_summary(run_id)

    def refresh_summary(self, run_id: str) -> None:
        """Recompute run_summary from the events table."""

        def _count(conn, where: str) -> int:
            row = conn.execute(
                f"SELECT COUNT(*) AS cnt FROM events WHERE run_id = ? AND {where}",
                (run_id,),
            ).fetchone()
            return int(row["cnt"] or 0)

        with self.db.connect() as conn:
            entries = _count(conn, "action = 'ENTRY_FILLED'")
            exits = _count(conn, "action = 'POSITION_CLOSED'")
            rejections = _count(conn, "event_type = 'REJECTION'")
            errors = _count(conn, "event_type IN ('ERROR', 'EXCEPTION', 'FATAL')")
            hma_refreshes = _count(conn, "action = 'HMA_UPDATED'")

            last_row = conn.execute(
                "SELECT MAX(timestamp_utc) AS last_ts FROM events WHERE run_id = ?",
                (run_id,),
            ).fetchone()
            last_event_at = last_row["last_ts"] if last_row else None

            conn.execute(
                """
                UPDATE run_summary
                SET entries = ?, exits = ?, rejections = ?, errors = ?, hma_refreshes = ?,
                    last_event_at = ?, updated_at = ?
                WHERE run_id = ?
                """,
                (entries, exits, rejections, errors, hma_refreshes, last_event_at, utc_now_iso(), run_id),
            )

    def _load(self, run_id: str) -> Dict[str, Any]:
        self.refresh_summary(run_id)
        with self.db.connect() as conn:
            run = conn.execute("SELECT * FROM runs WHERE run_id = ?", (run_id,)).fetchone()
            summary = conn.execute(
                "SELECT * FROM run_summary WHERE run_id = ?", (run_id,)
            ).fetchone()
        run_d = dict(run) if run else None
        if run_d is not None:
            run_d.pop("config_json", None)
        return {"run": run_d, "summary": dict(summary) if summary else None}

    def get_current(self) -> Optional[Dict[str, Any]]:
        """Current = latest RUNNING run."""
        with self.db.connect() as conn:
            run = conn.execute(
                "SELECT run_id FROM runs WHERE status = 'RUNNING' ORDER BY started_at DESC LIMIT 1"
            ).fetchone()
        if not run:
            return None
        return self._load(run["run_id"])

    def get_last(self) -> Optional[Dict[str, Any]]:
        with self.db.connect() as conn:
            run = conn.execute(
                "SELECT run_id FROM runs ORDER BY started_at DESC LIMIT 1"
            ).fetchone()
        if not run:
            return None
        return self._load(run["run_id"])
