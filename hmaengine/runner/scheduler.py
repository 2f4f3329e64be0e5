from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import Callable, Dict, Optional

from hmaengine.core.clock import last_closed_candle_ts, next_candle_boundary, ts_to_iso
from hmaengine.core.config import Settings, settings
from hmaengine.exchange.errors import HmaServiceError
from hmaengine.exchange.interfaces import HmaProvider
from hmaengine.ops.context import cycle_scope

log = logging.getLogger("hmaengine.hma")


class HmaRefreshScheduler:
    """
    Refreshes the HMA of every monitored symbol and open position once per
    closed candle. Failures keep the old value and go to a retry set that is
    retried until the next boundary supersedes it.
    """

    def __init__(
        self,
        engine,
        provider: HmaProvider,
        cfg: Settings = settings,
        clock: Callable[[], float] = time.time,
    ):
        self.engine = engine
        self.provider = provider
        self.cfg = cfg
        self.clock = clock

        self._lock = threading.Lock()
        self._retry: Dict[str, int] = {}  # record id -> candle ts it still needs
        self._running = False

    # ---------- one pass ----------

    def refresh_all(self, now: Optional[float] = None, manual: bool = False) -> Dict[str, int]:
        now = self.clock() if now is None else now
        target_ts = last_closed_candle_ts(now, self.cfg.CANDLE_MINUTES)

        with self._lock:
            self._retry.clear()

        with cycle_scope():
            stats = self._refresh(self.engine.hma_targets(), target_ts)
            self.engine.hma_status.update(
                {
                    "last_refresh_at": ts_to_iso(now),
                    "last_candle_ts": target_ts,
                    "retry_pending": len(self._retry),
                }
            )
            self.engine.log_event(
                "HMA",
                "HMA_REFRESH_PASS",
                details={"candle_ts": target_ts, "manual": manual, **stats},
            )
        return stats

    def retry_failed(self, now: Optional[float] = None) -> Dict[str, int]:
        now = self.clock() if now is None else now
        target_ts = last_closed_candle_ts(now, self.cfg.CANDLE_MINUTES)

        with self._lock:
            # a newer boundary supersedes anything older
            stale = [rid for rid, ts in self._retry.items() if ts != target_ts]
            for rid in stale:
                self._retry.pop(rid, None)
            wanted = set(self._retry)
            self._retry.clear()

        if not wanted:
            return {"updated": 0, "skipped": 0, "failed": 0}

        targets = [t for t in self.engine.hma_targets() if t[0] in wanted]
        with cycle_scope():
            stats = self._refresh(targets, target_ts)
        self.engine.hma_status["retry_pending"] = len(self._retry)
        return stats

    def refresh_record(self, record_id: str, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        target_ts = last_closed_candle_ts(now, self.cfg.CANDLE_MINUTES)
        targets = [t for t in self.engine.hma_targets() if t[0] == record_id]
        stats = self._refresh(targets, target_ts)
        return stats["updated"] > 0

    def _refresh(self, targets, target_ts: int) -> Dict[str, int]:
        updated, skipped, failed = 0, 0, 0
        cache: Dict[str, float] = {}

        for record_id, symbol, last_ts in targets:
            if last_ts is not None and last_ts >= target_ts:
                skipped += 1
                continue

            value = cache.get(symbol)
            if value is None:
                try:
                    value = self.provider.get_hma(symbol)
                except HmaServiceError as e:
                    failed += 1
                    with self._lock:
                        self._retry[record_id] = target_ts
                    log.warning("HMA fetch failed for %s: %s", symbol, e)
                    self.engine.flag_hma_failure(record_id, str(e))
                    self.engine.log_event("HMA", "HMA_FETCH_FAILED", symbol, {"id": record_id, "error": str(e)})
                    continue
                cache[symbol] = value

            if self.engine.apply_hma(record_id, value, target_ts):
                updated += 1
            else:
                skipped += 1

        return {"updated": updated, "skipped": skipped, "failed": failed}

    @property
    def retry_pending(self) -> int:
        with self._lock:
            return len(self._retry)

    # ---------- loop ----------

    async def run(self) -> None:
        """Refresh now, then at every candle boundary (+ settle delay), retrying failures in between."""
        self._running = True
        await asyncio.to_thread(self.refresh_all)

        while self._running:
            now = self.clock()
            next_at = next_candle_boundary(now, self.cfg.CANDLE_MINUTES) + self.cfg.HMA_REFRESH_SETTLE_SECONDS

            while self._running and self.clock() < next_at:
                wait = min(float(self.cfg.HMA_RETRY_SECONDS), max(0.0, next_at - self.clock()))
                await asyncio.sleep(wait)
                if self.retry_pending and self.clock() < next_at:
                    try:
                        await asyncio.to_thread(self.retry_failed)
                    except Exception:
                        log.exception("HMA retry pass failed")

            if not self._running:
                break
            try:
                await asyncio.to_thread(self.refresh_all)
            except Exception:
                log.exception("HMA refresh pass failed")

    def stop(self) -> None:
        self._running = False
