from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional

from hmaengine.core.config import Settings, settings
from hmaengine.runner.models import Tick

log = logging.getLogger("hmaengine.ticks")


class TickLoop:
    """
    Event-driven tick consumer.

    Each instrument gets its own lane (queue + worker task), so ticks for one
    instrument are applied in arrival order and a slow broker call on one
    instrument never holds up another. A timer sweep and an order
    reconciliation task run alongside.
    """

    def __init__(self, engine, cfg: Settings = settings):
        self.engine = engine
        self.cfg = cfg
        self._lanes: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._reconcile_task: Optional[asyncio.Task] = None
        self.running = False
        self.ticks_applied = 0
        self.last_error: Optional[str] = None

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self._reconcile_task = asyncio.create_task(self._reconcile_loop())

    def push(self, tick: Tick) -> int:
        """Queue a tick on its instrument lane. Returns the lane depth."""
        lane = self._lanes.get(tick.symbol)
        if lane is None:
            lane = asyncio.Queue()
            self._lanes[tick.symbol] = lane
            self._workers[tick.symbol] = asyncio.create_task(self._lane_worker(tick.symbol, lane))
        lane.put_nowait(tick)
        return lane.qsize()

    async def drain(self) -> None:
        for lane in list(self._lanes.values()):
            await lane.join()

    async def _lane_worker(self, symbol: str, lane: asyncio.Queue) -> None:
        while True:
            tick = await lane.get()
            try:
                await asyncio.to_thread(self.engine.on_tick, tick)
                self.ticks_applied += 1
            except Exception as e:
                # on_tick already isolates records; this is a last line
                self.last_error = f"{type(e).__name__}: {e}"
                log.exception("tick lane %s failed", symbol)
            finally:
                lane.task_done()

    async def _sweep_loop(self) -> None:
        while self.running:
            try:
                await asyncio.to_thread(self.engine.sweep_timers)
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                log.exception("timer sweep failed")
            await asyncio.sleep(self.cfg.TIMER_SWEEP_SECONDS)

    async def _reconcile_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.cfg.ORDER_POLL_SECONDS)
            if not self.engine.tracker.pending_orders():
                continue
            try:
                await asyncio.to_thread(self.engine.reconcile_orders)
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                log.exception("order reconciliation failed")

    async def stop(self) -> dict:
        self.running = False
        tasks = [t for t in (self._sweep_task, self._reconcile_task) if t is not None]
        tasks += list(self._workers.values())
        for t in tasks:
            if not t.done():
                t.cancel()
        for t in tasks:
            try:
                await t
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._lanes.clear()
        self._sweep_task = None
        self._reconcile_task = None
        return await asyncio.to_thread(self.engine.shutdown)

    def status(self) -> dict:
        return {
            "running": self.running,
            "lanes": len(self._lanes),
            "queued": sum(q.qsize() for q in self._lanes.values()),
            "ticks_applied": self.ticks_applied,
            "last_error": self.last_error,
        }
