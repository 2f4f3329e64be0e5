import asyncio
import threading

from hmaengine.core.config import Settings
from hmaengine.runner.models import Tick
from hmaengine.runner.tick_loop import TickLoop


class _FakeTracker:
    def __init__(self):
        self.pending = []

    def pending_orders(self):
        return list(self.pending)


class _SlowEngine:
    """Records applied ticks; ticks on `slow` symbols block until released."""

    def __init__(self, slow=()):
        self.slow = set(slow)
        self.release = threading.Event()
        self.applied = []
        self.tracker = _FakeTracker()
        self.sweeps = 0
        self.reconciles = 0
        self.shutdown_calls = 0
        self.fail_on = None

    def on_tick(self, tick):
        if tick.symbol in self.slow:
            self.release.wait(5)
        if tick.ltp == self.fail_on:
            raise RuntimeError("tick failed")
        self.applied.append((tick.symbol, tick.ltp))
        return {"symbol": tick.symbol}

    def sweep_timers(self):
        self.sweeps += 1
        return []

    def reconcile_orders(self):
        self.reconciles += 1
        return {"checked": 0, "applied": 0, "errors": 0}

    def shutdown(self):
        self.shutdown_calls += 1
        return {"in_flight_remaining": 0, "pending_orders": 0}


def _cfg():
    return Settings(TIMER_SWEEP_SECONDS=0.01, ORDER_POLL_SECONDS=0.01)


def test_ticks_on_one_instrument_apply_in_arrival_order():
    engine = _SlowEngine()

    async def scenario():
        loop = TickLoop(engine, _cfg())
        for i in range(20):
            loop.push(Tick("A", float(i), float(i)))
            loop.push(Tick("B", 100.0 + i, float(i)))
        await asyncio.wait_for(loop.drain(), timeout=5)
        await loop.stop()
        return loop.ticks_applied

    assert asyncio.run(scenario()) == 40
    assert [ltp for sym, ltp in engine.applied if sym == "A"] == [float(i) for i in range(20)]
    assert [ltp for sym, ltp in engine.applied if sym == "B"] == [100.0 + i for i in range(20)]


def test_slow_lane_does_not_block_other_lanes():
    engine = _SlowEngine(slow={"SLOW"})

    async def scenario():
        loop = TickLoop(engine, _cfg())
        try:
            loop.push(Tick("SLOW", 1.0, 1.0))
            loop.push(Tick("FAST", 2.0, 1.0))
            loop.push(Tick("FAST", 3.0, 2.0))
            await asyncio.wait_for(loop._lanes["FAST"].join(), timeout=2)
            before_release = list(engine.applied)
        finally:
            engine.release.set()
        await asyncio.wait_for(loop.drain(), timeout=5)
        await loop.stop()
        return before_release

    assert asyncio.run(scenario()) == [("FAST", 2.0), ("FAST", 3.0)]
    assert engine.applied[-1] == ("SLOW", 1.0)


def test_failing_tick_keeps_lane_alive():
    engine = _SlowEngine()
    engine.fail_on = 2.0

    async def scenario():
        loop = TickLoop(engine, _cfg())
        for ltp in (1.0, 2.0, 3.0):
            loop.push(Tick("A", ltp, ltp))
        await asyncio.wait_for(loop.drain(), timeout=5)
        status = loop.status()
        await loop.stop()
        return status

    status = asyncio.run(scenario())
    assert engine.applied == [("A", 1.0), ("A", 3.0)]
    assert status["ticks_applied"] == 2
    assert "tick failed" in status["last_error"]


def test_stop_cancels_tasks_and_shuts_engine_down():
    engine = _SlowEngine()
    engine.tracker.pending.append(object())

    async def scenario():
        loop = TickLoop(engine, _cfg())
        loop.start()
        loop.push(Tick("A", 1.0, 1.0))
        await asyncio.wait_for(loop.drain(), timeout=5)
        await asyncio.sleep(0.1)
        tasks = list(loop._workers.values()) + [loop._sweep_task, loop._reconcile_task]
        out = await loop.stop()
        return loop, tasks, out

    loop, tasks, out = asyncio.run(scenario())
    assert all(t.done() for t in tasks)
    assert engine.shutdown_calls == 1
    assert out == {"in_flight_remaining": 0, "pending_orders": 0}
    assert engine.sweeps >= 1
    assert engine.reconciles >= 1
    assert loop.status()["running"] is False
    assert loop.status()["lanes"] == 0
