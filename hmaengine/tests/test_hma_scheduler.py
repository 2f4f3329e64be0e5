import asyncio

import pytest

import hmaengine.runner.scheduler as scheduler_mod
from hmaengine.exchange.errors import HmaServiceError
from hmaengine.runner.models import TriggerStatus
from hmaengine.runner.scheduler import HmaRefreshScheduler

C0 = 1_700_000_100  # candle boundary
SYM = "NFO:NIFTY25AUG24500CE"


class _FakeHma:
    def __init__(self, value=101.5):
        self.value = value
        self.calls = []
        self.failing = False

    def get_hma(self, symbol):
        self.calls.append(symbol)
        if self.failing:
            raise HmaServiceError("HMA service HTTP 503")
        return self.value


def _setup(make_engine, clock):
    engine = make_engine()
    rec = engine.add_symbol(SYM, lots=1, target_points=20, stop_loss_points=10)
    hma = _FakeHma()
    return engine, rec, hma, HmaRefreshScheduler(engine, hma, cfg=engine.cfg, clock=clock)


def test_same_candle_refreshes_once(make_engine, clock):
    engine, rec, hma, sched = _setup(make_engine, clock)

    first = sched.refresh_all(now=C0 + 302)
    assert first["updated"] == 1
    assert engine.get_symbol(rec.id).hma_value == 101.5
    assert engine.get_symbol(rec.id).hma_last_candle_ts == C0

    hma.value = 999.0
    second = sched.refresh_all(now=C0 + 400)
    assert second == {"updated": 0, "skipped": 1, "failed": 0}
    assert engine.get_symbol(rec.id).hma_value == 101.5
    assert len(hma.calls) == 1


def test_next_candle_updates_again(make_engine, clock):
    engine, rec, hma, sched = _setup(make_engine, clock)
    sched.refresh_all(now=C0 + 302)
    hma.value = 103.0
    assert sched.refresh_all(now=C0 + 602)["updated"] == 1
    assert engine.get_symbol(rec.id).hma_value == 103.0
    assert engine.get_symbol(rec.id).hma_last_candle_ts == C0 + 300


def test_failure_keeps_old_value_and_retries(make_engine, clock):
    engine, rec, hma, sched = _setup(make_engine, clock)
    sched.refresh_all(now=C0 + 302)

    hma.failing = True
    hma.value = 104.0
    stats = sched.refresh_all(now=C0 + 602)
    assert stats["failed"] == 1
    assert sched.retry_pending == 1
    r = engine.get_symbol(rec.id)
    assert r.hma_value == 101.5
    assert r.flagged is True
    assert "503" in r.last_error
    assert r.trigger_status == TriggerStatus.WAITING_FOR_REVERSAL

    sched.retry_failed(now=C0 + 607)
    assert sched.retry_pending == 1
    assert engine.get_symbol(rec.id).flagged is True

    hma.failing = False
    stats = sched.retry_failed(now=C0 + 612)
    assert stats["updated"] == 1
    assert sched.retry_pending == 0
    r = engine.get_symbol(rec.id)
    assert r.hma_value == 104.0
    assert r.flagged is False
    assert r.last_error is None


def test_next_boundary_supersedes_retry(make_engine, clock):
    engine, rec, hma, sched = _setup(make_engine, clock)
    hma.failing = True
    sched.refresh_all(now=C0 + 302)
    assert sched.retry_pending == 1

    calls = len(hma.calls)
    stats = sched.retry_failed(now=C0 + 605)
    assert stats == {"updated": 0, "skipped": 0, "failed": 0}
    assert len(hma.calls) == calls
    assert sched.retry_pending == 0


def test_hma_timestamp_never_regresses(make_engine, clock):
    engine, rec, hma, sched = _setup(make_engine, clock)
    assert engine.apply_hma(rec.id, 101.0, C0 + 300) is True
    assert engine.apply_hma(rec.id, 99.0, C0) is False
    assert engine.apply_hma(rec.id, 99.0, C0 + 300) is False
    assert engine.get_symbol(rec.id).hma_value == 101.0


def test_refresh_status_is_published(make_engine, clock):
    engine, rec, hma, sched = _setup(make_engine, clock)
    sched.refresh_all(now=C0 + 302, manual=True)
    snap = engine.snapshot()
    assert snap["hma"]["last_candle_ts"] == C0
    assert snap["hma"]["last_refresh_at"] is not None


def test_refresh_single_record(make_engine, clock):
    engine, rec, hma, sched = _setup(make_engine, clock)
    clock.now = C0 + 310
    assert sched.refresh_record(rec.id) is True
    assert sched.refresh_record(rec.id) is False


def test_flag_hma_failure_targets_monitored_symbols(make_engine, clock):
    engine, rec, hma, sched = _setup(make_engine, clock)
    assert engine.flag_hma_failure("missing", "HMA service HTTP 503") is False

    hma.failing = True
    sched.refresh_all(now=C0 + 302)
    assert engine.flag_hma_failure(rec.id, "again") is True
    assert engine.get_symbol(rec.id).last_error == "again"


def test_run_aligns_to_boundary_plus_settle(make_engine, clock, monkeypatch):
    engine, rec, hma, sched = _setup(make_engine, clock)
    clock.now = C0 + 100
    hma.failing = True

    calls = []
    sleeps = []
    refresh_all, retry_failed = sched.refresh_all, sched.retry_failed

    def _refresh():
        calls.append(("refresh", clock.now))
        out = refresh_all()
        if sum(1 for c in calls if c[0] == "refresh") == 2:
            sched.stop()
        return out

    def _retry():
        calls.append(("retry", clock.now))
        hma.failing = False
        return retry_failed()

    real_sleep = asyncio.sleep

    async def _sleep(seconds):
        sleeps.append(seconds)
        clock.now += seconds
        if len(sleeps) > 500:
            sched.stop()
        await real_sleep(0)

    monkeypatch.setattr(sched, "refresh_all", _refresh)
    monkeypatch.setattr(sched, "retry_failed", _retry)
    monkeypatch.setattr(scheduler_mod.asyncio, "sleep", _sleep)

    asyncio.run(sched.run())

    settle = engine.cfg.HMA_REFRESH_SETTLE_SECONDS
    assert calls == [
        ("refresh", C0 + 100),
        ("retry", C0 + 105),
        ("refresh", C0 + 300 + settle),
    ]
    assert max(sleeps) <= engine.cfg.HMA_RETRY_SECONDS
    assert sum(sleeps) == pytest.approx(200 + settle)

    r = engine.get_symbol(rec.id)
    assert r.hma_last_candle_ts == C0
    assert r.flagged is False
