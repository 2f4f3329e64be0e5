import pytest

from hmaengine.core.config import Settings
from hmaengine.persistence.audit import Audit
from hmaengine.persistence.db import DB
from hmaengine.runner.engine import SignalEngine


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    """
    Ensure tests never hit a real broker or HMA service.
    """
    monkeypatch.setenv("EXECUTION_MODE", "paper")
    monkeypatch.setenv("BROKER_API_KEY", "")
    monkeypatch.setenv("BROKER_API_SECRET", "")
    monkeypatch.setenv("HMA_SERVICE_URL", "")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")


class _Clock:
    def __init__(self, now: float = 1_700_000_100.0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return _Clock()


@pytest.fixture
def db(tmp_path):
    return DB(str(tmp_path / "engine.db"))


@pytest.fixture
def audit(db, tmp_path):
    return Audit(db, str(tmp_path / "audit.jsonl"))


class _NullBroker:
    """Live gateway that must never be called in paper tests."""

    def submit_order(self, *a, **k):
        raise AssertionError("live broker called in paper mode")

    def cancel_order(self, order_id):
        raise AssertionError("live broker called in paper mode")

    def get_order(self, order_id):
        raise AssertionError("live broker called in paper mode")


@pytest.fixture
def make_engine(db, audit, clock):
    def _make(broker=None, **overrides):
        base = dict(
            EXECUTION_MODE="paper",
            EXIT_CONFIRM_TIMEOUT_SECONDS=0,
            RECORD_LOCK_TIMEOUT_SECONDS=2,
            SHUTDOWN_TIMEOUT_SECONDS=0,
        )
        if overrides.get("EXECUTION_MODE") == "live":
            base.update(BROKER_API_KEY="k", BROKER_API_SECRET="s")
        base.update(overrides)
        cfg = Settings(**base)
        return SignalEngine(broker or _NullBroker(), db=db, audit=audit, cfg=cfg, clock=clock)

    return _make
