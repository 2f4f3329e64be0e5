import pytest

from hmaengine.exchange.errors import BrokerUnavailable, ConfigurationError, OrderRejected
from hmaengine.persistence.trade_fills import list_fills, realized_totals
from hmaengine.runner.models import (
    ModificationType,
    OrderStatus,
    OrderUpdate,
    PositionStatus,
    Tick,
    TriggerStatus,
)

C0 = 1_700_000_100  # candle boundary
SYM = "NFO:NIFTY25AUG24500CE"


class _FakeBroker:
    """In-memory live gateway. Orders rest until the test fills them."""

    def __init__(self):
        self.orders = {}
        self.submitted = []
        self.cancelled = []
        self.reject_next = None
        self.unavailable = False
        self.market_fill_price = None
        self.on_submit = None
        self.cancel_unavailable = False

    def submit_order(self, symbol, side, quantity, order_type, product_type, limit_price=None, trigger_price=None):
        if self.unavailable:
            raise BrokerUnavailable("Broker request failed after retries")
        if self.reject_next:
            remarks, self.reject_next = self.reject_next, None
            raise OrderRejected(remarks)
        oid = f"B{len(self.submitted) + 1}"
        self.submitted.append(
            {
                "order_id": oid,
                "symbol": symbol,
                "side": side,
                "quantity": quantity,
                "order_type": order_type,
                "limit_price": limit_price,
                "trigger_price": trigger_price,
            }
        )
        self.orders[oid] = OrderUpdate(oid, OrderStatus.PENDING)
        if order_type == "MARKET" and self.market_fill_price is not None:
            self.fill(oid, self.market_fill_price)
        if self.on_submit is not None:
            self.on_submit(oid)
        return oid

    def cancel_order(self, order_id):
        if self.cancel_unavailable:
            raise BrokerUnavailable("Broker request failed after retries")
        if self.orders[order_id].status != OrderStatus.PENDING:
            return False
        self.orders[order_id] = OrderUpdate(order_id, OrderStatus.CANCELLED)
        self.cancelled.append(order_id)
        return True

    def get_order(self, order_id):
        return self.orders[order_id]

    def fill(self, order_id, price):
        self.orders[order_id] = OrderUpdate(order_id, OrderStatus.FILLED, fill_price=price)


def _add(engine, **kw):
    params = dict(lots=1, target_points=20, stop_loss_points=10, lot_size=75)
    params.update(kw)
    return engine.add_symbol(SYM, hma_value=100.0, **params)


def _status(engine, rid):
    return engine.get_symbol(rid).trigger_status


def _drive_to_deadline(engine, clock, rid):
    """110 -> 95 -> 15 minutes below -> 105 at candle minute 2 -> sweep at the deadline."""
    clock.now = C0 + 60
    engine.on_tick(Tick(SYM, 110.0, C0 + 60))
    assert _status(engine, rid) == TriggerStatus.WAITING_FOR_REVERSAL

    clock.now = C0 + 70
    engine.on_tick(Tick(SYM, 95.0, C0 + 70))
    assert _status(engine, rid) == TriggerStatus.CONFIRMING_REVERSAL
    assert engine.get_symbol(rid).pending_signal.confirmation_end_time == C0 + 70 + 900

    engine.on_tick(Tick(SYM, 98.0, C0 + 400))
    assert _status(engine, rid) == TriggerStatus.CONFIRMING_REVERSAL

    clock.now = C0 + 970
    engine.sweep_timers(C0 + 970)
    assert _status(engine, rid) == TriggerStatus.WAITING_FOR_ENTRY

    # candle starts at C0 + 900; minute 2
    clock.now = C0 + 1030
    engine.on_tick(Tick(SYM, 105.0, C0 + 1030))
    assert _status(engine, rid) == TriggerStatus.CONFIRMING_ENTRY
    assert engine.get_symbol(rid).pending_signal.confirmation_end_time == C0 + 900 + 299
    assert engine.tracker.pending_orders() == []

    clock.now = C0 + 1199
    engine.sweep_timers(C0 + 1199)


def test_full_cycle_places_entry_and_opens_position(make_engine, clock):
    broker = _FakeBroker()
    engine = make_engine(broker, EXECUTION_MODE="live")
    rec = _add(engine, trading_mode="LIVE")

    _drive_to_deadline(engine, clock, rec.id)

    assert _status(engine, rec.id) == TriggerStatus.ORDER_PLACED
    entry = broker.submitted[0]
    assert entry["side"] == "BUY" and entry["order_type"] == "MARKET" and entry["quantity"] == 75

    broker.fill(entry["order_id"], 105.0)
    out = engine.on_order_update(broker.get_order(entry["order_id"]))
    assert out["ok"] is True

    assert engine.get_symbol(rec.id) is None
    positions = engine.snapshot()["active_positions"]
    assert len(positions) == 1
    pos = positions[0]
    assert pos["bought_price"] == 105.0
    assert pos["target"] == 125.0
    assert pos["stop_loss"] == 95.0

    # protective stop rests at the broker
    stop = broker.submitted[1]
    assert stop["side"] == "SELL" and stop["order_type"] == "SL_LIMIT"
    assert stop["trigger_price"] == 95.0

    fills = list_fills(engine.db)
    assert [f["action"] for f in fills] == ["OPEN"]


def test_cross_back_before_expiry_never_orders(make_engine, clock):
    engine = make_engine()
    rec = _add(engine)

    engine.on_tick(Tick(SYM, 110.0, C0))
    engine.on_tick(Tick(SYM, 95.0, C0 + 10))
    engine.on_tick(Tick(SYM, 105.0, C0 + 130))
    assert _status(engine, rec.id) == TriggerStatus.WAITING_FOR_REVERSAL

    engine.sweep_timers(C0 + 2000)
    assert _status(engine, rec.id) == TriggerStatus.WAITING_FOR_REVERSAL
    assert engine.tracker.pending_orders() == []
    assert list_fills(engine.db) == []


def test_paper_entry_then_target_exit(make_engine, clock):
    engine = make_engine()
    rec = _add(engine)
    _drive_to_deadline(engine, clock, rec.id)

    # paper market order fills on the same pass
    assert engine.get_symbol(rec.id) is None
    [pos] = engine.snapshot()["active_positions"]
    assert pos["bought_price"] == 105.0

    clock.now = C0 + 1300
    engine.on_tick(Tick(SYM, 125.0, C0 + 1300))
    assert engine.snapshot()["active_positions"] == []
    assert rec.id not in engine._record_locks
    assert pos["id"] not in engine._record_locks

    totals = realized_totals(engine.db)
    assert totals["trades_executed"] == 1
    assert totals["trades_closed"] == 1
    assert totals["realized_pnl"] == pytest.approx((125.0 - 105.0) * 75)
    assert list_fills(engine.db)[-1]["exit_reason"] == "TARGET"


def test_rejected_entry_is_classified(make_engine, clock):
    broker = _FakeBroker()
    broker.reject_next = "Freeze qty including square off order limit exceeded"
    engine = make_engine(broker, EXECUTION_MODE="live")
    rec = _add(engine, trading_mode="LIVE")

    _drive_to_deadline(engine, clock, rec.id)

    r = engine.get_symbol(rec.id)
    assert r.trigger_status == TriggerStatus.ORDER_REJECTED
    assert r.rejection_category == "POSITION_LIMIT_EXCEEDED"
    assert r.pending_signal is None


def test_unavailable_broker_flags_and_waits_for_next_candle(make_engine, clock):
    broker = _FakeBroker()
    broker.unavailable = True
    engine = make_engine(broker, EXECUTION_MODE="live")
    rec = _add(engine, trading_mode="LIVE")

    _drive_to_deadline(engine, clock, rec.id)
    r = engine.get_symbol(rec.id)
    assert r.flagged is True
    assert r.last_error
    assert r.trigger_status == TriggerStatus.CONFIRMING_ENTRY

    # no automatic resubmission while flagged
    broker.unavailable = False
    engine.sweep_timers(C0 + 1200)
    assert broker.submitted == []

    # the next candle's HMA clears the flag
    assert engine.apply_hma(rec.id, 100.0, C0 + 1200) is True
    assert engine.get_symbol(rec.id).flagged is False
    engine.sweep_timers(C0 + 1202)
    assert len(broker.submitted) == 1
    assert _status(engine, rec.id) == TriggerStatus.ORDER_PLACED


def test_stop_monitoring_cancels_resting_entry(make_engine, clock):
    broker = _FakeBroker()
    engine = make_engine(broker, EXECUTION_MODE="live")
    rec = _add(engine, trading_mode="LIVE")
    _drive_to_deadline(engine, clock, rec.id)
    oid = broker.submitted[0]["order_id"]

    out = engine.stop_monitoring(rec.id)
    assert out["ok"] is True
    assert broker.cancelled == [oid]
    assert engine.get_symbol(rec.id) is None
    assert len(engine.timers) == 0
    assert rec.id not in engine._record_locks

    # second cancel is a no-op success
    again = engine.cancel_order(oid)
    assert again["result"] == "NOOP"
    assert engine.stop_monitoring(rec.id)["reason"] == "NOT_MONITORED"


def test_submission_in_flight_when_stopped_is_cancelled(make_engine, clock):
    broker = _FakeBroker()
    engine = make_engine(broker, EXECUTION_MODE="live")
    rec = _add(engine, trading_mode="LIVE")
    broker.on_submit = lambda oid: engine.stop_monitoring(rec.id)

    _drive_to_deadline(engine, clock, rec.id)

    oid = broker.submitted[0]["order_id"]
    assert broker.cancelled == [oid]
    assert engine.get_symbol(rec.id) is None
    assert engine.tracker.pending_orders() == []
    assert engine.snapshot()["active_positions"] == []


def test_trailing_moves_protective_stop(make_engine, clock):
    broker = _FakeBroker()
    engine = make_engine(broker, EXECUTION_MODE="live")
    rec = _add(engine, trading_mode="LIVE", target_points=100, use_trailing_stoploss=True, trailing_x=20, trailing_y=15)
    _drive_to_deadline(engine, clock, rec.id)
    broker.fill("B1", 105.0)
    engine.on_order_update(broker.get_order("B1"))
    first_stop = broker.submitted[1]["order_id"]

    clock.now = C0 + 1300
    engine.on_tick(Tick(SYM, 125.0, C0 + 1300))

    [pos] = engine.snapshot()["active_positions"]
    assert pos["stop_loss"] == 110.0
    assert first_stop in broker.cancelled
    new_stop = broker.submitted[-1]
    assert new_stop["order_type"] == "SL_LIMIT" and new_stop["trigger_price"] == 110.0

    mods = engine.modifications(SYM)
    assert len(mods) == 1
    assert mods[0]["modification_type"] == ModificationType.SELL_ORDER_SL_UPDATE
    assert mods[0]["old_order_id"] == first_stop


def test_stop_order_fill_closes_position(make_engine, clock):
    broker = _FakeBroker()
    engine = make_engine(broker, EXECUTION_MODE="live")
    rec = _add(engine, trading_mode="LIVE")
    _drive_to_deadline(engine, clock, rec.id)
    broker.fill("B1", 105.0)
    engine.on_order_update(broker.get_order("B1"))
    stop_id = broker.submitted[1]["order_id"]

    broker.fill(stop_id, 94.5)
    engine.on_order_update(broker.get_order(stop_id))

    assert engine.snapshot()["active_positions"] == []
    last = list_fills(engine.db)[-1]
    assert last["action"] == "CLOSE"
    assert last["exit_reason"] == "STOPLOSS"
    assert last["realized_pnl"] == pytest.approx((94.5 - 105.0) * 75)


def test_manual_exit_cancels_stop_then_sells(make_engine, clock):
    broker = _FakeBroker()
    engine = make_engine(broker, EXECUTION_MODE="live")
    rec = _add(engine, trading_mode="LIVE")
    _drive_to_deadline(engine, clock, rec.id)
    broker.fill("B1", 105.0)
    engine.on_order_update(broker.get_order("B1"))
    [pos] = engine.snapshot()["active_positions"]
    stop_id = broker.submitted[1]["order_id"]

    broker.market_fill_price = 112.0
    out = engine.exit_position(pos["id"])

    assert out["closed"] is True
    assert out["order_status"] == PositionStatus.MANUAL_EXIT_EXECUTED.value
    assert stop_id in broker.cancelled
    assert broker.submitted[-1]["side"] == "SELL" and broker.submitted[-1]["order_type"] == "MARKET"


def test_exit_awaiting_confirmation_is_reconciled(make_engine, clock):
    broker = _FakeBroker()
    engine = make_engine(broker, EXECUTION_MODE="live", PLACE_SL_ORDER=False)
    rec = _add(engine, trading_mode="LIVE")
    _drive_to_deadline(engine, clock, rec.id)
    broker.fill("B1", 105.0)
    engine.on_order_update(broker.get_order("B1"))

    engine.on_tick(Tick(SYM, 126.0, C0 + 1300))
    [pos] = engine.snapshot()["active_positions"]
    assert pos["order_status"] == PositionStatus.TARGET_EXIT_PENDING.value

    sell_id = broker.submitted[-1]["order_id"]
    broker.fill(sell_id, 126.0)
    stats = engine.reconcile_orders()
    assert stats["applied"] == 1
    assert engine.snapshot()["active_positions"] == []


def test_limit_entry_is_repriced_on_hma_refresh(make_engine, clock):
    broker = _FakeBroker()
    engine = make_engine(broker, EXECUTION_MODE="live")
    rec = _add(engine, trading_mode="LIVE", order_type="LIMIT")
    _drive_to_deadline(engine, clock, rec.id)
    assert broker.submitted[0]["limit_price"] == 100.0

    assert engine.apply_hma(rec.id, 102.0, C0 + 1200) is True

    assert broker.cancelled == ["B1"]
    assert broker.submitted[1]["limit_price"] == pytest.approx(102.0)
    r = engine.get_symbol(rec.id)
    assert r.order_id == "B2"
    assert r.order_modification_count == 1
    assert engine.tracker.get("B2").order_modification_count == 1
    [mod] = engine.modifications(rec.id)
    assert mod["modification_type"] == ModificationType.BUY_ORDER_HMA_UPDATE
    assert mod["old_hma_value"] == 100.0 and mod["new_hma_value"] == 102.0


def test_re_entry_rearms_symbol_after_exit(make_engine, clock):
    engine = make_engine()
    rec = _add(engine, max_re_entries=1)
    _drive_to_deadline(engine, clock, rec.id)

    engine.on_tick(Tick(SYM, 125.0, C0 + 1300))
    [again] = engine.snapshot()["monitored_symbols"]
    assert again["re_entry_count"] == 1
    assert again["trigger_status"] == TriggerStatus.WAITING_FOR_REVERSAL


def test_move_strike_skips_reversal_confirmation(make_engine, clock):
    engine = make_engine()
    rec = _add(engine)
    engine.on_tick(Tick(SYM, 110.0, C0))
    engine.on_tick(Tick(SYM, 95.0, C0 + 10))

    out = engine.force_entry(rec.id)
    assert out["ok"] is True
    assert _status(engine, rec.id) == TriggerStatus.WAITING_FOR_ENTRY
    assert len(engine.timers) == 0

    engine.on_tick(Tick(SYM, 104.0, C0 + 20))
    assert _status(engine, rec.id) == TriggerStatus.CONFIRMING_ENTRY
    assert engine.force_entry(rec.id)["ok"] is False


def test_add_symbol_validation(make_engine):
    engine = make_engine()
    with pytest.raises(ConfigurationError):
        engine.add_symbol(SYM, lots=0, target_points=20, stop_loss_points=10)
    with pytest.raises(ConfigurationError):
        engine.add_symbol(SYM, lots=1, target_points=20, stop_loss_points=-1)
    with pytest.raises(ConfigurationError):
        engine.add_symbol(SYM, lots=1, target_points=20, stop_loss_points=10, order_type="STOP")
    with pytest.raises(ConfigurationError):
        engine.add_symbol(
            SYM, lots=1, target_points=20, stop_loss_points=10, use_trailing_stoploss=True, trailing_x=0
        )
    with pytest.raises(ConfigurationError):
        engine.add_symbol("NFO:NIFTYFUT", lots=1, target_points=20, stop_loss_points=10)
    assert engine.snapshot()["monitored_symbols"] == []

    rec = engine.add_symbol("nfo:nifty25aug24500ce", lots=2, target_points=20, stop_loss_points=10)
    assert rec.symbol == SYM
    assert rec.params.quantity == 150
    with pytest.raises(ConfigurationError):
        engine.add_symbol(SYM, lots=1, target_points=20, stop_loss_points=10)


def test_failing_record_does_not_block_others(make_engine, clock, monkeypatch):
    engine = make_engine()
    rec = _add(engine)
    other = engine.add_symbol("NFO:BANKNIFTY25AUG51000PE", hma_value=200.0, lots=1, target_points=20, stop_loss_points=10)

    original = engine._step_symbol

    def _boom(record_id, tick, now):
        if record_id == rec.id:
            raise RuntimeError("boom")
        return original(record_id, tick, now)

    monkeypatch.setattr(engine, "_step_symbol", _boom)
    out = engine.on_tick(Tick(SYM, 110.0, C0))
    assert out["results"][0]["ok"] is False

    engine.on_tick(Tick("NFO:BANKNIFTY25AUG51000PE", 210.0, C0 + 1))
    assert engine.get_symbol(other.id).current_ltp == 210.0


def test_restart_restores_records_and_timers(make_engine, clock):
    engine = make_engine()
    rec = _add(engine)
    engine.on_tick(Tick(SYM, 110.0, C0))
    engine.on_tick(Tick(SYM, 95.0, C0 + 10))
    engine.shutdown(timeout_s=0)

    restored = make_engine()
    r = restored.get_symbol(rec.id)
    assert r is not None
    assert r.trigger_status == TriggerStatus.CONFIRMING_REVERSAL
    assert restored.timers.deadline_for(rec.id) == C0 + 10 + 900


def test_repriced_paper_limit_fill_leaves_no_stored_symbol(make_engine, clock):
    engine = make_engine()
    rec = _add(engine, order_type="LIMIT")
    _drive_to_deadline(engine, clock, rec.id)
    assert _status(engine, rec.id) == TriggerStatus.ORDER_PLACED

    # the new limit is above the LTP, so the paper order fills at once
    assert engine.apply_hma(rec.id, 106.0, C0 + 1200) is True

    assert engine.get_symbol(rec.id) is None
    [pos] = engine.snapshot()["active_positions"]
    assert pos["bought_price"] == 105.0
    assert engine.store.load_symbols() == {}
    [mod] = engine.modifications(SYM)
    assert mod["modification_type"] == ModificationType.BUY_ORDER_HMA_UPDATE

    restarted = make_engine()
    assert restarted.snapshot()["monitored_symbols"] == []
    assert len(restarted.snapshot()["active_positions"]) == 1
    restarted.add_symbol(SYM, lots=1, target_points=20, stop_loss_points=10)


def test_stop_refused_while_entry_cannot_be_cancelled(make_engine, clock):
    broker = _FakeBroker()
    engine = make_engine(broker, EXECUTION_MODE="live")
    rec = _add(engine, trading_mode="LIVE", order_type="LIMIT")
    _drive_to_deadline(engine, clock, rec.id)
    assert _status(engine, rec.id) == TriggerStatus.ORDER_PLACED

    broker.cancel_unavailable = True
    out = engine.stop_monitoring(rec.id)
    assert out["ok"] is False
    assert out["reason"] == "CANCEL_FAILED"
    assert _status(engine, rec.id) == TriggerStatus.ORDER_PLACED
    assert engine.tracker.get("B1") is not None

    broker.fill("B1", 100.0)
    upd = engine.on_order_update(broker.get_order("B1"))
    assert upd["ok"] is True and upd["status"] == "FILLED"

    [pos] = engine.snapshot()["active_positions"]
    assert pos["bought_price"] == 100.0
    assert broker.submitted[-1]["order_type"] == "SL_LIMIT"
    assert engine.get_symbol(rec.id) is None


def test_abandoned_entry_that_cannot_be_cancelled_is_still_managed(make_engine, clock):
    broker = _FakeBroker()
    engine = make_engine(broker, EXECUTION_MODE="live")
    rec = _add(engine, trading_mode="LIVE")

    def _stop_during_submit(oid):
        engine.stop_monitoring(rec.id)
        broker.cancel_unavailable = True

    broker.on_submit = _stop_during_submit
    _drive_to_deadline(engine, clock, rec.id)

    assert engine.get_symbol(rec.id) is None
    assert broker.cancelled == []
    assert engine.tracker.get("B1") is not None

    broker.fill("B1", 105.0)
    out = engine.on_order_update(broker.get_order("B1"))
    assert out["status"] == "FILLED"

    [pos] = engine.snapshot()["active_positions"]
    assert pos["bought_price"] == 105.0
    assert pos["stop_loss"] == 95.0
    assert engine.snapshot()["monitored_symbols"] == []


def test_entry_result_waits_for_busy_record_lock(make_engine, clock):
    broker = _FakeBroker()
    engine = make_engine(broker, EXECUTION_MODE="live", RECORD_LOCK_TIMEOUT_SECONDS=0.01)
    rec = _add(engine, trading_mode="LIVE")
    broker.on_submit = lambda oid: engine._record_locks[rec.id].acquire()

    _drive_to_deadline(engine, clock, rec.id)

    # the placed order is kept, not cancelled
    assert broker.cancelled == []
    assert engine.tracker.get("B1") is not None
    assert _status(engine, rec.id) == TriggerStatus.CONFIRMING_ENTRY

    engine._record_locks[rec.id].release()
    broker.on_submit = None
    engine.sweep_timers(C0 + 1200)

    assert len(broker.submitted) == 1
    r = engine.get_symbol(rec.id)
    assert r.trigger_status == TriggerStatus.ORDER_PLACED
    assert r.order_id == "B1"

    broker.fill("B1", 105.0)
    assert engine.reconcile_orders()["applied"] == 1
    assert len(engine.snapshot()["active_positions"]) == 1
