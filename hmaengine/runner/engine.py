from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from hmaengine.core.config import Settings, settings
from hmaengine.exchange.errors import BrokerUnavailable, ConfigurationError, OrderRejected
from hmaengine.exchange.interfaces import BrokerGateway
from hmaengine.exchange.paper import PaperBroker
from hmaengine.execution.confirm import wait_for_order_terminal
from hmaengine.execution.executor import ExecResult, OrderExecutor
from hmaengine.execution.exit_rules import bracket_for
from hmaengine.execution.orders import OrderTracker
from hmaengine.execution.position_manager import apply_trailing, check_exit
from hmaengine.execution.rejections import classify_rejection
from hmaengine.marketdata.repository import MarketDataRepository
from hmaengine.ops.context import cycle_scope
from hmaengine.persistence.audit import Audit
from hmaengine.persistence.db import DB
from hmaengine.persistence.state_store import StateStore
from hmaengine.persistence.trade_fills import realized_totals, record_fill
from hmaengine.runner.models import (
    EXECUTED_EXIT_STATUS,
    FAILED_EXIT_STATUS,
    PENDING_EXIT_STATUS,
    ActivePosition,
    ClosedTrade,
    ExitReason,
    ModificationType,
    MonitoredSymbol,
    OptionType,
    OrderModification,
    OrderPurpose,
    OrderSide,
    OrderStatus,
    OrderType,
    OrderUpdate,
    PendingOrder,
    PriceSide,
    ProductType,
    SlOrderDetails,
    Tick,
    TradingMode,
    TradingParams,
    TriggerStatus,
    new_id,
)
from hmaengine.runner.state_machine import (
    CONFIRMING,
    Decision,
    SignalInputs,
    Timing,
    evaluate,
    force_entry,
    next_last_side,
    side_of,
)
from hmaengine.runner.timers import ConfirmationTimerManager
from hmaengine.symbols.sizing import lot_size_for, quantity_for
from hmaengine.symbols.universe import normalize_symbol, option_type_of

log = logging.getLogger("hmaengine.engine")

SIGNAL_STATUSES = {
    TriggerStatus.WAITING_FOR_REVERSAL,
    TriggerStatus.CONFIRMING_REVERSAL,
    TriggerStatus.WAITING_FOR_ENTRY,
    TriggerStatus.CONFIRMING_ENTRY,
}
EXIT_PENDING = set(PENDING_EXIT_STATUS.values())
EXIT_FAILED = set(FAILED_EXIT_STATUS.values())
ENTRY_RESULT_LOCK_ATTEMPTS = 3


def build_params(
    cfg: Settings,
    symbol: str,
    *,
    lots: Any,
    target_points: Any,
    stop_loss_points: Any,
    product_type: Any = ProductType.INTRADAY,
    order_type: Any = OrderType.MARKET,
    trading_mode: Any = TradingMode.PAPER,
    trailing_stop_loss: bool = False,
    use_trailing_stoploss: bool = False,
    trailing_x: Any = 20.0,
    trailing_y: Any = 15.0,
    auto_exit_on_stop_loss: bool = True,
    max_re_entries: Any = None,
    lot_size: Any = None,
) -> TradingParams:
    """Validate trading parameters. Raises ConfigurationError on anything unusable."""
    errors: List[str] = []

    def _num(name: str, v: Any, cast: Callable = float) -> Any:
        try:
            return cast(v)
        except (TypeError, ValueError):
            errors.append(f"{name} must be a number")
            return None

    lots_i = _num("lots", lots, int)
    target = _num("target_points", target_points)
    stop = _num("stop_loss_points", stop_loss_points)
    tx = _num("trailing_x", trailing_x)
    ty = _num("trailing_y", trailing_y)

    if lots_i is not None and lots_i <= 0:
        errors.append("lots must be > 0")
    if target is not None and target <= 0:
        errors.append("target_points must be > 0")
    if stop is not None and stop <= 0:
        errors.append("stop_loss_points must be > 0")
    if use_trailing_stoploss and ((tx or 0) <= 0 or (ty or 0) <= 0):
        errors.append("trailing_x and trailing_y must be > 0 when interval trailing is enabled")

    enums = {}
    for name, enum_cls, raw in (
        ("product_type", ProductType, product_type),
        ("order_type", OrderType, order_type),
        ("trading_mode", TradingMode, trading_mode),
    ):
        try:
            enums[name] = enum_cls(str(raw.value if isinstance(raw, enum_cls) else raw).upper())
        except ValueError:
            errors.append(f"{name} must be one of {[e.value for e in enum_cls]}")

    re_entries = cfg.MAX_RE_ENTRIES if max_re_entries is None else _num("max_re_entries", max_re_entries, int)
    if re_entries is not None and not 0 <= re_entries <= 3:
        errors.append("max_re_entries must be within 0..3")

    size = lot_size_for(symbol, cfg.LOT_SIZE_MAP, cfg.DEFAULT_LOT_SIZE) if lot_size is None else _num("lot_size", lot_size, int)
    if size is not None and size <= 0:
        errors.append("lot_size must be > 0")

    if errors:
        raise ConfigurationError("; ".join(errors))

    return TradingParams(
        lots=lots_i,
        quantity=quantity_for(lots_i, size),
        target_points=target,
        stop_loss_points=stop,
        product_type=enums["product_type"],
        order_type=enums["order_type"],
        trading_mode=enums["trading_mode"],
        trailing_stop_loss=bool(trailing_stop_loss),
        use_trailing_stoploss=bool(use_trailing_stoploss),
        trailing_x=tx,
        trailing_y=ty,
        auto_exit_on_stop_loss=bool(auto_exit_on_stop_loss),
        max_re_entries=re_entries,
    )


class SignalEngine:
    """
    The single authoritative decision engine.

    Owns monitored symbols, open positions, the order tracker and the
    market-data repository. Every record is mutated only under its own lock
    (record_guard); there is no lock spanning symbols. Broker calls for an
    entry happen outside the record lock and are reconciled on return.
    """

    def __init__(
        self,
        broker: BrokerGateway,
        *,
        db: Optional[DB] = None,
        audit: Optional[Audit] = None,
        market: Optional[MarketDataRepository] = None,
        paper_broker: Optional[BrokerGateway] = None,
        cfg: Settings = settings,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.clock = clock

        # ---- Persistence + audit ----
        self.db = db or DB(cfg.DB_PATH)
        self.audit = audit or Audit(self.db, cfg.AUDIT_JSONL_PATH)
        self.store = StateStore(self.db)

        # ---- Collaborators ----
        self.market = market or MarketDataRepository()
        self.tracker = OrderTracker()
        self.executor = OrderExecutor(
            broker, paper_broker or PaperBroker(self.market), self.tracker, cfg=cfg
        )
        self.timing = Timing(
            reversal_minutes=cfg.REVERSAL_CONFIRM_MINUTES,
            candle_minutes=cfg.CANDLE_MINUTES,
            deadline_second=cfg.ENTRY_DEADLINE_SECOND,
        )
        self.timers = ConfirmationTimerManager(self.timing)

        # ---- Records + locks ----
        self._registry_lock = threading.Lock()
        self._record_locks = defaultdict(threading.Lock)  # record id -> Lock
        self._symbols: Dict[str, MonitoredSymbol] = {}
        self._positions: Dict[str, ActivePosition] = {}
        # stopped records whose entry order could not be cancelled
        self._detached: Dict[str, MonitoredSymbol] = {}

        # written by the HMA scheduler
        self.hma_status: Dict[str, Any] = {
            "last_refresh_at": None,
            "last_candle_ts": None,
            "retry_pending": 0,
        }

        self._restore()

    # =========================================================
    # Guards / helpers
    # =========================================================
    @contextmanager
    def record_guard(self, record_id: str, timeout_s: Optional[float] = None):
        """
        Serialize work per record across:
        - tick lanes
        - timer sweep / reconciliation
        - API commands
        """
        lock = self._record_locks[record_id]
        t = self.cfg.RECORD_LOCK_TIMEOUT_SECONDS if timeout_s is None else timeout_s
        acquired = lock.acquire(timeout=t)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()

    def log_event(
        self,
        event_type: str,
        action: str,
        symbol: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            self.audit.event(
                event_type=event_type, symbol=symbol, action=action, details=details or {}
            )
        except Exception:
            log.exception("audit write failed: %s %s", event_type, action)

    def _save_symbol(self, rec: MonitoredSymbol) -> None:
        try:
            self.store.save_symbol(rec)
        except Exception as e:
            # Don't stop the engine because persistence failed; log it
            self.log_event("ERROR", "SAVE_SYMBOL_FAILED", rec.symbol, {"error": f"{type(e).__name__}: {e}"})

    def _save_position(self, pos: ActivePosition) -> None:
        try:
            self.store.save_position(pos)
        except Exception as e:
            self.log_event("ERROR", "SAVE_POSITION_FAILED", pos.symbol, {"error": f"{type(e).__name__}: {e}"})

    def _forget_symbol(self, record_id: str) -> None:
        with self._registry_lock:
            self._symbols.pop(record_id, None)
        self._record_locks.pop(record_id, None)
        self.timers.cancel(record_id)
        try:
            self.store.delete_symbol(record_id)
        except Exception as e:
            self.log_event("ERROR", "DELETE_SYMBOL_FAILED", None, {"id": record_id, "error": f"{type(e).__name__}: {e}"})

    def _forget_position(self, position_id: str) -> None:
        with self._registry_lock:
            self._positions.pop(position_id, None)
        self._record_locks.pop(position_id, None)
        try:
            self.store.delete_position(position_id)
        except Exception as e:
            self.log_event("ERROR", "DELETE_POSITION_FAILED", None, {"id": position_id, "error": f"{type(e).__name__}: {e}"})

    def _symbol_ids_for(self, symbol: str) -> List[str]:
        with self._registry_lock:
            return [r.id for r in self._symbols.values() if r.symbol == symbol]

    def _position_ids_for(self, symbol: str) -> List[str]:
        with self._registry_lock:
            return [p.id for p in self._positions.values() if p.symbol == symbol]

    def get_symbol(self, record_id: str) -> Optional[MonitoredSymbol]:
        with self._registry_lock:
            return self._symbols.get(record_id)

    def get_position(self, position_id: str) -> Optional[ActivePosition]:
        with self._registry_lock:
            return self._positions.get(position_id)

    def _restore(self) -> None:
        symbols = self.store.load_symbols()
        positions = self.store.load_positions()
        with self._registry_lock:
            self._symbols.update(symbols)
            self._positions.update(positions)
        for rec in symbols.values():
            if rec.trigger_status in CONFIRMING and rec.pending_signal is not None:
                self.timers.arm(rec.id, rec.pending_signal)
        for order in self.store.load_pending_orders():
            self.tracker.add_pending(order)
        self.tracker.load_modifications(self.store.load_modifications())

        if symbols or positions:
            self.log_event(
                "INFO",
                "ENGINE_RESTORED",
                details={
                    "symbols": len(symbols),
                    "positions": len(positions),
                    "pending_orders": len(self.tracker.pending_orders()),
                },
            )

    # =========================================================
    # Commands
    # =========================================================
    def add_symbol(
        self,
        symbol: str,
        *,
        option_type: Optional[str] = None,
        hma_value: Optional[float] = None,
        **params: Any,
    ) -> MonitoredSymbol:
        """
        Start monitoring an option contract.
        Raises ConfigurationError synchronously; nothing enters the state machine on failure.
        """
        try:
            canonical = normalize_symbol(symbol, self.cfg.EXCHANGES)
        except ValueError as e:
            raise ConfigurationError(str(e))

        ot = (option_type or option_type_of(canonical) or "").upper()
        if ot not in {o.value for o in OptionType}:
            raise ConfigurationError("option_type must be CE or PE")

        trading = build_params(self.cfg, canonical, **params)

        with self._registry_lock:
            if any(r.symbol == canonical for r in self._symbols.values()):
                raise ConfigurationError(f"{canonical} is already monitored")

        now = self.clock()
        ltp = self.market.ltp(canonical)
        rec = MonitoredSymbol(
            id=new_id(),
            symbol=canonical,
            option_type=OptionType(ot),
            params=trading,
            current_ltp=ltp,
            hma_value=float(hma_value) if hma_value is not None else None,
            last_side=side_of(ltp, hma_value),
            created_at=now,
        )
        with self._registry_lock:
            self._symbols[rec.id] = rec
        self._save_symbol(rec)

        if trading.trading_mode == TradingMode.LIVE and not self.cfg.is_live:
            self.log_event("WARN", "LIVE_SYMBOL_ROUTED_TO_PAPER", canonical, {"id": rec.id})
        self.log_event(
            "MONITOR",
            "SYMBOL_ADDED",
            canonical,
            {"id": rec.id, "params": asdict(trading), "hma_value": rec.hma_value},
        )
        return rec

    def stop_monitoring(self, record_id: str, reason: str = "manual") -> Dict[str, Any]:
        """
        Remove a monitored symbol: timers cleared, in-flight submissions
        abandoned, resting entry orders cancelled.

        Refused (record kept, order still tracked) when a resting entry
        cannot be cancelled, so a later fill still opens a managed position.
        """
        with self.record_guard(record_id) as acquired:
            if not acquired:
                return {"ok": False, "id": record_id, "reason": "LOCK_TIMEOUT"}

            rec = self.get_symbol(record_id)
            if rec is None:
                return {"ok": False, "id": record_id, "reason": "NOT_MONITORED"}

            cancels = []
            position_id = None
            for po in self.tracker.pending_for(record_id, OrderPurpose.ENTRY):
                res = self.executor.cancel_order(po.order_id)
                cancels.append({"order_id": po.order_id, "result": res.action})
                upd = res.details.get("update")
                if res.action == "CANCEL_FAILED":
                    self.log_event(
                        "WARN",
                        "STOP_REFUSED_CANCEL_FAILED",
                        rec.symbol,
                        {"id": record_id, "reason": reason, **res.details},
                    )
                    return {
                        "ok": False,
                        "id": record_id,
                        "reason": "CANCEL_FAILED",
                        "order_id": po.order_id,
                        "error": res.details.get("error"),
                    }
                if res.action == "ALREADY_TERMINAL" and upd is not None and upd.status == OrderStatus.FILLED:
                    pos = self._open_position(rec, upd.order_id, upd.fill_price)
                    position_id = pos.id if pos else None
                elif res.action == "ALREADY_TERMINAL" and upd is not None:
                    self.tracker.complete(po.order_id, upd.status)

            self.timers.cancel(record_id)
            abandoned = self.tracker.abandon_submissions(record_id)
            self._forget_symbol(record_id)
            self.log_event(
                "MONITOR",
                "SYMBOL_REMOVED",
                rec.symbol,
                {
                    "id": record_id,
                    "reason": reason,
                    "status": rec.trigger_status.value,
                    "abandoned_submissions": abandoned,
                    "cancels": cancels,
                    "position_id": position_id,
                },
            )
            return {
                "ok": True,
                "id": record_id,
                "symbol": rec.symbol,
                "abandoned_submissions": abandoned,
                "cancels": cancels,
                "position_id": position_id,
            }

    def stop_all(self) -> Dict[str, Any]:
        with self._registry_lock:
            ids = list(self._symbols.keys())
        results = [self.stop_monitoring(rid, reason="stop_all") for rid in ids]
        return {"stopped": sum(1 for r in results if r.get("ok")), "results": results}

    def force_entry(self, record_id: str) -> Dict[str, Any]:
        """Manual "move strike": skip the rest of the reversal confirmation."""
        with self.record_guard(record_id) as acquired:
            if not acquired:
                return {"ok": False, "id": record_id, "reason": "LOCK_TIMEOUT"}
            rec = self.get_symbol(record_id)
            if rec is None:
                return {"ok": False, "id": record_id, "reason": "NOT_MONITORED"}
            try:
                t = force_entry(rec.trigger_status, rec.current_ltp, rec.hma_value)
            except ValueError as e:
                return {"ok": False, "id": record_id, "reason": str(e)}

            prev = rec.trigger_status
            rec.trigger_status = t.status
            rec.pending_signal = None
            self.timers.cancel(record_id)
            if side_of(rec.current_ltp, rec.hma_value) == PriceSide.BELOW:
                rec.last_side = PriceSide.BELOW
            self._save_symbol(rec)
            self.log_event(
                "SIGNAL",
                t.decision.value,
                rec.symbol,
                {"id": record_id, "from": prev.value, "ltp": rec.current_ltp, "hma": rec.hma_value},
            )
            return {"ok": True, "id": record_id, "trigger_status": rec.trigger_status.value}

    # =========================================================
    # Ticks + timers
    # =========================================================
    def on_tick(self, tick: Tick) -> Dict[str, Any]:
        """
        Apply one tick to every record on its instrument.
        One failing record is audited and skipped; it never aborts the others.
        """
        if not self.market.update(tick.symbol, tick.ltp, tick.timestamp):
            return {"symbol": tick.symbol, "skipped": True, "reason": "STALE_TICK"}

        results: List[Dict[str, Any]] = []
        for rid in self._symbol_ids_for(tick.symbol):
            try:
                results.append(self._step_symbol(rid, tick, tick.timestamp))
            except Exception as e:
                log.exception("step_symbol failed for %s", rid)
                self.log_event("ERROR", "STEP_SYMBOL_FAILED", tick.symbol, {"id": rid, "error": repr(e)})
                results.append({"id": rid, "ok": False, "error": repr(e)})

        for pid in self._position_ids_for(tick.symbol):
            try:
                results.append(self._step_position(pid, tick))
            except Exception as e:
                log.exception("step_position failed for %s", pid)
                self.log_event("ERROR", "STEP_POSITION_FAILED", tick.symbol, {"id": pid, "error": repr(e)})
                results.append({"id": pid, "ok": False, "error": repr(e)})

        return {"symbol": tick.symbol, "results": results}

    def sweep_timers(self, now: Optional[float] = None) -> List[Dict[str, Any]]:
        """Fire confirmation deadlines that elapsed without a tick."""
        now = self.clock() if now is None else now
        out = []
        for rid in self.timers.due(now):
            try:
                out.append(self._step_symbol(rid, None, now))
            except Exception as e:
                log.exception("timer sweep failed for %s", rid)
                self.log_event("ERROR", "TIMER_SWEEP_FAILED", None, {"id": rid, "error": repr(e)})
        return out

    def _step_symbol(self, record_id: str, tick: Optional[Tick], now: float) -> Dict[str, Any]:
        submit = False
        with self.record_guard(record_id) as acquired:
            if not acquired:
                self.log_event("EXEC_LOCK", "SKIP_LOCK_TIMEOUT", None, {"id": record_id})
                return {"id": record_id, "skipped": True, "reason": "LOCK_TIMEOUT"}

            rec = self.get_symbol(record_id)
            if rec is None:
                return {"id": record_id, "skipped": True, "reason": "NOT_MONITORED"}

            prev_ltp = rec.current_ltp
            if tick is not None:
                if rec.last_tick_at is not None and tick.timestamp < rec.last_tick_at:
                    return {"id": record_id, "skipped": True, "reason": "STALE_TICK"}
                rec.current_ltp = tick.ltp
                rec.last_tick_at = tick.timestamp

            if rec.trigger_status not in SIGNAL_STATUSES:
                if tick is not None:
                    rec.last_side = next_last_side(rec.last_side, tick.ltp, rec.hma_value)
                return {"id": record_id, "trigger_status": rec.trigger_status.value}

            steps = evaluate(
                SignalInputs(
                    status=rec.trigger_status,
                    hma=rec.hma_value,
                    prev_ltp=prev_ltp,
                    tick_ltp=tick.ltp if tick is not None else None,
                    last_side=rec.last_side,
                    pending=rec.pending_signal,
                    now=now,
                    flagged=rec.flagged,
                ),
                self.timing,
            )

            changed = False
            for step in steps:
                if step.decision == Decision.HOLD_FLAGGED:
                    continue
                if step.decision == Decision.SUBMIT_ENTRY:
                    submit = True
                    continue
                prev = rec.trigger_status
                rec.trigger_status = step.status
                rec.pending_signal = step.pending
                self.timers.sync(record_id, step.pending)
                if prev == TriggerStatus.CONFIRMING_ENTRY:
                    rec.flagged = False
                    rec.last_error = None
                changed = True
                self.log_event(
                    "SIGNAL",
                    step.decision.value,
                    rec.symbol,
                    {
                        "id": record_id,
                        "from": prev.value,
                        "to": step.status.value,
                        "reason": step.reason,
                        "ltp": rec.current_ltp,
                        "hma": rec.hma_value,
                        "confirmation_end_time": step.pending.confirmation_end_time if step.pending else None,
                    },
                )

            if tick is not None:
                rec.last_side = next_last_side(rec.last_side, tick.ltp, rec.hma_value)
            if changed:
                self._save_symbol(rec)

            result = {"id": record_id, "trigger_status": rec.trigger_status.value, "steps": [s.decision.value for s in steps]}

        if submit:
            result["entry"] = self._submit_entry(record_id)
        return result

    # =========================================================
    # Entry submission (two-phase)
    # =========================================================
    def _submit_entry(self, record_id: str) -> Dict[str, Any]:
        # Phase 1: claim the submission under the record lock
        with self.record_guard(record_id) as acquired:
            if not acquired:
                return {"submitted": False, "reason": "LOCK_TIMEOUT"}
            rec = self.get_symbol(record_id)
            if rec is None or rec.trigger_status != TriggerStatus.CONFIRMING_ENTRY or rec.flagged:
                return {"submitted": False, "reason": "NOT_SUBMITTABLE"}
            resting = self.tracker.pending_for(record_id, OrderPurpose.ENTRY)
            if resting:
                return self._adopt_entry(rec, resting[0])
            token = self.tracker.begin_submission(record_id, OrderPurpose.ENTRY, self.clock())
            if token is None:
                return {"submitted": False, "reason": "IN_FLIGHT"}
            hma = rec.hma_value
            rec.order_status = "SUBMITTING"

        # Phase 2: broker call without holding the lock
        try:
            res = self.executor.submit_entry(rec.symbol, rec.params, hma)
        except ValueError as e:
            res = ExecResult("UNAVAILABLE", {"symbol": rec.symbol, "error": f"{type(e).__name__}: {e}"})

        # Phase 3: reconcile with whatever happened meanwhile
        for _ in range(ENTRY_RESULT_LOCK_ATTEMPTS):
            with self.record_guard(record_id) as acquired:
                if not acquired:
                    continue
                live = self.tracker.finish_submission(token)
                current = self.get_symbol(record_id)
                if not live or current is None:
                    return self._discard_entry(rec, res, hma)
                return self._apply_entry_result(current, res, hma)
        return self._defer_entry_result(rec, token, res, hma)

    def _defer_entry_result(self, rec: MonitoredSymbol, token: str, res: ExecResult, hma: Optional[float]) -> Dict[str, Any]:
        """
        The record lock stayed busy after the broker call. A placed order is
        left pending for reconcile_orders (and adopted by the next submit
        attempt) rather than cancelled.
        """
        if res.action == "SUBMITTED":
            self.tracker.add_pending(self._pending_entry(rec, res, hma))
        if not self.tracker.finish_submission(token):
            return self._discard_entry(rec, res, hma)
        details = {"id": rec.id, "result": res.action, "order_id": res.order_id}
        self.log_event("EXEC_LOCK", "ENTRY_RESULT_DEFERRED", rec.symbol, details)
        return {"submitted": res.action == "SUBMITTED", "deferred": True, **details}

    def _adopt_entry(self, rec: MonitoredSymbol, po: PendingOrder) -> Dict[str, Any]:
        """A deferred entry order is already resting: take it over instead of submitting again."""
        rec.order_id = po.order_id
        rec.order_status = OrderStatus.PENDING.value
        rec.trigger_status = TriggerStatus.ORDER_PLACED
        rec.pending_signal = None
        self.timers.cancel(rec.id)
        self._save_symbol(rec)
        self.log_event("EXECUTION", "ORDER_ADOPTED", rec.symbol, {"id": rec.id, "order_id": po.order_id})
        return {"submitted": False, "adopted": True, "order_id": po.order_id}

    def _pending_entry(self, rec: MonitoredSymbol, res: ExecResult, hma: Optional[float], count: int = 0) -> PendingOrder:
        return PendingOrder(
            id=new_id(),
            order_id=res.order_id,
            symbol=rec.symbol,
            record_id=rec.id,
            side=OrderSide.BUY,
            order_type=rec.params.order_type,
            purpose=OrderPurpose.ENTRY,
            quantity=rec.params.quantity,
            trading_mode=rec.params.trading_mode,
            bought_price=res.details.get("limit_price"),
            trigger_price=res.details.get("trigger_price"),
            hma_value=hma,
            order_modification_count=count,
            submitted_at=self.clock(),
        )

    def _discard_entry(self, rec: MonitoredSymbol, res: ExecResult, hma: Optional[float]) -> Dict[str, Any]:
        """The record was stopped while its order was in flight: cancel and drop the result."""
        details: Dict[str, Any] = {"id": rec.id, "result": res.action}
        if res.action == "SUBMITTED":
            self.tracker.add_pending(self._pending_entry(rec, res, hma))
            c = self.executor.cancel_order(res.order_id)
            details["cancel"] = c.action
            upd = c.details.get("update")
            if c.action == "CANCEL_FAILED":
                # still resting: a later fill must become a managed position
                with self._registry_lock:
                    self._detached[rec.id] = rec
            elif c.action == "ALREADY_TERMINAL" and upd is not None:
                if upd.status == OrderStatus.FILLED:
                    pos = self._open_position(rec, upd.order_id, upd.fill_price)
                    details["position_id"] = pos.id if pos else None
                else:
                    self.tracker.complete(upd.order_id, upd.status)
        self.log_event("EXECUTION", "ORDER_DISCARDED", rec.symbol, {**details, "order_id": res.order_id})
        return {"submitted": False, "discarded": True, **details}

    def _apply_entry_result(
        self,
        rec: MonitoredSymbol,
        res: ExecResult,
        hma: Optional[float],
        replaced: Optional[PendingOrder] = None,
    ) -> Dict[str, Any]:
        if res.action == "SUBMITTED":
            count = (replaced.order_modification_count + 1) if replaced else 0
            po = self._pending_entry(rec, res, hma, count)
            self.tracker.add_pending(po)
            rec.order_id = po.order_id
            rec.order_status = OrderStatus.PENDING.value
            rec.trigger_status = TriggerStatus.ORDER_PLACED
            rec.pending_signal = None
            rec.flagged = False
            rec.last_error = None
            self.timers.cancel(rec.id)
            self._save_symbol(rec)
            self.log_event("EXECUTION", "ORDER_PLACED", rec.symbol, {"id": rec.id, **res.details, "hma": hma})

            out: Dict[str, Any] = {"submitted": True, "order_id": po.order_id}
            if self.executor.gateway_for(rec.params.trading_mode) is self.executor.paper:
                # paper fills are immediate; check once so the position opens on this pass
                upd = self.executor.get_order(po.order_id, rec.params.trading_mode)
                if upd.status != OrderStatus.PENDING:
                    out["update"] = self._apply_entry_terminal(rec, upd)
            return out

        if res.action == "REJECTED":
            self._mark_rejected(rec, res.details.get("category"), res.details.get("message"), res.details.get("remarks"))
            return {"submitted": False, "rejected": True, "category": res.details.get("category")}

        # transient: stay in the current state, flagged, no automatic resubmission
        rec.flagged = True
        rec.last_error = res.details.get("error")
        rec.order_status = None
        if replaced is not None:
            # the old order is already gone; nothing rests at the broker now
            rec.trigger_status = TriggerStatus.ORDER_CANCELLED
            rec.order_id = None
        self._save_symbol(rec)
        self.log_event("ERROR", "ENTRY_SUBMIT_FAILED", rec.symbol, {"id": rec.id, **res.details})
        return {"submitted": False, "flagged": True, "error": rec.last_error}

    def _mark_rejected(self, rec: MonitoredSymbol, category: Optional[str], message: Optional[str], remarks: Optional[str]) -> None:
        rec.trigger_status = TriggerStatus.ORDER_REJECTED
        rec.order_status = OrderStatus.REJECTED.value
        rec.pending_signal = None
        rec.rejection_category = category
        rec.rejection_message = message
        rec.last_error = remarks
        self.timers.cancel(rec.id)
        self._save_symbol(rec)
        self.log_event(
            "REJECTION",
            "ENTRY_REJECTED",
            rec.symbol,
            {"id": rec.id, "category": category, "message": message, "remarks": remarks},
        )

    def _apply_entry_terminal(self, rec: MonitoredSymbol, upd: OrderUpdate) -> Dict[str, Any]:
        """Caller holds the record lock."""
        if upd.status == OrderStatus.FILLED:
            pos = self._open_position(rec, upd.order_id, upd.fill_price)
            return {"status": "FILLED", "position_id": pos.id if pos else None}

        self.tracker.complete(upd.order_id, upd.status)
        if upd.status == OrderStatus.REJECTED:
            rej = classify_rejection(upd.reject_reason)
            self._mark_rejected(rec, rej.category.value, rej.message, rej.remarks)
            return {"status": "REJECTED", "category": rej.category.value}

        if upd.status == OrderStatus.CANCELLED:
            rec.trigger_status = TriggerStatus.ORDER_CANCELLED
            rec.order_status = OrderStatus.CANCELLED.value
            self._save_symbol(rec)
            self.log_event("EXECUTION", "ENTRY_CANCELLED", rec.symbol, {"id": rec.id, "order_id": upd.order_id})
            return {"status": "CANCELLED"}

        return {"status": upd.status.value}

    # =========================================================
    # Positions
    # =========================================================
    def _open_position(
        self, rec: MonitoredSymbol, order_id: str, fill_price: Optional[float]
    ) -> Optional[ActivePosition]:
        """Entry filled: hand the symbol over to position management."""
        price = fill_price if fill_price is not None else (rec.current_ltp or self.market.ltp(rec.symbol))
        self.tracker.complete(order_id, OrderStatus.FILLED)
        if price is None or price <= 0:
            self.log_event("ERROR", "FILL_WITHOUT_PRICE", rec.symbol, {"id": rec.id, "order_id": order_id})
            return None

        p = rec.params
        stop_loss, target = bracket_for(price, p.target_points, p.stop_loss_points)
        now = self.clock()
        pos = ActivePosition(
            id=new_id(),
            symbol=rec.symbol,
            option_type=rec.option_type,
            params=p,
            buy_order_id=order_id,
            bought_price=float(price),
            quantity=p.quantity,
            initial_stop_loss=stop_loss,
            stop_loss=stop_loss,
            target=target,
            current_ltp=rec.current_ltp,
            hma_value=rec.hma_value,
            hma_last_candle_ts=rec.hma_last_candle_ts,
            re_entry_count=rec.re_entry_count,
            last_tick_at=rec.last_tick_at,
            opened_at=now,
        )

        # protective stop goes in before the position becomes visible to tick lanes
        self._place_protective_stop(pos)

        self._forget_symbol(rec.id)
        with self._registry_lock:
            self._positions[pos.id] = pos
        self._save_position(pos)

        try:
            record_fill(self.db, pos.symbol, "BUY", "OPEN", pos.quantity, pos.bought_price, order_id=order_id, run_id=self.audit.run_id)
        except Exception as e:
            self.log_event("ERROR", "RECORD_FILL_FAILED", pos.symbol, {"error": f"{type(e).__name__}: {e}"})

        self.log_event(
            "EXECUTION",
            "ENTRY_FILLED",
            pos.symbol,
            {
                "record_id": rec.id,
                "position_id": pos.id,
                "order_id": order_id,
                "bought_price": pos.bought_price,
                "stop_loss": pos.stop_loss,
                "target": pos.target,
                "quantity": pos.quantity,
            },
        )
        return pos

    def _stop_order_wanted(self, pos: ActivePosition) -> bool:
        return (
            self.cfg.PLACE_SL_ORDER
            and pos.params.trading_mode == TradingMode.LIVE
            and self.cfg.is_live
        )

    def _stop_pending_order(self, pos: ActivePosition, res: ExecResult, count: int) -> PendingOrder:
        return PendingOrder(
            id=new_id(),
            order_id=res.order_id,
            symbol=pos.symbol,
            record_id=pos.id,
            side=OrderSide.SELL,
            order_type=OrderType.SL_LIMIT,
            purpose=OrderPurpose.STOP,
            quantity=pos.quantity,
            trading_mode=pos.params.trading_mode,
            bought_price=res.details.get("limit_price"),
            trigger_price=res.details.get("trigger_price"),
            hma_value=pos.hma_value,
            order_modification_count=count,
            submitted_at=self.clock(),
        )

    def _place_protective_stop(self, pos: ActivePosition) -> None:
        if not self._stop_order_wanted(pos):
            return
        res = self.executor.place_stop(pos.symbol, pos.quantity, pos.params, pos.stop_loss)
        if res.action != "SUBMITTED":
            # the engine still watches the stop on every tick
            self.log_event("WARN", "STOP_ORDER_FAILED", pos.symbol, {"position_id": pos.id, **res.details})
            return
        self.tracker.add_pending(self._stop_pending_order(pos, res, 0))
        pos.sl_order_details = SlOrderDetails(
            order_id=res.order_id,
            stop_price=res.details["limit_price"],
            trigger_price=res.details["trigger_price"],
            placed_at=self.clock(),
        )
        self.log_event("EXECUTION", "STOP_ORDER_PLACED", pos.symbol, {"position_id": pos.id, **res.details})

    def _replace_protective_stop(self, pos: ActivePosition, reason: str) -> Optional[Dict[str, Any]]:
        """
        Move the resting stop to the new stop-loss. Caller holds the position lock.
        Returns an exit result if the old stop turned out to be filled.
        """
        old = pos.sl_order_details
        if old is None:
            return None
        old_po = self.tracker.get(old.order_id)

        c = self.executor.cancel_order(old.order_id)
        upd = c.details.get("update")
        if c.action == "ALREADY_TERMINAL" and upd is not None and upd.status == OrderStatus.FILLED:
            self.tracker.complete(old.order_id, OrderStatus.FILLED)
            pos.sl_order_details = None
            return self._finalize_exit(pos, upd.fill_price or old.trigger_price, ExitReason.STOPLOSS, old.order_id)
        if c.action in ("CANCEL_FAILED",):
            self.log_event("WARN", "STOP_REPLACE_CANCEL_FAILED", pos.symbol, {"position_id": pos.id, **c.details})
            return None
        if c.action == "ALREADY_TERMINAL" and upd is not None:
            self.tracker.complete(old.order_id, upd.status)

        pos.sl_order_details = None
        res = self.executor.place_stop(pos.symbol, pos.quantity, pos.params, pos.stop_loss)
        if res.action != "SUBMITTED":
            self.log_event("WARN", "STOP_ORDER_FAILED", pos.symbol, {"position_id": pos.id, **res.details})
            return None

        count = (old_po.order_modification_count + 1) if old_po else 1
        self.tracker.add_pending(self._stop_pending_order(pos, res, count))
        pos.sl_order_details = SlOrderDetails(
            order_id=res.order_id,
            stop_price=res.details["limit_price"],
            trigger_price=res.details["trigger_price"],
            placed_at=self.clock(),
        )
        self._record_modification(
            OrderModification(
                symbol=pos.symbol,
                record_id=pos.id,
                modification_type=ModificationType.SELL_ORDER_SL_UPDATE,
                old_hma_value=pos.hma_value,
                new_hma_value=pos.hma_value,
                old_limit_price=old.stop_price,
                new_limit_price=res.details["limit_price"],
                old_order_id=old.order_id,
                new_order_id=res.order_id,
                reason=reason,
                timestamp=self.clock(),
            )
        )
        return None

    def _record_modification(self, mod: OrderModification) -> None:
        self.tracker.record_modification(mod)
        try:
            self.store.append_modification(mod)
        except Exception as e:
            self.log_event("ERROR", "SAVE_MODIFICATION_FAILED", mod.symbol, {"error": f"{type(e).__name__}: {e}"})
        self.log_event(
            "ORDER",
            "ORDER_MODIFIED",
            mod.symbol,
            {
                "record_id": mod.record_id,
                "type": mod.modification_type.value,
                "old_order_id": mod.old_order_id,
                "new_order_id": mod.new_order_id,
                "old_limit_price": mod.old_limit_price,
                "new_limit_price": mod.new_limit_price,
                "reason": mod.reason,
            },
        )

    def _step_position(self, position_id: str, tick: Tick) -> Dict[str, Any]:
        with self.record_guard(position_id) as acquired:
            if not acquired:
                self.log_event("EXEC_LOCK", "SKIP_LOCK_TIMEOUT", tick.symbol, {"id": position_id})
                return {"id": position_id, "skipped": True, "reason": "LOCK_TIMEOUT"}

            pos = self.get_position(position_id)
            if pos is None:
                return {"id": position_id, "skipped": True, "reason": "NOT_OPEN"}
            if pos.last_tick_at is not None and tick.timestamp < pos.last_tick_at:
                return {"id": position_id, "skipped": True, "reason": "STALE_TICK"}

            pos.current_ltp = tick.ltp
            pos.last_tick_at = tick.timestamp

            if pos.order_status in EXIT_PENDING:
                return {"id": position_id, "order_status": pos.order_status.value}
            if pos.order_status in EXIT_FAILED and pos.exit_attempts >= self.cfg.MAX_EXIT_ATTEMPTS:
                return {"id": position_id, "order_status": pos.order_status.value, "exit_blocked": True}

            should, reason = check_exit(pos, tick.ltp)
            if should:
                return self._exit_locked(pos, reason)

            mods = apply_trailing(pos, tick.ltp, tick.timestamp)
            if not mods:
                return {"id": position_id, "stop_loss": pos.stop_loss}

            for m in mods:
                self.log_event(
                    "POSITION",
                    "STOP_LOSS_TRAILED",
                    pos.symbol,
                    {"position_id": pos.id, "old": m.old_stop_loss, "new": m.new_stop_loss, "reason": m.reason},
                )
            closed = self._replace_protective_stop(pos, mods[-1].reason)
            if closed is not None:
                return closed
            self._save_position(pos)
            return {"id": position_id, "stop_loss": pos.stop_loss, "trailed": True}

    def exit_position(self, position_id: str) -> Dict[str, Any]:
        """Manual square-off."""
        with self.record_guard(position_id) as acquired:
            if not acquired:
                return {"ok": False, "id": position_id, "reason": "LOCK_TIMEOUT"}
            pos = self.get_position(position_id)
            if pos is None:
                return {"ok": False, "id": position_id, "reason": "NOT_OPEN"}
            if pos.order_status in EXIT_PENDING:
                return {"ok": False, "id": position_id, "reason": "EXIT_PENDING"}
            return self._exit_locked(pos, ExitReason.MANUAL)

    def _exit_locked(self, pos: ActivePosition, reason: ExitReason) -> Dict[str, Any]:
        """Cancel the resting stop, sell at market and confirm. Caller holds the position lock."""
        pos.order_status = PENDING_EXIT_STATUS[reason]
        pos.exit_reason = reason
        pos.exit_attempts += 1
        self._save_position(pos)
        self.log_event(
            "POSITION",
            "EXIT_TRIGGERED",
            pos.symbol,
            {"position_id": pos.id, "reason": reason.value, "ltp": pos.current_ltp, "attempt": pos.exit_attempts},
        )

        # 1) resting stop must be gone before the market sell
        sl = pos.sl_order_details
        if sl is not None:
            c = self.executor.cancel_order(sl.order_id)
            upd = c.details.get("update")
            if c.action == "ALREADY_TERMINAL" and upd is not None and upd.status == OrderStatus.FILLED:
                self.tracker.complete(sl.order_id, OrderStatus.FILLED)
                pos.sl_order_details = None
                return self._finalize_exit(pos, upd.fill_price or sl.trigger_price, ExitReason.STOPLOSS, sl.order_id)
            if c.action == "CANCEL_FAILED":
                return self._exit_failed(pos, "stop order could not be cancelled", c.details)
            if c.action == "ALREADY_TERMINAL" and upd is not None:
                self.tracker.complete(sl.order_id, upd.status)
            pos.sl_order_details = None

        # 2) market sell
        res = self.executor.submit_exit(pos.symbol, pos.quantity, pos.params)
        if res.action != "SUBMITTED":
            return self._exit_failed(pos, res.details.get("remarks") or res.details.get("error") or res.action, res.details)

        pos.sell_order_id = res.order_id
        self.tracker.add_pending(
            PendingOrder(
                id=new_id(),
                order_id=res.order_id,
                symbol=pos.symbol,
                record_id=pos.id,
                side=OrderSide.SELL,
                order_type=OrderType.MARKET,
                purpose=OrderPurpose.EXIT,
                quantity=pos.quantity,
                trading_mode=pos.params.trading_mode,
                hma_value=pos.hma_value,
                submitted_at=self.clock(),
            )
        )
        self._save_position(pos)

        # 3) confirm
        upd = wait_for_order_terminal(
            self.executor.gateway_for(pos.params.trading_mode),
            res.order_id,
            timeout_s=self.cfg.EXIT_CONFIRM_TIMEOUT_SECONDS,
            poll_s=min(0.5, self.cfg.ORDER_POLL_SECONDS),
        )
        if upd is None:
            self.log_event("POSITION", "EXIT_AWAITING_CONFIRMATION", pos.symbol, {"position_id": pos.id, "order_id": res.order_id})
            return {"id": pos.id, "order_status": pos.order_status.value, "sell_order_id": res.order_id}
        return self._apply_exit_update(pos, upd)

    def _exit_failed(self, pos: ActivePosition, error: str, details: Dict[str, Any]) -> Dict[str, Any]:
        reason = pos.exit_reason or ExitReason.MANUAL
        pos.order_status = FAILED_EXIT_STATUS[reason]
        pos.last_error = str(error)
        category = details.get("category")
        if category:
            self.log_event("REJECTION", "EXIT_REJECTED", pos.symbol, {"position_id": pos.id, **details})
        else:
            self.log_event("ERROR", "EXIT_FAILED", pos.symbol, {"position_id": pos.id, "error": pos.last_error, **details})
        # keep broker-side protection while the position stays open
        if pos.sl_order_details is None:
            self._place_protective_stop(pos)
        self._save_position(pos)
        return {"id": pos.id, "ok": False, "order_status": pos.order_status.value, "error": pos.last_error}

    def _apply_exit_update(self, pos: ActivePosition, upd: OrderUpdate) -> Dict[str, Any]:
        if upd.status == OrderStatus.FILLED:
            self.tracker.complete(upd.order_id, OrderStatus.FILLED)
            price = upd.fill_price if upd.fill_price is not None else pos.current_ltp
            return self._finalize_exit(pos, price, pos.exit_reason or ExitReason.MANUAL, upd.order_id)
        if upd.status in (OrderStatus.REJECTED, OrderStatus.CANCELLED):
            self.tracker.complete(upd.order_id, upd.status)
            details: Dict[str, Any] = {"order_id": upd.order_id, "status": upd.status.value}
            if upd.status == OrderStatus.REJECTED:
                rej = classify_rejection(upd.reject_reason)
                details.update({"category": rej.category.value, "message": rej.message, "remarks": rej.remarks})
            return self._exit_failed(pos, upd.reject_reason or upd.status.value, details)
        return {"id": pos.id, "order_status": pos.order_status.value}

    def _finalize_exit(
        self,
        pos: ActivePosition,
        exit_price: float,
        reason: ExitReason,
        sell_order_id: Optional[str],
    ) -> Dict[str, Any]:
        now = self.clock()
        pos.order_status = EXECUTED_EXIT_STATUS[reason]
        pos.exit_reason = reason
        pos.sell_order_id = sell_order_id
        pnl = (float(exit_price) - pos.bought_price) * pos.quantity
        closed = ClosedTrade(
            position_id=pos.id,
            symbol=pos.symbol,
            option_type=pos.option_type,
            bought_price=pos.bought_price,
            exit_price=float(exit_price),
            quantity=pos.quantity,
            exit_reason=reason,
            exit_time=now,
            pnl=pnl,
            re_entry_count=pos.re_entry_count,
            buy_order_id=pos.buy_order_id,
            sell_order_id=sell_order_id,
        )

        self._forget_position(pos.id)
        try:
            record_fill(
                self.db,
                pos.symbol,
                "SELL",
                "CLOSE",
                pos.quantity,
                float(exit_price),
                order_id=sell_order_id,
                exit_reason=reason.value,
                realized_pnl=pnl,
                run_id=self.audit.run_id,
            )
        except Exception as e:
            self.log_event("ERROR", "RECORD_FILL_FAILED", pos.symbol, {"error": f"{type(e).__name__}: {e}"})

        self.log_event(
            "EXECUTION",
            "POSITION_CLOSED",
            pos.symbol,
            {**asdict(closed), "order_status": pos.order_status.value},
        )

        re_entry = self._maybe_reenter(pos)
        return {
            "id": pos.id,
            "closed": True,
            "order_status": pos.order_status.value,
            "trade": asdict(closed),
            "re_entry_id": re_entry.id if re_entry else None,
        }

    def _maybe_reenter(self, pos: ActivePosition) -> Optional[MonitoredSymbol]:
        if pos.re_entry_count >= pos.params.max_re_entries:
            return None
        with self._registry_lock:
            if any(r.symbol == pos.symbol for r in self._symbols.values()):
                return None
        rec = MonitoredSymbol(
            id=new_id(),
            symbol=pos.symbol,
            option_type=pos.option_type,
            params=pos.params,
            current_ltp=pos.current_ltp,
            hma_value=pos.hma_value,
            hma_last_candle_ts=pos.hma_last_candle_ts,
            re_entry_count=pos.re_entry_count + 1,
            last_side=side_of(pos.current_ltp, pos.hma_value),
            last_tick_at=pos.last_tick_at,
            created_at=self.clock(),
        )
        with self._registry_lock:
            self._symbols[rec.id] = rec
        self._save_symbol(rec)
        self.log_event(
            "MONITOR",
            "RE_ENTRY_ARMED",
            rec.symbol,
            {"id": rec.id, "re_entry_count": rec.re_entry_count, "max_re_entries": pos.params.max_re_entries},
        )
        return rec

    # =========================================================
    # Order updates / reconciliation
    # =========================================================
    def on_order_update(self, update: OrderUpdate) -> Dict[str, Any]:
        """Broker callback or reconciliation result for one order."""
        po = self.tracker.get(update.order_id)
        if po is None:
            if self.tracker.is_terminal(update.order_id):
                return {"ok": True, "order_id": update.order_id, "noop": True}
            self.log_event("WARN", "ORDER_UPDATE_UNKNOWN", None, {"order_id": update.order_id, "status": update.status.value})
            return {"ok": False, "order_id": update.order_id, "reason": "UNKNOWN_ORDER"}

        if update.status == OrderStatus.PENDING:
            return {"ok": True, "order_id": update.order_id, "status": OrderStatus.PENDING.value}

        with self.record_guard(po.record_id) as acquired:
            if not acquired:
                return {"ok": False, "order_id": update.order_id, "reason": "LOCK_TIMEOUT"}
            # another path may have applied it while we waited
            if self.tracker.get(update.order_id) is None:
                return {"ok": True, "order_id": update.order_id, "noop": True}
            out = self._apply_update_locked(po, update)
        return {"ok": True, "order_id": update.order_id, **out}

    def _apply_update_locked(self, po: PendingOrder, update: OrderUpdate) -> Dict[str, Any]:
        if po.purpose == OrderPurpose.ENTRY:
            rec = self.get_symbol(po.record_id)
            if rec is not None:
                return self._apply_entry_terminal(rec, update)
            with self._registry_lock:
                detached = self._detached.pop(po.record_id, None)
            if detached is not None and update.status == OrderStatus.FILLED:
                pos = self._open_position(detached, update.order_id, update.fill_price)
                self.log_event("WARN", "DETACHED_ENTRY_FILLED", po.symbol, {"order_id": update.order_id, "position_id": pos.id if pos else None})
                return {"status": "FILLED", "position_id": pos.id if pos else None}
            self.tracker.complete(update.order_id, update.status)
            self.log_event("ERROR", "ORPHAN_ENTRY_UPDATE", po.symbol, {"order_id": update.order_id, "status": update.status.value})
            return {"orphan": True}

        pos = self.get_position(po.record_id)
        if pos is None:
            self.tracker.complete(update.order_id, update.status)
            return {"orphan": True}

        if po.purpose == OrderPurpose.EXIT:
            return self._apply_exit_update(pos, update)

        # protective stop
        self.tracker.complete(update.order_id, update.status)
        if pos.sl_order_details is not None and pos.sl_order_details.order_id == update.order_id:
            trigger = pos.sl_order_details.trigger_price
            pos.sl_order_details = None
            if update.status == OrderStatus.FILLED:
                return self._finalize_exit(pos, update.fill_price or trigger, ExitReason.STOPLOSS, update.order_id)
            self._save_position(pos)
            self.log_event("WARN", "STOP_ORDER_ENDED", pos.symbol, {"position_id": pos.id, "status": update.status.value})
        return {"status": update.status.value}

    def reconcile_orders(self) -> Dict[str, Any]:
        """Poll the broker for every resting order and apply terminal results."""
        checked, applied, errors = 0, 0, 0
        with cycle_scope():
            for po in self.tracker.pending_orders():
                checked += 1
                try:
                    upd = self.executor.get_order(po.order_id, po.trading_mode)
                except (BrokerUnavailable, OrderRejected) as e:
                    errors += 1
                    log.warning("reconcile %s failed: %s", po.order_id, e)
                    continue
                if upd.status == OrderStatus.PENDING:
                    continue
                try:
                    self.on_order_update(upd)
                    applied += 1
                except Exception as e:
                    errors += 1
                    log.exception("reconcile apply failed for %s", po.order_id)
                    self.log_event("ERROR", "RECONCILE_APPLY_FAILED", po.symbol, {"order_id": po.order_id, "error": repr(e)})
            try:
                self.store.replace_pending_orders(self.tracker.pending_orders())
            except Exception as e:
                self.log_event("ERROR", "SAVE_PENDING_ORDERS_FAILED", None, {"error": f"{type(e).__name__}: {e}"})
        return {"checked": checked, "applied": applied, "errors": errors}

    def cancel_order(self, order_id: str) -> Dict[str, Any]:
        """Manual cancel of a resting order (idempotent)."""
        po = self.tracker.get(order_id)
        if po is None:
            res = self.executor.cancel_order(order_id)
            return {"ok": res.action == "NOOP", "result": res.action, **res.details}

        with self.record_guard(po.record_id) as acquired:
            if not acquired:
                return {"ok": False, "order_id": order_id, "reason": "LOCK_TIMEOUT"}
            res = self.executor.cancel_order(order_id)
            upd = res.details.get("update")
            if res.action == "ALREADY_TERMINAL" and upd is not None:
                out = self._apply_update_locked(po, upd)
                return {"ok": True, "result": res.action, "order_id": order_id, **out}
            if res.action == "CANCELLED":
                self._apply_update_locked(po, OrderUpdate(order_id=order_id, status=OrderStatus.CANCELLED))
            return {"ok": res.ok, "result": res.action, **{k: v for k, v in res.details.items() if k != "update"}}

    # =========================================================
    # HMA
    # =========================================================
    def hma_targets(self) -> List[Tuple[str, str, Optional[int]]]:
        """(record id, symbol, hma_last_candle_ts) for every monitored symbol and open position."""
        with self._registry_lock:
            out = [(r.id, r.symbol, r.hma_last_candle_ts) for r in self._symbols.values()]
            out += [(p.id, p.symbol, p.hma_last_candle_ts) for p in self._positions.values()]
        return out

    def apply_hma(self, record_id: str, value: float, candle_ts: int) -> bool:
        """
        Store a refreshed HMA. Returns False (no-op) unless candle_ts is
        strictly newer than what the record already holds.
        """
        with self.record_guard(record_id) as acquired:
            if not acquired:
                return False
            rec: Union[MonitoredSymbol, ActivePosition, None] = self.get_symbol(record_id) or self.get_position(record_id)
            if rec is None:
                return False
            if rec.hma_last_candle_ts is not None and int(candle_ts) <= rec.hma_last_candle_ts:
                return False

            old = rec.hma_value
            rec.hma_value = float(value)
            rec.hma_last_candle_ts = int(candle_ts)

            if isinstance(rec, MonitoredSymbol):
                if rec.flagged:
                    # new candle: a flagged entry may be attempted again
                    rec.flagged = False
                    rec.last_error = None
                if (
                    rec.trigger_status == TriggerStatus.ORDER_PLACED
                    and rec.params.order_type != OrderType.MARKET
                    and rec.order_id
                    and old != rec.hma_value
                ):
                    self._resubmit_limit_entry(rec, old)
                # a re-priced entry may have filled and handed the record to a position
                if self.get_symbol(record_id) is rec:
                    self._save_symbol(rec)
            else:
                self._save_position(rec)

            self.log_event(
                "HMA",
                "HMA_UPDATED",
                rec.symbol,
                {"id": record_id, "old": old, "new": rec.hma_value, "candle_ts": rec.hma_last_candle_ts},
            )
            return True

    def flag_hma_failure(self, record_id: str, error: str) -> bool:
        """
        HMA refresh exhausted its retries: the monitored symbol keeps its old
        value and state and is flagged until a refresh succeeds. Positions
        keep their last_error for exit failures and are only audited.
        """
        with self.record_guard(record_id) as acquired:
            if not acquired:
                return False
            rec = self.get_symbol(record_id)
            if rec is None:
                return False
            rec.flagged = True
            rec.last_error = str(error)
            self._save_symbol(rec)
            return True

    def _resubmit_limit_entry(self, rec: MonitoredSymbol, old_hma: Optional[float]) -> None:
        """Re-price a resting LIMIT/SL_LIMIT entry at the new HMA. Caller holds the record lock."""
        old_id = rec.order_id
        old_po = self.tracker.get(old_id)
        if old_po is None:
            return

        c = self.executor.cancel_order(old_id)
        upd = c.details.get("update")
        if c.action == "ALREADY_TERMINAL" and upd is not None:
            self._apply_entry_terminal(rec, upd)
            return
        if c.action not in ("CANCELLED", "NOOP"):
            self.log_event("WARN", "HMA_RESUBMIT_CANCEL_FAILED", rec.symbol, {"id": rec.id, **c.details})
            return

        res = self.executor.submit_entry(rec.symbol, rec.params, rec.hma_value)
        if res.action == "SUBMITTED":
            # before the result is applied: a paper fill promotes the record at once
            rec.order_modification_count += 1
            rec.order_modification_reason = f"HMA updated {old_hma} -> {rec.hma_value}"
        self._apply_entry_result(rec, res, rec.hma_value, replaced=old_po)
        if res.action != "SUBMITTED":
            return

        self._record_modification(
            OrderModification(
                symbol=rec.symbol,
                record_id=rec.id,
                modification_type=ModificationType.BUY_ORDER_HMA_UPDATE,
                old_hma_value=old_hma,
                new_hma_value=rec.hma_value,
                old_limit_price=old_po.bought_price,
                new_limit_price=res.details.get("limit_price"),
                old_order_id=old_id,
                new_order_id=res.order_id,
                reason=rec.order_modification_reason,
                timestamp=self.clock(),
            )
        )

    # =========================================================
    # Queries / lifecycle
    # =========================================================
    def modifications(self, symbol_or_id: str) -> List[Dict[str, Any]]:
        rec = self.get_symbol(symbol_or_id) or self.get_position(symbol_or_id)
        symbol = rec.symbol if rec is not None else symbol_or_id
        return [asdict(m) for m in self.tracker.modifications(symbol)]

    def snapshot(self) -> Dict[str, Any]:
        now = self.clock()
        with self._registry_lock:
            symbols = list(self._symbols.values())
            positions = list(self._positions.values())

        sym_out = []
        for r in symbols:
            d = r.to_dict()
            d["confirmation_remaining_s"] = self.timers.remaining(r.id, now)
            sym_out.append(d)

        try:
            totals = realized_totals(self.db)
        except Exception as e:
            log.warning("realized totals unavailable: %s", e)
            totals = {}

        return {
            "execution_mode": self.cfg.EXECUTION_MODE,
            "monitored_symbols": sym_out,
            "active_positions": [p.to_dict() for p in positions],
            "pending_orders": [o.to_dict() for o in self.tracker.pending_orders()],
            "in_flight_submissions": self.tracker.in_flight_count(),
            "totals": totals,
            "hma": dict(self.hma_status),
            "market": self.market.get_status(),
        }

    def shutdown(self, timeout_s: Optional[float] = None) -> Dict[str, Any]:
        """Wait (bounded) for in-flight submissions, then persist resting orders."""
        t = self.cfg.SHUTDOWN_TIMEOUT_SECONDS if timeout_s is None else timeout_s
        deadline = time.time() + t
        while self.tracker.in_flight_count() > 0 and time.time() < deadline:
            time.sleep(0.05)

        remaining = self.tracker.in_flight_count()
        pending = self.tracker.pending_orders()
        try:
            self.store.replace_pending_orders(pending)
        except Exception as e:
            self.log_event("ERROR", "SAVE_PENDING_ORDERS_FAILED", None, {"error": f"{type(e).__name__}: {e}"})

        self.log_event(
            "INFO",
            "ENGINE_SHUTDOWN",
            details={"in_flight_remaining": remaining, "pending_orders": len(pending)},
        )
        return {"in_flight_remaining": remaining, "pending_orders": len(pending)}
