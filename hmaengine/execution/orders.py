# hmaengine/execution/orders.py
from __future__ import annotations

import threading
import uuid
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional

from hmaengine.runner.models import (
    OrderModification,
    OrderPurpose,
    OrderStatus,
    PendingOrder,
)

# terminal ids kept for no-op repeats; oldest are dropped first
TERMINAL_HISTORY_LIMIT = 5000

@dataclass
class InFlight:
    token: str
    record_id: str
    purpose: OrderPurpose
    started_at: float
    abandoned: bool = False

class OrderTracker:
    """
    Bookkeeping for orders the engine knows about:
    - resting (pending) orders by broker order id
    - terminal order ids, so repeated cancels/updates are no-ops
    - in-flight submissions (sent, not yet acknowledged)
    - append-only modification history per instrument

    Broker calls live in the executor; this class never talks to the network.
    """

    def __init__(self, terminal_limit: int = TERMINAL_HISTORY_LIMIT) -> None:
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingOrder] = {}
        self._terminal: "OrderedDict[str, OrderStatus]" = OrderedDict()
        self._terminal_limit = int(terminal_limit)
        self._in_flight: Dict[str, InFlight] = {}
        self._modifications: Dict[str, List[OrderModification]] = defaultdict(list)

    # ---------- pending / terminal ----------

    def add_pending(self, order: PendingOrder) -> None:
        with self._lock:
            self._pending[order.order_id] = order
            self._terminal.pop(order.order_id, None)

    def get(self, order_id: str) -> Optional[PendingOrder]:
        with self._lock:
            return self._pending.get(order_id)

    def pending_for(
        self, record_id: str, purpose: Optional[OrderPurpose] = None
    ) -> List[PendingOrder]:
        with self._lock:
            return [
                o
                for o in self._pending.values()
                if o.record_id == record_id and (purpose is None or o.purpose == purpose)
            ]

    def pending_orders(self) -> List[PendingOrder]:
        with self._lock:
            return list(self._pending.values())

    def complete(self, order_id: str, status: OrderStatus) -> Optional[PendingOrder]:
        """Move an order to the terminal registry. Returns the pending record, if any."""
        with self._lock:
            order = self._pending.pop(order_id, None)
            self._terminal[order_id] = status
            self._terminal.move_to_end(order_id)
            while len(self._terminal) > self._terminal_limit:
                self._terminal.popitem(last=False)
            return order

    def terminal_status(self, order_id: str) -> Optional[OrderStatus]:
        with self._lock:
            return self._terminal.get(order_id)

    def is_terminal(self, order_id: str) -> bool:
        return self.terminal_status(order_id) is not None

    # ---------- in-flight submissions ----------

    def begin_submission(self, record_id: str, purpose: OrderPurpose, now: float) -> Optional[str]:
        """Returns a token, or None when the record already has a submission in flight."""
        with self._lock:
            for f in self._in_flight.values():
                if f.record_id == record_id and f.purpose == purpose and not f.abandoned:
                    return None
            token = str(uuid.uuid4())
            self._in_flight[token] = InFlight(
                token=token, record_id=record_id, purpose=purpose, started_at=now
            )
            return token

    def finish_submission(self, token: str) -> bool:
        """Returns False when the submission was abandoned while in flight."""
        with self._lock:
            f = self._in_flight.pop(token, None)
            return bool(f and not f.abandoned)

    def abandon_submissions(self, record_id: str) -> int:
        with self._lock:
            n = 0
            for f in self._in_flight.values():
                if f.record_id == record_id and not f.abandoned:
                    f.abandoned = True
                    n += 1
            return n

    def has_in_flight(self, record_id: str) -> bool:
        with self._lock:
            return any(
                f.record_id == record_id and not f.abandoned for f in self._in_flight.values()
            )

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    # ---------- modifications ----------

    def record_modification(self, mod: OrderModification) -> None:
        with self._lock:
            self._modifications[mod.symbol].append(mod)

    def modifications(self, symbol: str) -> List[OrderModification]:
        with self._lock:
            return list(self._modifications.get(symbol, []))

    def load_modifications(self, mods: List[OrderModification]) -> None:
        with self._lock:
            for m in mods:
                self._modifications[m.symbol].append(m)
