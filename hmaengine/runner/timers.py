# hmaengine/runner/timers.py
from __future__ import annotations

import threading
from typing import Dict, List, Optional

from hmaengine.runner.models import PendingSignal
from hmaengine.runner.state_machine import Timing


class ConfirmationTimerManager:
    """
    Registry of armed confirmation deadlines, one per record.

    The deadline itself lives on the record's pending signal; this registry
    only tells the sweep which records are due. Firing is always re-checked
    against the record under its own lock, so a timer cancelled by a tick
    can never fire afterwards.
    """

    def __init__(self, timing: Timing) -> None:
        self.timing = timing
        self._lock = threading.Lock()
        self._deadlines: Dict[str, float] = {}

    def arm(self, record_id: str, pending: PendingSignal) -> None:
        with self._lock:
            self._deadlines[record_id] = float(pending.confirmation_end_time)

    def cancel(self, record_id: str) -> bool:
        with self._lock:
            return self._deadlines.pop(record_id, None) is not None

    def sync(self, record_id: str, pending: Optional[PendingSignal]) -> None:
        if pending is None:
            self.cancel(record_id)
        else:
            self.arm(record_id, pending)

    def due(self, now: float) -> List[str]:
        with self._lock:
            return [rid for rid, deadline in self._deadlines.items() if now >= deadline]

    def deadline_for(self, record_id: str) -> Optional[float]:
        with self._lock:
            return self._deadlines.get(record_id)

    def remaining(self, record_id: str, now: float) -> Optional[float]:
        deadline = self.deadline_for(record_id)
        if deadline is None:
            return None
        return max(0.0, deadline - now)

    def clear(self) -> None:
        with self._lock:
            self._deadlines.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._deadlines)
