"""
In-memory last-traded-price store keyed by canonical instrument id.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class Quote:
    symbol: str
    ltp: float
    ts: float


class MarketDataRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._quotes: Dict[str, Quote] = {}

    def update(self, symbol: str, ltp: float, ts: float) -> bool:
        """Store a tick. Returns False (and keeps the old quote) for stale ticks."""
        if not symbol:
            return False
        with self._lock:
            current = self._quotes.get(symbol)
            if current is not None and ts < current.ts:
                return False
            self._quotes[symbol] = Quote(symbol=symbol, ltp=float(ltp), ts=float(ts))
            return True

    def get_quote(self, symbol: str) -> Optional[Quote]:
        with self._lock:
            return self._quotes.get(symbol)

    def ltp(self, symbol: str) -> Optional[float]:
        q = self.get_quote(symbol)
        return q.ltp if q is not None else None

    def get_status(self) -> Dict[str, object]:
        now = time.time()
        with self._lock:
            quotes = list(self._quotes.values())
        return {
            q.symbol: {"ltp": q.ltp, "ts": q.ts, "age_seconds": max(0.0, now - q.ts)}
            for q in quotes
        }
