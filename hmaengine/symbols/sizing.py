# hmaengine/symbols/sizing.py
from __future__ import annotations

from typing import Dict

from hmaengine.symbols.universe import underlying_of


def lot_size_for(symbol: str, lot_sizes: Dict[str, int], default_lot_size: int) -> int:
    """
    Lot size by underlying (NIFTY, BANKNIFTY, ...), falling back to the default.
    An exact canonical-symbol entry wins over the underlying entry.
    """
    exact = lot_sizes.get(symbol.upper())
    if exact:
        return int(exact)
    return int(lot_sizes.get(underlying_of(symbol.upper()), default_lot_size))


def quantity_for(lots: int, lot_size: int) -> int:
    if int(lots) <= 0:
        raise ValueError("lots must be > 0")
    if int(lot_size) <= 0:
        raise ValueError("lot size must be > 0")
    return int(lots) * int(lot_size)
