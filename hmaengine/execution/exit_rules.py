from __future__ import annotations

from typing import Tuple


def bracket_for(bought_price: float, target_points: float, stop_loss_points: float) -> Tuple[float, float]:
    """Returns (stop_loss, target) around a long entry."""
    stop_loss = float(bought_price) - float(stop_loss_points)
    target = float(bought_price) + float(target_points)
    _validate_sl_tp(float(bought_price), stop_loss, target)
    return stop_loss, target


def _validate_sl_tp(entry_price: float, stop_loss: float, take_profit: float) -> None:
    """
    Validate bracket invariants for a long option position:
    stop_loss < entry_price < take_profit
    Raises ValueError if invalid.
    """
    if entry_price <= 0:
        raise ValueError("Invalid entry price")
    if not (stop_loss < entry_price < take_profit):
        raise ValueError("Invalid SL/TP for LONG")
