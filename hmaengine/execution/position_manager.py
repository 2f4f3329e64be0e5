# hmaengine/execution/position_manager.py
from __future__ import annotations

import math
from typing import List, Optional, Tuple

from hmaengine.runner.models import ActivePosition, ExitReason, SlModification


def check_exit(pos: ActivePosition, ltp: float) -> Tuple[bool, Optional[ExitReason]]:
    """
    Exit policy for a long option position.

    Target is checked before stop-loss. The stop-loss only exits when
    auto_exit_on_stop_loss is enabled; otherwise the position keeps trailing.

    Returns: (exit_now, reason)
    """
    if ltp is None or ltp <= 0:
        return (False, None)

    if ltp >= pos.target:
        return (True, ExitReason.TARGET)

    if pos.params.auto_exit_on_stop_loss and ltp <= pos.stop_loss:
        return (True, ExitReason.STOPLOSS)

    return (False, None)


def trail_to_cost_candidate(pos: ActivePosition, ltp: float) -> Optional[float]:
    if not pos.params.trailing_stop_loss:
        return None
    if ltp <= pos.bought_price:
        return None
    return ltp - pos.params.stop_loss_points


def interval_candidate(pos: ActivePosition, ltp: float) -> Optional[float]:
    """
    X/Y interval trailing: for every X points of favourable movement the stop
    steps up by Y points from the initial stop-loss.
    """
    p = pos.params
    if not p.use_trailing_stoploss or p.trailing_x <= 0 or p.trailing_y <= 0:
        return None
    movement = ltp - pos.bought_price
    if movement < p.trailing_x:
        return None
    intervals = math.floor(movement / p.trailing_x)
    return pos.initial_stop_loss + intervals * p.trailing_y


def apply_trailing(pos: ActivePosition, ltp: float, now: float) -> List[SlModification]:
    """
    Raise the stop-loss using every enabled trailing mode.

    Candidates at or below the current stop are ignored, so the stop never
    loosens. The highest accepted candidate wins and is recorded once.
    """
    candidates = []
    c = trail_to_cost_candidate(pos, ltp)
    if c is not None:
        candidates.append((c, "TRAIL_TO_COST"))
    c = interval_candidate(pos, ltp)
    if c is not None:
        candidates.append((c, "INTERVAL_TRAIL"))

    accepted = [(v, r) for v, r in candidates if v > pos.stop_loss]
    if not accepted:
        return []

    new_sl, reason = max(accepted, key=lambda x: x[0])
    mod = SlModification(
        timestamp=now,
        old_stop_loss=pos.stop_loss,
        new_stop_loss=new_sl,
        reason=f"{reason} ltp={ltp}",
    )
    pos.stop_loss = new_sl
    pos.sl_modifications.append(mod)
    return [mod]
