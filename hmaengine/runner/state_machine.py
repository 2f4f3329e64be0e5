# hmaengine/runner/state_machine.py
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from hmaengine.core.clock import entry_deadline, reversal_deadline
from hmaengine.runner.models import PendingSignal, PriceSide, TriggerStatus


class Decision(str, Enum):
    START_REVERSAL = "START_REVERSAL"
    CANCEL_REVERSAL = "CANCEL_REVERSAL"
    CONFIRM_REVERSAL = "CONFIRM_REVERSAL"
    FORCE_ENTRY = "FORCE_ENTRY"
    START_ENTRY = "START_ENTRY"
    CANCEL_ENTRY = "CANCEL_ENTRY"
    ENTRY_EXPIRED = "ENTRY_EXPIRED"
    SUBMIT_ENTRY = "SUBMIT_ENTRY"
    HOLD_FLAGGED = "HOLD_FLAGGED"


CONFIRMING = {TriggerStatus.CONFIRMING_REVERSAL, TriggerStatus.CONFIRMING_ENTRY}


@dataclass(frozen=True)
class Timing:
    reversal_minutes: int = 15
    candle_minutes: int = 5
    deadline_second: int = 59


@dataclass
class SignalInputs:
    status: TriggerStatus
    hma: Optional[float]
    # LTP known before this evaluation (used for timer expiry)
    prev_ltp: Optional[float]
    # LTP carried by the tick being applied; None for a timer sweep
    tick_ltp: Optional[float]
    last_side: Optional[PriceSide]
    pending: Optional[PendingSignal]
    now: float
    flagged: bool = False


@dataclass
class Transition:
    decision: Decision
    status: TriggerStatus
    pending: Optional[PendingSignal]
    reason: str


def side_of(ltp: Optional[float], hma: Optional[float]) -> Optional[PriceSide]:
    """Strict comparison. Equality (or a missing value) is no side at all."""
    if ltp is None or hma is None:
        return None
    if ltp > hma:
        return PriceSide.ABOVE
    if ltp < hma:
        return PriceSide.BELOW
    return None


def next_last_side(last_side: Optional[PriceSide], ltp: Optional[float], hma: Optional[float]) -> Optional[PriceSide]:
    side = side_of(ltp, hma)
    return side if side is not None else last_side


def _expire(inp: SignalInputs, timing: Timing) -> Optional[Transition]:
    """Timer expiry, judged on the price known before the incoming tick."""
    p = inp.pending
    if p is None or inp.now < p.confirmation_end_time:
        return None

    side = side_of(inp.prev_ltp, inp.hma)

    if inp.status == TriggerStatus.CONFIRMING_REVERSAL:
        if side == PriceSide.ABOVE:
            return Transition(
                Decision.CANCEL_REVERSAL,
                TriggerStatus.WAITING_FOR_REVERSAL,
                None,
                "ltp_above_hma_at_expiry",
            )
        return Transition(
            Decision.CONFIRM_REVERSAL,
            TriggerStatus.WAITING_FOR_ENTRY,
            None,
            "reversal_confirmed",
        )

    if inp.status == TriggerStatus.CONFIRMING_ENTRY:
        if side == PriceSide.ABOVE:
            if inp.flagged:
                return Transition(
                    Decision.HOLD_FLAGGED,
                    TriggerStatus.CONFIRMING_ENTRY,
                    p,
                    "flagged_awaiting_retry",
                )
            return Transition(
                Decision.SUBMIT_ENTRY,
                TriggerStatus.CONFIRMING_ENTRY,
                p,
                "entry_confirmed",
            )
        return Transition(
            Decision.ENTRY_EXPIRED,
            TriggerStatus.WAITING_FOR_ENTRY,
            None,
            "ltp_not_above_hma_at_deadline",
        )

    return None


def _apply_tick(status: TriggerStatus, inp: SignalInputs, pending: Optional[PendingSignal], timing: Timing) -> Optional[Transition]:
    side = side_of(inp.tick_ltp, inp.hma)
    if side is None or inp.hma is None:
        return None

    if status == TriggerStatus.WAITING_FOR_REVERSAL:
        if inp.last_side == PriceSide.ABOVE and side == PriceSide.BELOW:
            return Transition(
                Decision.START_REVERSAL,
                TriggerStatus.CONFIRMING_REVERSAL,
                PendingSignal(
                    direction="REVERSAL",
                    triggered_at=inp.now,
                    hma_at_trigger=inp.hma,
                    confirmation_end_time=reversal_deadline(inp.now, timing.reversal_minutes),
                ),
                "crossed_below_hma",
            )
        return None

    if status == TriggerStatus.CONFIRMING_REVERSAL:
        if side == PriceSide.ABOVE:
            return Transition(
                Decision.CANCEL_REVERSAL,
                TriggerStatus.WAITING_FOR_REVERSAL,
                None,
                "crossed_back_above_hma",
            )
        return None

    if status == TriggerStatus.WAITING_FOR_ENTRY:
        if inp.last_side == PriceSide.BELOW and side == PriceSide.ABOVE:
            return Transition(
                Decision.START_ENTRY,
                TriggerStatus.CONFIRMING_ENTRY,
                PendingSignal(
                    direction="ENTRY",
                    triggered_at=inp.now,
                    hma_at_trigger=inp.hma,
                    confirmation_end_time=float(
                        entry_deadline(inp.now, timing.candle_minutes, timing.deadline_second)
                    ),
                ),
                "crossed_above_hma",
            )
        return None

    if status == TriggerStatus.CONFIRMING_ENTRY:
        if side == PriceSide.BELOW and pending is not None and inp.now < pending.confirmation_end_time:
            return Transition(
                Decision.CANCEL_ENTRY,
                TriggerStatus.WAITING_FOR_ENTRY,
                None,
                "crossed_back_below_hma",
            )
        return None

    return None


def evaluate(inp: SignalInputs, timing: Timing = Timing()) -> List[Transition]:
    """
    Pure transition function for one monitored symbol.

    Timer expiry is evaluated first on the pre-tick price, then the tick (if
    any) is applied to whatever state expiry left behind. Returns the ordered
    transitions; an empty list means the state is unchanged.
    """
    steps: List[Transition] = []
    status = inp.status
    pending = inp.pending

    if status in CONFIRMING:
        expired = _expire(inp, timing)
        if expired is not None:
            steps.append(expired)
            status = expired.status
            pending = expired.pending
            if expired.decision in (Decision.SUBMIT_ENTRY, Decision.HOLD_FLAGGED):
                # Entry decided at the deadline; the tick no longer matters
                return steps

    if inp.tick_ltp is not None:
        applied = _apply_tick(status, inp, pending, timing)
        if applied is not None:
            steps.append(applied)

    return steps


def force_entry(
    status: TriggerStatus, ltp: Optional[float], hma: Optional[float]
) -> Transition:
    """
    Manual reversal-to-entry override ("move strike").
    Raises ValueError when the override is not allowed.
    """
    if status not in (TriggerStatus.CONFIRMING_REVERSAL, TriggerStatus.WAITING_FOR_REVERSAL):
        raise ValueError(f"Cannot move to entry from {status.value}")
    if ltp is None or hma is None:
        raise ValueError("LTP and HMA are required to move to entry")
    if ltp > hma:
        raise ValueError("LTP must be at or below HMA to move to entry")
    return Transition(
        Decision.FORCE_ENTRY,
        TriggerStatus.WAITING_FOR_ENTRY,
        None,
        "manual_move_strike",
    )
