from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional, Tuple

# run = one service lifetime; cycle = one refresh pass, sweep or reconciliation
_run: ContextVar[Optional[str]] = ContextVar("hmaengine_run_id", default=None)
_cycle: ContextVar[Optional[str]] = ContextVar("hmaengine_cycle_id", default=None)


def set_run_id(run_id: Optional[str]) -> None:
    _run.set(run_id)


def clear_run_id() -> None:
    set_run_id(None)


def current_ids() -> Tuple[Optional[str], Optional[str]]:
    """(run_id, cycle_id) of the calling context."""
    return _run.get(), _cycle.get()


@contextmanager
def cycle_scope(cycle_id: Optional[str] = None) -> Iterator[str]:
    """
    Tag everything audited inside the block with one cycle id.
    Nested scopes keep the outer id, so a sweep that triggers a
    reconciliation is still one cycle.
    """
    outer = _cycle.get()
    cid = cycle_id or outer or uuid.uuid4().hex
    token = _cycle.set(cid)
    try:
        yield cid
    finally:
        _cycle.reset(token)
