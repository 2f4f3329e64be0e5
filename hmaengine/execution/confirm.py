from __future__ import annotations

import logging
import time
from typing import Optional

from hmaengine.exchange.errors import BrokerUnavailable
from hmaengine.runner.models import TERMINAL_ORDER_STATUSES, OrderUpdate

log = logging.getLogger("hmaengine.execution")


def wait_for_order_terminal(
    gateway, order_id: str, timeout_s: float = 10.0, poll_s: float = 0.5
) -> Optional[OrderUpdate]:
    """
    Poll until the order is FILLED, REJECTED or CANCELLED.
    Returns None on timeout; the order stays pending for reconciliation.
    """
    deadline = time.time() + float(timeout_s)

    while True:
        try:
            upd = gateway.get_order(order_id)
            if upd.status in TERMINAL_ORDER_STATUSES:
                return upd
        except BrokerUnavailable as e:
            log.warning("order %s status poll failed: %s", order_id, e)
        if time.time() >= deadline:
            return None
        time.sleep(poll_s)
