from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

from hmaengine.exchange.errors import OrderRejected
from hmaengine.marketdata.repository import MarketDataRepository
from hmaengine.runner.models import OrderStatus, OrderUpdate


@dataclass
class _PaperOrder:
    order_id: str
    symbol: str
    side: str
    quantity: int
    order_type: str
    limit_price: Optional[float]
    trigger_price: Optional[float]
    status: OrderStatus = OrderStatus.PENDING
    fill_price: Optional[float] = None


class PaperBroker:
    """
    Simulated gateway for PAPER symbols.

    MARKET orders fill at the repository LTP on submission. LIMIT and
    SL_LIMIT orders rest and are re-checked against the latest LTP whenever
    their status is queried.
    """

    def __init__(self, market: MarketDataRepository):
        self.market = market
        self._lock = threading.Lock()
        self._orders: Dict[str, _PaperOrder] = {}

    def submit_order(
        self,
        symbol: str,
        side: str,
        quantity: int,
        order_type: str,
        product_type: str,
        limit_price: Optional[float] = None,
        trigger_price: Optional[float] = None,
    ) -> str:
        if int(quantity) <= 0:
            raise OrderRejected("Invalid quantity")
        if self.market.ltp(symbol) is None:
            raise OrderRejected(f"No market price for {symbol}; invalid symbol or market closed")
        if order_type in ("LIMIT", "SL_LIMIT") and limit_price is None:
            raise OrderRejected("Limit price required")

        order = _PaperOrder(
            order_id=f"PAPER-{uuid.uuid4().hex[:12]}",
            symbol=symbol,
            side=str(side).upper(),
            quantity=int(quantity),
            order_type=str(order_type).upper(),
            limit_price=limit_price,
            trigger_price=trigger_price,
        )
        with self._lock:
            self._orders[order.order_id] = order
            self._match(order)
        return order.order_id

    def cancel_order(self, order_id: str) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderRejected(f"Unknown order {order_id}")
            if order.status != OrderStatus.PENDING:
                return order.status == OrderStatus.CANCELLED
            order.status = OrderStatus.CANCELLED
            return True

    def get_order(self, order_id: str) -> OrderUpdate:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                raise OrderRejected(f"Unknown order {order_id}")
            self._match(order)
            return OrderUpdate(
                order_id=order.order_id,
                status=order.status,
                fill_price=order.fill_price,
            )

    def _match(self, order: _PaperOrder) -> None:
        if order.status != OrderStatus.PENDING:
            return
        ltp = self.market.ltp(order.symbol)
        if ltp is None:
            return

        if order.order_type == "MARKET":
            self._fill(order, ltp)
            return

        buying = order.side == "BUY"
        if order.order_type == "SL_LIMIT" and order.trigger_price is not None:
            triggered = ltp >= order.trigger_price if buying else ltp <= order.trigger_price
            if not triggered:
                return

        limit = float(order.limit_price)
        if buying and ltp <= limit:
            self._fill(order, ltp)
        elif not buying and ltp >= limit:
            self._fill(order, ltp)

    @staticmethod
    def _fill(order: _PaperOrder, price: float) -> None:
        order.status = OrderStatus.FILLED
        order.fill_price = float(price)
