from __future__ import annotations

from typing import Optional, Protocol

from hmaengine.runner.models import OrderUpdate


class HmaProvider(Protocol):
    def get_hma(self, symbol: str) -> float: ...


class BrokerGateway(Protocol):
    def submit_order(
        self,
        symbol: str,
        side: str,
        quantity: int,
        order_type: str,
        product_type: str,
        limit_price: Optional[float] = None,
        trigger_price: Optional[float] = None,
    ) -> str: ...

    def cancel_order(self, order_id: str) -> bool: ...

    def get_order(self, order_id: str) -> OrderUpdate: ...
