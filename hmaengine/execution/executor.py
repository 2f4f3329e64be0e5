from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from hmaengine.core.config import Settings, settings
from hmaengine.exchange.broker.filters import price_to_tick
from hmaengine.exchange.errors import BrokerUnavailable, OrderRejected
from hmaengine.exchange.interfaces import BrokerGateway
from hmaengine.execution.orders import OrderTracker
from hmaengine.execution.rejections import classify_rejection
from hmaengine.runner.models import (
    TERMINAL_ORDER_STATUSES,
    OrderSide,
    OrderStatus,
    OrderType,
    OrderUpdate,
    TradingMode,
    TradingParams,
)

log = logging.getLogger("hmaengine.execution")


# =========================
# Execution Result
# =========================
@dataclass
class ExecResult:
    action: str
    details: dict

    @property
    def order_id(self) -> Optional[str]:
        return self.details.get("order_id")

    @property
    def ok(self) -> bool:
        return self.action in {"SUBMITTED", "CANCELLED", "NOOP"}


# =========================
# Order Executor
# =========================
class OrderExecutor:
    """
    Single place where the engine talks to a broker gateway.

    LIVE symbols go to the real gateway only when EXECUTION_MODE=live;
    everything else is routed to the paper gateway. Broker failures come
    back as ExecResult actions instead of exceptions:
      SUBMITTED | REJECTED | UNAVAILABLE
      CANCELLED | NOOP | ALREADY_TERMINAL | UNKNOWN_ORDER | CANCEL_FAILED
    """

    def __init__(
        self,
        live: BrokerGateway,
        paper: BrokerGateway,
        tracker: OrderTracker,
        *,
        cfg: Settings = settings,
    ):
        self.live = live
        self.paper = paper
        self.tracker = tracker
        self.cfg = cfg

    def gateway_for(self, mode: TradingMode) -> BrokerGateway:
        if mode == TradingMode.LIVE and self.cfg.is_live:
            return self.live
        return self.paper

    # ---------------- PRICING ----------------

    def entry_prices(
        self, params: TradingParams, hma: Optional[float]
    ) -> Tuple[Optional[float], Optional[float]]:
        """
        (limit_price, trigger_price) for a BUY entry.
        LIMIT rests at the HMA; SL_LIMIT triggers at the HMA with a buffered limit above it.
        """
        if params.order_type == OrderType.MARKET:
            return None, None
        if hma is None:
            raise ValueError("HMA is required to price a limit entry")
        tick = self.cfg.TICK_SIZE
        if params.order_type == OrderType.LIMIT:
            return price_to_tick(hma, tick), None
        trigger = price_to_tick(hma, tick)
        limit = price_to_tick(hma + self.cfg.SL_LIMIT_BUFFER, tick, mode="up")
        return limit, trigger

    def stop_prices(self, stop_loss: float) -> Tuple[float, float]:
        """(limit_price, trigger_price) for a protective SELL stop."""
        tick = self.cfg.TICK_SIZE
        trigger = price_to_tick(stop_loss, tick)
        limit = price_to_tick(max(tick, stop_loss - self.cfg.SL_LIMIT_BUFFER), tick, mode="down")
        return limit, trigger

    # ---------------- SUBMISSION ----------------

    def _submit(
        self,
        gateway: BrokerGateway,
        symbol: str,
        side: OrderSide,
        quantity: int,
        order_type: OrderType,
        product_type: str,
        limit_price: Optional[float] = None,
        trigger_price: Optional[float] = None,
    ) -> ExecResult:
        details = {
            "symbol": symbol,
            "side": side.value,
            "quantity": int(quantity),
            "order_type": order_type.value,
            "product_type": str(product_type),
            "limit_price": limit_price,
            "trigger_price": trigger_price,
        }
        try:
            order_id = gateway.submit_order(
                symbol=symbol,
                side=side.value,
                quantity=int(quantity),
                order_type=order_type.value,
                product_type=str(product_type),
                limit_price=limit_price,
                trigger_price=trigger_price,
            )
        except OrderRejected as e:
            rej = classify_rejection(e.remarks)
            details.update(
                {
                    "category": rej.category.value,
                    "message": rej.message,
                    "remarks": rej.remarks,
                }
            )
            return ExecResult("REJECTED", details)
        except BrokerUnavailable as e:
            details["error"] = str(e)
            return ExecResult("UNAVAILABLE", details)

        details["order_id"] = order_id
        return ExecResult("SUBMITTED", details)

    def submit_entry(
        self, symbol: str, params: TradingParams, hma: Optional[float]
    ) -> ExecResult:
        limit_price, trigger_price = self.entry_prices(params, hma)
        return self._submit(
            self.gateway_for(params.trading_mode),
            symbol,
            OrderSide.BUY,
            params.quantity,
            params.order_type,
            params.product_type.value,
            limit_price=limit_price,
            trigger_price=trigger_price,
        )

    def submit_exit(self, symbol: str, quantity: int, params: TradingParams) -> ExecResult:
        return self._submit(
            self.gateway_for(params.trading_mode),
            symbol,
            OrderSide.SELL,
            quantity,
            OrderType.MARKET,
            params.product_type.value,
        )

    def place_stop(
        self, symbol: str, quantity: int, params: TradingParams, stop_loss: float
    ) -> ExecResult:
        limit_price, trigger_price = self.stop_prices(stop_loss)
        return self._submit(
            self.gateway_for(params.trading_mode),
            symbol,
            OrderSide.SELL,
            quantity,
            OrderType.SL_LIMIT,
            params.product_type.value,
            limit_price=limit_price,
            trigger_price=trigger_price,
        )

    # ---------------- STATUS / CANCEL ----------------

    def get_order(self, order_id: str, mode: TradingMode) -> OrderUpdate:
        return self.gateway_for(mode).get_order(order_id)

    def cancel_order(self, order_id: str) -> ExecResult:
        """
        Idempotent cancel.
        Terminal orders are a no-op success; unknown ids are a structured failure.
        When the broker refuses because the order already completed, the
        terminal update is returned so the caller can apply it.
        """
        terminal = self.tracker.terminal_status(order_id)
        if terminal is not None:
            return ExecResult("NOOP", {"order_id": order_id, "status": terminal.value})

        po = self.tracker.get(order_id)
        if po is None:
            return ExecResult("UNKNOWN_ORDER", {"order_id": order_id})

        gateway = self.gateway_for(po.trading_mode)
        try:
            cancelled = gateway.cancel_order(order_id)
        except OrderRejected as e:
            cancelled = False
            log.info("cancel %s refused: %s", order_id, e.remarks)
        except BrokerUnavailable as e:
            return ExecResult("CANCEL_FAILED", {"order_id": order_id, "error": str(e)})

        if cancelled:
            self.tracker.complete(order_id, OrderStatus.CANCELLED)
            return ExecResult("CANCELLED", {"order_id": order_id, "status": OrderStatus.CANCELLED.value})

        try:
            upd = gateway.get_order(order_id)
        except (OrderRejected, BrokerUnavailable) as e:
            return ExecResult("CANCEL_FAILED", {"order_id": order_id, "error": str(e)})

        if upd.status in TERMINAL_ORDER_STATUSES:
            return ExecResult(
                "ALREADY_TERMINAL",
                {"order_id": order_id, "status": upd.status.value, "update": upd},
            )
        return ExecResult("CANCEL_FAILED", {"order_id": order_id, "status": upd.status.value})
