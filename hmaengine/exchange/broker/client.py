from __future__ import annotations

import time
from typing import Any, Dict, Optional

import requests

from hmaengine.exchange.broker.signing import build_query, sign, string_to_sign, canonical_body
from hmaengine.exchange.errors import BrokerUnavailable, OrderRejected
from hmaengine.exchange.http import RetryingHttpClient, _remarks
from hmaengine.runner.models import OrderStatus, OrderUpdate

# Broker vocabularies vary; everything maps onto four engine statuses
_STATUS_MAP = {
    "PENDING": OrderStatus.PENDING,
    "OPEN": OrderStatus.PENDING,
    "NEW": OrderStatus.PENDING,
    "TRIGGER_PENDING": OrderStatus.PENDING,
    "PARTIALLY_FILLED": OrderStatus.PENDING,
    "FILLED": OrderStatus.FILLED,
    "COMPLETE": OrderStatus.FILLED,
    "TRADED": OrderStatus.FILLED,
    "REJECTED": OrderStatus.REJECTED,
    "CANCELLED": OrderStatus.CANCELLED,
    "CANCELED": OrderStatus.CANCELLED,
    "EXPIRED": OrderStatus.CANCELLED,
}


def parse_order_update(order_id: str, data: Dict[str, Any]) -> OrderUpdate:
    raw = str(data.get("status") or "PENDING").upper()
    status = _STATUS_MAP.get(raw, OrderStatus.PENDING)
    fill = data.get("fill_price", data.get("average_price"))
    try:
        fill_price = float(fill) if fill not in (None, "") else None
    except (TypeError, ValueError):
        fill_price = None
    reason = data.get("reject_reason") or data.get("remarks") or data.get("message")
    return OrderUpdate(
        order_id=str(data.get("order_id") or order_id),
        status=status,
        fill_price=fill_price,
        reject_reason=str(reason) if reason and status == OrderStatus.REJECTED else None,
    )


class BrokerRestClient(RetryingHttpClient):
    """
    Generic signed REST gateway:
      POST   /orders            -> {"order_id": "..."}
      DELETE /orders/{id}       -> {"status": "CANCELLED"}
      GET    /orders/{id}       -> {"status": "...", "fill_price": ..., "reject_reason": ...}
    """

    service_name = "Broker"

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        timeout_s: float = 15.0,
        max_retries: int = 3,
    ):
        super().__init__(base_url, timeout_s=timeout_s, max_retries=max_retries)
        self.api_key = api_key
        self.api_secret = api_secret

    def _encode_body(self, body: Optional[dict]) -> str:
        return canonical_body(body)

    def _headers(self, method: str, path: str, params: Dict[str, Any], body: str) -> Dict[str, str]:
        if not self.api_key or not self.api_secret:
            raise ValueError("Missing BROKER_API_KEY or BROKER_API_SECRET in .env")
        ts = int(time.time() * 1000)
        payload = string_to_sign(ts, method, path, build_query(params), body)
        headers = {
            "X-API-KEY": self.api_key,
            "X-TIMESTAMP": str(ts),
            "X-SIGNATURE": sign(self.api_secret, payload),
        }
        if body:
            headers["Content-Type"] = "application/json"
        return headers

    def _client_error(self, r: requests.Response) -> Exception:
        payload = None
        try:
            payload = r.json()
        except ValueError:
            pass
        return OrderRejected(_remarks(r), status_code=r.status_code, payload=payload)

    def _unavailable(self, message: str) -> Exception:
        return BrokerUnavailable(message)

    # ---------------- PUBLIC ----------------

    def ping(self) -> dict:
        return self._request("GET", "/ping") or {}

    # ---------------- TRADING ----------------

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
        body: Dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "quantity": int(quantity),
            "order_type": order_type,
            "product_type": product_type,
        }
        if limit_price is not None:
            body["limit_price"] = float(limit_price)
        if trigger_price is not None:
            body["trigger_price"] = float(trigger_price)

        data = self._request("POST", "/orders", body=body) or {}
        order_id = data.get("order_id") or data.get("id")
        if not order_id:
            raise OrderRejected(_missing_id_remarks(data), payload=data)
        return str(order_id)

    def cancel_order(self, order_id: str) -> bool:
        data = self._request("DELETE", f"/orders/{order_id}") or {}
        status = str(data.get("status") or "CANCELLED").upper()
        return _STATUS_MAP.get(status) == OrderStatus.CANCELLED

    def get_order(self, order_id: str) -> OrderUpdate:
        data = self._request("GET", f"/orders/{order_id}") or {}
        return parse_order_update(order_id, data)


def _missing_id_remarks(data: Any) -> str:
    if isinstance(data, dict):
        for key in ("remarks", "message", "error"):
            if data.get(key):
                return str(data[key])
    return "Broker response did not include an order id"
