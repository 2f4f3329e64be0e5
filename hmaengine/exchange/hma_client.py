from __future__ import annotations

import math
from typing import Any, Dict

import requests

from hmaengine.exchange.errors import HmaServiceError
from hmaengine.exchange.http import RetryingHttpClient, _remarks


class HmaServiceClient(RetryingHttpClient):
    """
    Client for the external HMA calculator.
      GET /hma?symbol=NSE:NIFTY25AUG24500CE&period=55 -> {"hma": 101.25, ...}
    """

    service_name = "HMA service"

    def __init__(self, base_url: str, period: int = 55, timeout_s: float = 15.0, max_retries: int = 3):
        super().__init__(base_url, timeout_s=timeout_s, max_retries=max_retries)
        self.period = int(period)

    def _client_error(self, r: requests.Response) -> Exception:
        return HmaServiceError(f"HMA service HTTP {r.status_code}: {_remarks(r)}")

    def _unavailable(self, message: str) -> Exception:
        return HmaServiceError(message)

    def get_hma(self, symbol: str) -> float:
        if not self.base_url:
            raise HmaServiceError("HMA_SERVICE_URL is not configured")
        data: Dict[str, Any] = self._request(
            "GET", "/hma", params={"symbol": symbol, "period": self.period}
        ) or {}
        raw = data.get("hma", data.get("value"))
        try:
            value = float(raw)
        except (TypeError, ValueError):
            raise HmaServiceError(f"HMA service returned no value for {symbol}: {data}")
        if not math.isfinite(value) or value <= 0:
            raise HmaServiceError(f"HMA service returned invalid value for {symbol}: {raw}")
        return value
