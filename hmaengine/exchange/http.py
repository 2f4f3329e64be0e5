from __future__ import annotations

import json
import logging
import random
import time
from typing import Any, Dict, Optional

import requests

log = logging.getLogger("hmaengine.http")


def _remarks(r: requests.Response) -> str:
    try:
        data = r.json()
    except ValueError:
        return (r.text or "").strip() or f"HTTP {r.status_code}"
    if isinstance(data, dict):
        for key in ("remarks", "message", "error", "detail"):
            if data.get(key):
                return str(data[key])
    return json.dumps(data, ensure_ascii=False)


class RetryingHttpClient:
    """
    requests-based JSON client with bounded retries.

    Timeouts, connection errors, 429/418 and 5xx are retried with capped
    exponential backoff plus jitter. Other 4xx answers are not retried.
    """

    service_name = "HTTP"

    def __init__(self, base_url: str, timeout_s: float = 15.0, max_retries: int = 3):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout_s = float(timeout_s)
        self.max_retries = int(max_retries)

    # ---- hooks ----
    def _headers(self, method: str, path: str, params: Dict[str, Any], body: str) -> Dict[str, str]:
        return {"Content-Type": "application/json"} if body else {}

    def _client_error(self, r: requests.Response) -> Exception:
        return RuntimeError(f"{self.service_name} HTTP {r.status_code}: {_remarks(r)}")

    def _unavailable(self, message: str) -> Exception:
        return RuntimeError(message)

    def _encode_body(self, body: Optional[dict]) -> str:
        return json.dumps(body) if body else ""

    @staticmethod
    def _backoff(attempt: int) -> float:
        return min(0.4 * (2**attempt), 8.0)

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        body: Optional[dict] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        params = dict(params or {})
        payload = self._encode_body(body)

        last_err: Any = None
        for attempt in range(self.max_retries + 1):
            is_last = attempt >= self.max_retries
            try:
                headers = self._headers(method, path, params, payload)
                r = requests.request(
                    method,
                    url,
                    params=params or None,
                    data=payload or None,
                    headers=headers,
                    timeout=self.timeout_s,
                )

                # Rate limit / temp ban
                if r.status_code in (418, 429):
                    last_err = f"HTTP {r.status_code}"
                    if not is_last:
                        ra = r.headers.get("Retry-After")
                        sleep_s = float(ra) if ra else self._backoff(attempt)
                        sleep_s += random.uniform(0, 0.2)
                        time.sleep(min(sleep_s, 10.0))
                    continue

                # Server errors
                if r.status_code >= 500:
                    last_err = f"HTTP {r.status_code}: {_remarks(r)}"
                    if not is_last:
                        time.sleep(self._backoff(attempt))
                    continue

                if r.status_code >= 400:
                    raise self._client_error(r)

                return r.json() if r.content else None

            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = e
                log.warning(
                    "%s %s %s attempt %d failed: %s",
                    self.service_name, method, path, attempt + 1, e,
                )
                if not is_last:
                    time.sleep(self._backoff(attempt))
                continue

        raise self._unavailable(
            f"{self.service_name} request failed after retries: {method} {path} ({last_err})"
        )
