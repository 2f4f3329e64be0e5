from __future__ import annotations

from typing import Any, Optional


class ConfigurationError(ValueError):
    """Trading parameters that can never produce a valid order."""


class OrderRejected(Exception):
    """Broker refused the request. Terminal for this attempt."""

    def __init__(self, remarks: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(remarks)
        self.remarks = remarks
        self.status_code = status_code
        self.payload = payload


class BrokerUnavailable(RuntimeError):
    """Network/5xx failure that survived every retry."""


class HmaServiceError(RuntimeError):
    """HMA service could not produce a value."""
