# hmaengine/core/config.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

log = logging.getLogger("hmaengine.config")


def _parse_list(v: Any) -> List[str]:
    """
    Accepts:
      - list: ["NSE","NFO"]
      - csv:  "NSE,NFO"
      - json: '["NSE","NFO"]'
    Returns uppercase, trimmed values.
    """
    if v is None:
        return []
    if isinstance(v, list):
        return [str(x).strip().upper() for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [str(x).strip().upper() for x in arr if str(x).strip()]
        except ValueError:
            # fall back to csv parse
            pass
    return [p.strip().upper() for p in s.split(",") if p.strip()]


def _parse_kv_int(v: Any) -> Dict[str, int]:
    """
    Accepts:
      - dict: {"NIFTY": 75}
      - csv:  "NIFTY:75,BANKNIFTY:35"
      - json: '{"NIFTY":75,"BANKNIFTY":35}'
    """
    if v is None:
        return {}
    if isinstance(v, dict):
        out: Dict[str, int] = {}
        for k, val in v.items():
            ks = str(k).strip().upper()
            if not ks:
                continue
            try:
                out[ks] = int(val)
            except (TypeError, ValueError):
                continue
        return out

    s = str(v).strip()
    if not s:
        return {}

    if s.startswith("{"):
        try:
            raw = json.loads(s)
            if isinstance(raw, dict):
                return _parse_kv_int(raw)
        except ValueError:
            pass

    out: Dict[str, int] = {}
    for part in s.split(","):
        part = part.strip()
        if not part or ":" not in part:
            continue
        k, val = part.split(":", 1)
        k = k.strip().upper()
        if not k:
            continue
        try:
            out[k] = int(val.strip())
        except ValueError:
            continue
    return out


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps List/Dict fields out of pydantic-settings' json decoding.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Execution ---
    EXECUTION_MODE: str = "paper"  # paper/live

    # --- Broker gateway ---
    BROKER_BASE_URL: str = "http://127.0.0.1:9000"
    BROKER_API_KEY: str = ""
    BROKER_API_SECRET: str = ""
    EXCHANGES: List[str] = Field(default_factory=lambda: ["NSE", "NFO", "BSE", "BFO"])

    # --- HMA service ---
    HMA_SERVICE_URL: str = "http://127.0.0.1:9100"
    HMA_PERIOD: int = 55

    # --- Confirmation timing ---
    REVERSAL_CONFIRM_MINUTES: int = 15
    CANDLE_MINUTES: int = 5
    ENTRY_DEADLINE_SECOND: int = 59
    HMA_RETRY_SECONDS: int = 5
    HMA_REFRESH_SETTLE_SECONDS: float = 2.0

    # --- HTTP ---
    HTTP_TIMEOUT_SECONDS: float = 15.0
    HTTP_MAX_RETRIES: int = 3

    # --- Sizing ---
    DEFAULT_LOT_SIZE: int = 75
    LOT_SIZE_MAP: Dict[str, int] = Field(default_factory=dict)
    TICK_SIZE: float = 0.05

    # --- Re-entry / exits ---
    MAX_RE_ENTRIES: int = 0
    PLACE_SL_ORDER: bool = True
    SL_LIMIT_BUFFER: float = 1.0
    EXIT_CONFIRM_TIMEOUT_SECONDS: float = 10.0
    MAX_EXIT_ATTEMPTS: int = 3

    # --- Loops ---
    TIMER_SWEEP_SECONDS: float = 1.0
    ORDER_POLL_SECONDS: float = 2.0
    SHUTDOWN_TIMEOUT_SECONDS: float = 10.0
    RECORD_LOCK_TIMEOUT_SECONDS: float = 10.0

    # --- Storage / logs ---
    DB_PATH: str = "data/hmaengine.db"
    AUDIT_JSONL_PATH: str = "logs/engine_audit.jsonl"
    LOG_LEVEL: str = "INFO"

    @field_validator("EXCHANGES", mode="before")
    @classmethod
    def parse_exchanges(cls, v: Any) -> List[str]:
        return _parse_list(v)

    @field_validator("LOT_SIZE_MAP", mode="before")
    @classmethod
    def parse_lot_size_map(cls, v: Any) -> Dict[str, int]:
        return _parse_kv_int(v)

    def model_post_init(self, __context: Any) -> None:
        self.EXECUTION_MODE = (self.EXECUTION_MODE or "paper").lower().strip()
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()
        self.BROKER_BASE_URL = (self.BROKER_BASE_URL or "").strip().rstrip("/")
        self.HMA_SERVICE_URL = (self.HMA_SERVICE_URL or "").strip().rstrip("/")

    @property
    def is_live(self) -> bool:
        return self.EXECUTION_MODE == "live"

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.EXECUTION_MODE not in {"paper", "live"}:
            errors.append("EXECUTION_MODE must be 'paper' or 'live'.")

        # Candle arithmetic relies on boundaries that divide the hour
        if self.CANDLE_MINUTES <= 0 or 60 % self.CANDLE_MINUTES != 0:
            errors.append("CANDLE_MINUTES must be a positive divisor of 60.")
        if not 0 <= self.ENTRY_DEADLINE_SECOND <= 59:
            errors.append("ENTRY_DEADLINE_SECOND must be within 0..59.")
        if self.REVERSAL_CONFIRM_MINUTES <= 0:
            errors.append("REVERSAL_CONFIRM_MINUTES must be > 0.")
        if self.HMA_RETRY_SECONDS <= 0:
            errors.append("HMA_RETRY_SECONDS must be > 0.")
        if self.HMA_PERIOD <= 1:
            errors.append("HMA_PERIOD must be > 1.")

        if self.HTTP_TIMEOUT_SECONDS <= 0:
            errors.append("HTTP_TIMEOUT_SECONDS must be > 0.")
        if self.HTTP_MAX_RETRIES < 0:
            errors.append("HTTP_MAX_RETRIES must be >= 0.")

        if self.DEFAULT_LOT_SIZE <= 0:
            errors.append("DEFAULT_LOT_SIZE must be > 0.")
        bad_lots = sorted(k for k, v in self.LOT_SIZE_MAP.items() if v <= 0)
        if bad_lots:
            errors.append(f"LOT_SIZE_MAP has non-positive lot sizes: {bad_lots}")
        if self.TICK_SIZE <= 0:
            errors.append("TICK_SIZE must be > 0.")

        if not 0 <= self.MAX_RE_ENTRIES <= 3:
            errors.append("MAX_RE_ENTRIES must be within 0..3.")
        if self.MAX_EXIT_ATTEMPTS < 1:
            errors.append("MAX_EXIT_ATTEMPTS must be >= 1.")
        if self.SL_LIMIT_BUFFER < 0:
            errors.append("SL_LIMIT_BUFFER must be >= 0.")

        if self.TIMER_SWEEP_SECONDS <= 0 or self.ORDER_POLL_SECONDS <= 0:
            errors.append("TIMER_SWEEP_SECONDS and ORDER_POLL_SECONDS must be > 0.")

        if self.LOG_LEVEL not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            warnings.append(f"LOG_LEVEL '{self.LOG_LEVEL}' is not a standard level; INFO is used.")

        if not self.HMA_SERVICE_URL:
            warnings.append("HMA_SERVICE_URL is empty. HMA values must be pushed manually.")

        if self.EXECUTION_MODE == "live":
            if not self.BROKER_API_KEY or not self.BROKER_API_SECRET:
                errors.append("EXECUTION_MODE=live requires BROKER_API_KEY and BROKER_API_SECRET.")
            if not self.BROKER_BASE_URL:
                errors.append("EXECUTION_MODE=live requires BROKER_BASE_URL.")
            # Safety warning for real money
            warnings.append(
                "EXECUTION_MODE=live will route LIVE symbols to the broker with REAL money."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
