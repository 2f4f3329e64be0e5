from __future__ import annotations

import re
from typing import List, Optional

_TRADING_SYMBOL = re.compile(r"^[A-Z0-9][A-Z0-9&_\-]*$")
_UNDERLYING = re.compile(r"^([A-Z&]+)")


def normalize_symbol(raw: str, exchanges: List[str], default_exchange: str = "NSE") -> str:
    """
    Canonical instrument id: EXCHANGE:TRADINGSYMBOL, uppercase, no spaces.
      "nse:nifty25aug24500ce" -> "NSE:NIFTY25AUG24500CE"
      "NIFTY25AUG24500CE"     -> "NSE:NIFTY25AUG24500CE"
    Raises ValueError for malformed symbols or unknown exchanges.
    """
    s = "".join(str(raw or "").split()).upper()
    if not s:
        raise ValueError("symbol is required")

    if ":" in s:
        exchange, trading = s.split(":", 1)
    else:
        exchange, trading = default_exchange.upper(), s

    allowed = {e.upper() for e in exchanges}
    if allowed and exchange not in allowed:
        raise ValueError(f"unknown exchange '{exchange}' (allowed: {sorted(allowed)})")
    if not _TRADING_SYMBOL.match(trading):
        raise ValueError(f"malformed trading symbol '{trading}'")
    return f"{exchange}:{trading}"


def option_type_of(symbol: str) -> Optional[str]:
    trading = symbol.split(":", 1)[-1]
    if trading.endswith("CE"):
        return "CE"
    if trading.endswith("PE"):
        return "PE"
    return None


def underlying_of(symbol: str) -> str:
    trading = symbol.split(":", 1)[-1]
    m = _UNDERLYING.match(trading)
    return m.group(1) if m else trading
