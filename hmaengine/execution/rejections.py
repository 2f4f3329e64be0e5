# hmaengine/execution/rejections.py
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Pattern, Tuple


class RejectionCategory(str, Enum):
    CONTRACT_BLOCKED_NEAR_EXPIRY = "CONTRACT_BLOCKED_NEAR_EXPIRY"
    POSITION_LIMIT_EXCEEDED = "POSITION_LIMIT_EXCEEDED"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    MARKET_CLOSED = "MARKET_CLOSED"
    INVALID_SYMBOL = "INVALID_SYMBOL"
    TICK_SIZE_VIOLATION = "TICK_SIZE_VIOLATION"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class Rejection:
    category: RejectionCategory
    message: str
    remarks: str


_MESSAGES = {
    RejectionCategory.CONTRACT_BLOCKED_NEAR_EXPIRY: "Contract is blocked for new orders close to expiry.",
    RejectionCategory.POSITION_LIMIT_EXCEEDED: "Order quantity exceeds the freeze or position limit.",
    RejectionCategory.INSUFFICIENT_FUNDS: "Insufficient funds or margin for this order.",
    RejectionCategory.MARKET_CLOSED: "Market is closed for this instrument.",
    RejectionCategory.INVALID_SYMBOL: "Instrument is invalid or not tradable.",
    RejectionCategory.TICK_SIZE_VIOLATION: "Order price is not a multiple of the tick size.",
    RejectionCategory.REJECTED: "Order rejected by broker.",
}

# First match wins
_RULES: List[Tuple[RejectionCategory, Pattern[str]]] = [
    (
        RejectionCategory.CONTRACT_BLOCKED_NEAR_EXPIRY,
        re.compile(
            r"(block|restrict|not allowed|disabled)\w*.*expir"
            r"|expir\w*.*(block|restrict|not allowed|disabled)"
            r"|\bcontract\b.*\bblocked\b",
            re.IGNORECASE,
        ),
    ),
    (
        RejectionCategory.POSITION_LIMIT_EXCEEDED,
        re.compile(
            r"freeze\s*(qty|quantity)"
            r"|position\s+limit"
            r"|limit\s+exceeded"
            r"|exceeds?\s+(the\s+)?(max|maximum)\s+(order\s+)?(quantity|qty|position)",
            re.IGNORECASE,
        ),
    ),
    (
        RejectionCategory.INSUFFICIENT_FUNDS,
        re.compile(
            r"insufficient\s+(funds?|margin|balance)"
            r"|margin\s+shortfall"
            r"|not\s+enough\s+(funds?|margin|balance)",
            re.IGNORECASE,
        ),
    ),
    (
        RejectionCategory.MARKET_CLOSED,
        re.compile(
            r"market\s+(is\s+)?closed"
            r"|outside\s+(market|trading)\s+hours"
            r"|exchange\s+(is\s+)?closed"
            r"|not\s+open\s+for\s+trading",
            re.IGNORECASE,
        ),
    ),
    (
        RejectionCategory.INVALID_SYMBOL,
        re.compile(
            r"invalid\s+(symbol|instrument|scrip|token)"
            r"|(symbol|instrument)\s+not\s+found"
            r"|(unknown|no\s+such)\s+(symbol|instrument)",
            re.IGNORECASE,
        ),
    ),
    (
        RejectionCategory.TICK_SIZE_VIOLATION,
        re.compile(r"tick\s*size|multiples?\s+of\s+(the\s+)?tick", re.IGNORECASE),
    ),
]


def classify_rejection(remarks: Optional[str]) -> Rejection:
    """Best-effort mapping of broker remarks to a fixed category."""
    text = (remarks or "").strip()
    for category, pattern in _RULES:
        if pattern.search(text):
            return Rejection(category=category, message=_MESSAGES[category], remarks=text)
    return Rejection(
        category=RejectionCategory.REJECTED,
        message=_MESSAGES[RejectionCategory.REJECTED],
        remarks=text,
    )
