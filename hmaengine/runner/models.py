# hmaengine/runner/models.py
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional


class TriggerStatus(str, Enum):
    WAITING_FOR_REVERSAL = "WAITING_FOR_REVERSAL"
    CONFIRMING_REVERSAL = "CONFIRMING_REVERSAL"
    WAITING_FOR_ENTRY = "WAITING_FOR_ENTRY"
    CONFIRMING_ENTRY = "CONFIRMING_ENTRY"
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_REJECTED = "ORDER_REJECTED"
    ORDER_CANCELLED = "ORDER_CANCELLED"


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    TARGET_EXIT_PENDING = "TARGET_EXIT_PENDING"
    TARGET_EXIT_EXECUTED = "TARGET_EXIT_EXECUTED"
    TARGET_EXIT_FAILED = "TARGET_EXIT_FAILED"
    SL_EXIT_PENDING = "SL_EXIT_PENDING"
    SL_HIT = "SL_HIT"
    SL_EXIT_FAILED = "SL_EXIT_FAILED"
    MANUAL_EXIT_PENDING = "MANUAL_EXIT_PENDING"
    MANUAL_EXIT_EXECUTED = "MANUAL_EXIT_EXECUTED"
    MANUAL_EXIT_FAILED = "MANUAL_EXIT_FAILED"


class OptionType(str, Enum):
    CE = "CE"
    PE = "PE"


class TradingMode(str, Enum):
    LIVE = "LIVE"
    PAPER = "PAPER"


class OrderType(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    SL_LIMIT = "SL_LIMIT"


class ProductType(str, Enum):
    INTRADAY = "INTRADAY"
    MARGIN = "MARGIN"
    CNC = "CNC"


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    FILLED = "FILLED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class OrderPurpose(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"
    STOP = "STOP"


class ExitReason(str, Enum):
    TARGET = "TARGET"
    STOPLOSS = "STOPLOSS"
    MANUAL = "MANUAL"


class ModificationType(str, Enum):
    BUY_ORDER_HMA_UPDATE = "BUY_ORDER_HMA_UPDATE"
    SELL_ORDER_SL_UPDATE = "SELL_ORDER_SL_UPDATE"


class PriceSide(str, Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"


TERMINAL_ORDER_STATUSES = {OrderStatus.FILLED, OrderStatus.REJECTED, OrderStatus.CANCELLED}

PENDING_EXIT_STATUS = {
    ExitReason.TARGET: PositionStatus.TARGET_EXIT_PENDING,
    ExitReason.STOPLOSS: PositionStatus.SL_EXIT_PENDING,
    ExitReason.MANUAL: PositionStatus.MANUAL_EXIT_PENDING,
}
EXECUTED_EXIT_STATUS = {
    ExitReason.TARGET: PositionStatus.TARGET_EXIT_EXECUTED,
    ExitReason.STOPLOSS: PositionStatus.SL_HIT,
    ExitReason.MANUAL: PositionStatus.MANUAL_EXIT_EXECUTED,
}
FAILED_EXIT_STATUS = {
    ExitReason.TARGET: PositionStatus.TARGET_EXIT_FAILED,
    ExitReason.STOPLOSS: PositionStatus.SL_EXIT_FAILED,
    ExitReason.MANUAL: PositionStatus.MANUAL_EXIT_FAILED,
}


def new_id() -> str:
    return str(uuid.uuid4())


def _known(cls, d: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in d.items() if k in names}


@dataclass(frozen=True)
class TradingParams:
    """Per-symbol trading parameters, validated before a symbol is monitored."""

    lots: int
    quantity: int
    target_points: float
    stop_loss_points: float
    product_type: ProductType = ProductType.INTRADAY
    order_type: OrderType = OrderType.MARKET
    trading_mode: TradingMode = TradingMode.PAPER
    trailing_stop_loss: bool = False  # trail-to-cost
    use_trailing_stoploss: bool = False  # X/Y interval trailing
    trailing_x: float = 20.0
    trailing_y: float = 15.0
    auto_exit_on_stop_loss: bool = True
    max_re_entries: int = 0

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "TradingParams":
        d = _known(cls, d)
        d["product_type"] = ProductType(d.get("product_type", ProductType.INTRADAY))
        d["order_type"] = OrderType(d.get("order_type", OrderType.MARKET))
        d["trading_mode"] = TradingMode(d.get("trading_mode", TradingMode.PAPER))
        return cls(**d)


@dataclass
class PendingSignal:
    direction: str  # REVERSAL | ENTRY
    triggered_at: float
    hma_at_trigger: float
    confirmation_end_time: float


@dataclass
class MonitoredSymbol:
    id: str
    symbol: str
    option_type: OptionType
    params: TradingParams

    # market state
    current_ltp: Optional[float] = None
    hma_value: Optional[float] = None
    hma_last_candle_ts: Optional[int] = None

    # lifecycle
    trigger_status: TriggerStatus = TriggerStatus.WAITING_FOR_REVERSAL
    pending_signal: Optional[PendingSignal] = None
    re_entry_count: int = 0

    # order linkage
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    order_modification_count: int = 0
    order_modification_reason: Optional[str] = None
    rejection_category: Optional[str] = None
    rejection_message: Optional[str] = None

    # internal
    last_side: Optional[PriceSide] = None
    last_tick_at: Optional[float] = None
    flagged: bool = False
    last_error: Optional[str] = None
    created_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MonitoredSymbol":
        d = _known(cls, d)
        d["option_type"] = OptionType(d["option_type"])
        d["params"] = TradingParams.from_dict(d["params"])
        d["trigger_status"] = TriggerStatus(d.get("trigger_status", TriggerStatus.WAITING_FOR_REVERSAL))
        if d.get("pending_signal"):
            d["pending_signal"] = PendingSignal(**d["pending_signal"])
        if d.get("last_side"):
            d["last_side"] = PriceSide(d["last_side"])
        return cls(**d)


@dataclass
class SlModification:
    timestamp: float
    old_stop_loss: float
    new_stop_loss: float
    reason: str


@dataclass
class SlOrderDetails:
    order_id: str
    stop_price: float
    trigger_price: float
    placed_at: float


@dataclass
class ActivePosition:
    id: str
    symbol: str
    option_type: OptionType
    params: TradingParams
    buy_order_id: Optional[str]
    bought_price: float
    quantity: int
    initial_stop_loss: float
    stop_loss: float
    target: float

    sell_order_id: Optional[str] = None
    current_ltp: Optional[float] = None
    hma_value: Optional[float] = None
    hma_last_candle_ts: Optional[int] = None
    re_entry_count: int = 0
    sl_modifications: List[SlModification] = field(default_factory=list)
    sl_order_details: Optional[SlOrderDetails] = None

    order_status: PositionStatus = PositionStatus.OPEN
    exit_reason: Optional[ExitReason] = None
    exit_attempts: int = 0
    last_error: Optional[str] = None
    last_tick_at: Optional[float] = None
    opened_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ActivePosition":
        d = _known(cls, d)
        d["option_type"] = OptionType(d["option_type"])
        d["params"] = TradingParams.from_dict(d["params"])
        d["sl_modifications"] = [SlModification(**m) for m in d.get("sl_modifications") or []]
        if d.get("sl_order_details"):
            d["sl_order_details"] = SlOrderDetails(**d["sl_order_details"])
        d["order_status"] = PositionStatus(d.get("order_status", PositionStatus.OPEN))
        if d.get("exit_reason"):
            d["exit_reason"] = ExitReason(d["exit_reason"])
        return cls(**d)


@dataclass
class PendingOrder:
    id: str
    order_id: str
    symbol: str
    record_id: str
    side: OrderSide
    order_type: OrderType
    purpose: OrderPurpose
    quantity: int
    trading_mode: TradingMode
    bought_price: Optional[float] = None  # limit/trigger basis
    trigger_price: Optional[float] = None
    hma_value: Optional[float] = None
    order_modification_count: int = 0
    submitted_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PendingOrder":
        d = _known(cls, d)
        d["side"] = OrderSide(d["side"])
        d["order_type"] = OrderType(d["order_type"])
        d["purpose"] = OrderPurpose(d["purpose"])
        d["trading_mode"] = TradingMode(d.get("trading_mode", TradingMode.PAPER))
        return cls(**d)


@dataclass
class OrderModification:
    symbol: str
    record_id: str
    modification_type: ModificationType
    old_hma_value: Optional[float]
    new_hma_value: Optional[float]
    old_limit_price: Optional[float]
    new_limit_price: Optional[float]
    old_order_id: Optional[str]
    new_order_id: Optional[str]
    reason: str
    timestamp: float


@dataclass(frozen=True)
class OrderUpdate:
    order_id: str
    status: OrderStatus
    fill_price: Optional[float] = None
    reject_reason: Optional[str] = None


@dataclass(frozen=True)
class Tick:
    symbol: str
    ltp: float
    timestamp: float


@dataclass
class ClosedTrade:
    position_id: str
    symbol: str
    option_type: OptionType
    bought_price: float
    exit_price: float
    quantity: int
    exit_reason: ExitReason
    exit_time: float
    pnl: float
    re_entry_count: int
    buy_order_id: Optional[str] = None
    sell_order_id: Optional[str] = None
