from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, ROUND_UP


def _to_decimal(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def _round(px: float, tick_size, rounding) -> Decimal:
    p = Decimal(str(px))
    tick = _to_decimal(tick_size)
    if tick <= 0:
        return p
    return (p / tick).to_integral_value(rounding=rounding) * tick


def round_price(px: float, tick_size) -> Decimal:
    """Round price DOWN to nearest valid tick size."""
    return _round(px, tick_size, ROUND_DOWN)


def round_price_up(px: float, tick_size) -> Decimal:
    return _round(px, tick_size, ROUND_UP)


def round_price_nearest(px: float, tick_size) -> Decimal:
    return _round(px, tick_size, ROUND_HALF_UP)


def _float_quantize(value: Decimal, step) -> float:
    """
    Convert Decimal -> float but quantize to the step's decimal places
    so 104.95000000000002 style artefacts never reach the broker.
    """
    step_d = _to_decimal(step)
    places = max(0, -step_d.as_tuple().exponent)
    return float(value.quantize(Decimal("1").scaleb(-places)))


def price_to_tick(price: float, tick_size: float, mode: str = "nearest") -> float:
    """mode: nearest | down | up"""
    if mode == "down":
        out = round_price(price, tick_size)
    elif mode == "up":
        out = round_price_up(price, tick_size)
    else:
        out = round_price_nearest(price, tick_size)
    return _float_quantize(out, tick_size)
