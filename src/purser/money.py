"""Fixed-precision USD helpers; spend is tracked in integer micro-dollars."""

from __future__ import annotations

from decimal import Decimal, ROUND_CEILING, ROUND_FLOOR


MICROS_PER_USD = 1_000_000
_QUANT = Decimal("0.000001")


def cost_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a cost to micro-dollars, rounding up so spend is never understated."""
    dec = Decimal(str(value)).quantize(_QUANT, rounding=ROUND_CEILING)
    return int(dec * MICROS_PER_USD)


def limit_to_micros(value: Decimal | float | int | str) -> int:
    """Convert a limit to micro-dollars, rounding down so limits are never overstated."""
    dec = Decimal(str(value)).quantize(_QUANT, rounding=ROUND_FLOOR)
    return int(dec * MICROS_PER_USD)


def micros_to_usd(value: int) -> float:
    return float((Decimal(value) / Decimal(MICROS_PER_USD)).quantize(_QUANT))


def format_usd(value: float, places: int = 2) -> str:
    return f"${value:,.{places}f}"
