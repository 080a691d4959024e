"""Numeric helper utilities for money and quantities."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

__all__ = ["MINOR_UNIT_EXPONENTS", "quantize_money", "safe_decimal", "to_minor_units"]

# Currencies without the usual two decimal places.
MINOR_UNIT_EXPONENTS = {
    "bif": 0,
    "clp": 0,
    "jpy": 0,
    "krw": 0,
    "vnd": 0,
    "bhd": 3,
    "kwd": 3,
    "omr": 3,
}


def _exponent_for(currency: Optional[str]) -> int:
    if not currency:
        return 2
    return MINOR_UNIT_EXPONENTS.get(currency.lower(), 2)


def safe_decimal(value: Any) -> Optional[Decimal]:
    """Best-effort conversion to Decimal returning None on failure.

    Floats are routed through ``str`` so ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion.
    """

    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        return None
    try:
        if isinstance(value, float):
            return Decimal(str(value))
        return Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return None


def quantize_money(amount: Any, currency: Optional[str] = None) -> Decimal:
    """Round an amount to the currency's minor unit using round-half-up."""

    value = safe_decimal(amount)
    if value is None:
        raise ValueError(f"Not a monetary amount: {amount!r}")
    exponent = _exponent_for(currency)
    step = Decimal(1).scaleb(-exponent)
    return value.quantize(step, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Any, currency: Optional[str] = None) -> int:
    """Convert a major-unit amount into an integer count of minor units."""

    exponent = _exponent_for(currency)
    quantized = quantize_money(amount, currency)
    return int(quantized.scaleb(exponent))
