"""Exact decimal helpers for every money field.

Arithmetic runs in the Decimal128 context (34 significant digits) so values
computed here survive a round-trip through the document store unchanged.
"""

from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Final

from bson.decimal128 import Decimal128, create_decimal128_context

MONEY_PLACES: Final[int] = 4
DECIMAL128_CONTEXT = create_decimal128_context()

DecimalLike = Decimal | Decimal128 | int | str | float


def to_decimal(value: DecimalLike) -> Decimal:
    """Coerce ``value`` into a finite :class:`Decimal`.

    Floats go through their shortest repr (``0.1`` becomes ``Decimal("0.1")``)
    rather than their binary expansion.
    """

    if isinstance(value, bool):
        raise ValueError(f"Boolean {value!r} is not a decimal amount")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, Decimal128):
        result = value.to_decimal()
    elif isinstance(value, int):
        result = Decimal(value)
    elif isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Non-finite amount {value!r}")
        result = Decimal(repr(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid decimal string {value!r}") from exc
    else:
        raise ValueError(f"Unsupported decimal type {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"Non-finite amount {value!r}")
    return result


def quantize(value: DecimalLike, places: int = MONEY_PLACES) -> Decimal:
    """Round ``value`` half-up to ``places`` fractional digits."""

    exponent = Decimal(1).scaleb(-places)
    return to_decimal(value).quantize(exponent, rounding=ROUND_HALF_UP, context=DECIMAL128_CONTEXT)


def multiply(left: DecimalLike, right: DecimalLike) -> Decimal:
    return DECIMAL128_CONTEXT.multiply(to_decimal(left), to_decimal(right))


def divide(dividend: DecimalLike, divisor: DecimalLike) -> Decimal:
    return DECIMAL128_CONTEXT.divide(to_decimal(dividend), to_decimal(divisor))


def to_decimal128(value: DecimalLike) -> Decimal128:
    """Wrap ``value`` in the store's native high-precision decimal."""

    return Decimal128(DECIMAL128_CONTEXT.create_decimal(to_decimal(value)))


def from_decimal128(value: DecimalLike | None) -> Decimal | None:
    if value is None:
        return None
    return to_decimal(value)


__all__ = [
    "MONEY_PLACES",
    "DECIMAL128_CONTEXT",
    "DecimalLike",
    "to_decimal",
    "quantize",
    "multiply",
    "divide",
    "to_decimal128",
    "from_decimal128",
]
