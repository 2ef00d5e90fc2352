"""Stateless conversions between a local currency and the peg currency."""

from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from fair_marketplace.pricing.decimal_value import (
    MONEY_PLACES,
    DecimalLike,
    divide,
    multiply,
    quantize,
    to_decimal,
)


class RateSource(Protocol):
    """Anything exposing the peg currency and a ``rate_for`` lookup."""

    peg_currency: str

    def rate_for(self, currency: str) -> Decimal:
        ...  # pragma: no cover - protocol definition


def to_peg(
    amount: DecimalLike, currency: str, rates: RateSource, *, places: int = MONEY_PLACES
) -> Decimal:
    """Convert ``amount`` in ``currency`` to the peg currency.

    Peg amounts come back unchanged; everything else is multiplied by the
    cached rate and rounded to ``places`` fractional digits.
    """

    value = to_decimal(amount)
    if currency == rates.peg_currency:
        return value
    return quantize(multiply(value, rates.rate_for(currency)), places)


def from_peg(
    peg_amount: DecimalLike, currency: str, rates: RateSource, *, places: int = MONEY_PLACES
) -> Decimal:
    """Convert a peg amount back into ``currency`` (divide by the cached rate)."""

    value = to_decimal(peg_amount)
    if currency == rates.peg_currency:
        return value
    return quantize(divide(value, rates.rate_for(currency)), places)


def peg_range(
    min_amount: DecimalLike, max_amount: DecimalLike, currency: str, rates: RateSource
) -> tuple[Decimal, Decimal]:
    """Translate a local-currency price range into the indexed peg range."""

    return to_peg(min_amount, currency, rates), to_peg(max_amount, currency, rates)


__all__ = ["RateSource", "to_peg", "from_peg", "peg_range"]
