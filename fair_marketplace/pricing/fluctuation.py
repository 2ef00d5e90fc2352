"""Rate fluctuation policies applied by ``FairMarketplace.update_rates``."""

from __future__ import annotations

import random
from decimal import Decimal
from typing import Mapping, Protocol

from fair_marketplace.models import ExchangeRate
from fair_marketplace.pricing.decimal_value import DecimalLike, multiply, quantize, to_decimal

DEFAULT_RATE_PLACES = 6
# Currencies whose rate to the peg is tiny need more digits to stay meaningful.
RATE_PLACE_OVERRIDES: Mapping[str, int] = {"IDR": 8}


class FluctuationPolicy(Protocol):
    """Produce the next rate for ``rate`` (a positive Decimal)."""

    def __call__(self, rate: ExchangeRate) -> Decimal:
        ...  # pragma: no cover - protocol definition


def rate_places(currency: str, overrides: Mapping[str, int] | None = None) -> int:
    table = RATE_PLACE_OVERRIDES if overrides is None else overrides
    return table.get(currency, DEFAULT_RATE_PLACES)


class RandomFluctuation:
    """Move every rate by a uniform random change within ``±max_change``."""

    def __init__(
        self,
        max_change: DecimalLike = "0.02",
        *,
        rng: random.Random | None = None,
        place_overrides: Mapping[str, int] | None = None,
    ) -> None:
        self.max_change = to_decimal(max_change)
        if not Decimal(0) <= self.max_change < Decimal(1):
            raise ValueError("max_change must be within [0, 1)")
        self._rng = rng or random.Random()
        self._place_overrides = place_overrides

    def __call__(self, rate: ExchangeRate) -> Decimal:
        draw = to_decimal(round((self._rng.random() - 0.5) * 2, 6))
        change = multiply(draw, self.max_change)
        new_rate = multiply(rate.rate_to_peg, Decimal(1) + change)
        return quantize(new_rate, rate_places(rate.currency, self._place_overrides))


class FixedChange:
    """Apply the same relative ``change`` (e.g. ``"0.01"`` for +1 %) to every rate."""

    def __init__(self, change: DecimalLike, *, place_overrides: Mapping[str, int] | None = None) -> None:
        self.change = to_decimal(change)
        if self.change <= -1:
            raise ValueError("change must keep rates positive")
        self._place_overrides = place_overrides

    def __call__(self, rate: ExchangeRate) -> Decimal:
        new_rate = multiply(rate.rate_to_peg, Decimal(1) + self.change)
        return quantize(new_rate, rate_places(rate.currency, self._place_overrides))


__all__ = [
    "FluctuationPolicy",
    "RandomFluctuation",
    "FixedChange",
    "rate_places",
    "DEFAULT_RATE_PLACES",
    "RATE_PLACE_OVERRIDES",
]
