"""In-memory exchange rate cache.

The cache holds an immutable :class:`RateSnapshot` behind a single reference.
``refresh`` builds a complete new snapshot and swaps the reference in one
assignment, so concurrent readers observe either the whole old table or the
whole new one and never take a lock.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Final, Iterable, Mapping

from fair_marketplace.errors import RateNotFoundError
from fair_marketplace.models import ExchangeRate
from fair_marketplace.utils.logger import get_logger

LOGGER = get_logger(__name__)

PEG_CURRENCY: Final[str] = "USD"
PEG_RATE: Final[Decimal] = Decimal("1.0000")

DEFAULT_EXCHANGE_RATES: Final[Mapping[str, Decimal]] = MappingProxyType(
    {
        "PHP": Decimal("0.0178"),
        "IDR": Decimal("0.0000635"),
        "MYR": Decimal("0.2247"),
        "USD": PEG_RATE,
    }
)


@dataclass(frozen=True, slots=True)
class RateSnapshot:
    """Complete, read-only view of the rate table at ``loaded_at``."""

    rates: Mapping[str, Decimal] = field(default_factory=lambda: MappingProxyType({}))
    peg_currency: str = PEG_CURRENCY
    loaded_at: datetime | None = None

    @classmethod
    def from_rates(
        cls,
        rates: Iterable[ExchangeRate],
        *,
        peg_currency: str = PEG_CURRENCY,
        loaded_at: datetime | None = None,
    ) -> "RateSnapshot":
        table = {rate.currency: rate.rate_to_peg for rate in rates}
        table[peg_currency] = PEG_RATE
        return cls(rates=MappingProxyType(table), peg_currency=peg_currency, loaded_at=loaded_at)

    def rate_for(self, currency: str) -> Decimal:
        if currency == self.peg_currency:
            return PEG_RATE
        try:
            return self.rates[currency]
        except KeyError:
            raise RateNotFoundError(
                currency, self.rates.keys(), peg_currency=self.peg_currency
            ) from None

    @property
    def currencies(self) -> tuple[str, ...]:
        return tuple(sorted(self.rates))

    def is_empty(self) -> bool:
        return not self.rates

    def __contains__(self, currency: object) -> bool:
        return currency in self.rates

    def __len__(self) -> int:
        return len(self.rates)


class ExchangeRateCache:
    """Single-writer, many-reader holder of the current :class:`RateSnapshot`."""

    def __init__(self, peg_currency: str = PEG_CURRENCY) -> None:
        self.peg_currency = peg_currency
        self._snapshot = RateSnapshot(peg_currency=peg_currency)

    @property
    def snapshot(self) -> RateSnapshot:
        return self._snapshot

    def refresh(self, rates: Iterable[ExchangeRate], *, loaded_at: datetime | None = None) -> RateSnapshot:
        """Replace the whole table with ``rates`` (clear-then-reload)."""

        snapshot = RateSnapshot.from_rates(
            rates, peg_currency=self.peg_currency, loaded_at=loaded_at
        )
        self._snapshot = snapshot
        LOGGER.info(
            "Refreshed exchange rate cache with %s rates (all to %s)",
            len(snapshot),
            self.peg_currency,
        )
        return snapshot

    def invalidate(self) -> None:
        self._snapshot = RateSnapshot(peg_currency=self.peg_currency)

    def rate_for(self, currency: str) -> Decimal:
        return self._snapshot.rate_for(currency)

    def is_empty(self) -> bool:
        return self._snapshot.is_empty()


__all__ = [
    "PEG_CURRENCY",
    "PEG_RATE",
    "DEFAULT_EXCHANGE_RATES",
    "RateSnapshot",
    "ExchangeRateCache",
]
