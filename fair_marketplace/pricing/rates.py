"""Persisted exchange-rate table management.

Every mutation persists the full table first and then reloads the cache from
what was written, so the cache never holds rates the store does not.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Mapping

from fair_marketplace.db.base_backend import BackendStrategy
from fair_marketplace.errors import InvalidRequest, RateNotFoundError
from fair_marketplace.models import ExchangeRate
from fair_marketplace.pricing.decimal_value import DecimalLike, divide, quantize, to_decimal
from fair_marketplace.pricing.fluctuation import FluctuationPolicy, RandomFluctuation
from fair_marketplace.pricing.rate_cache import (
    DEFAULT_EXCHANGE_RATES,
    PEG_RATE,
    ExchangeRateCache,
    RateSnapshot,
)
from fair_marketplace.utils.clock import Clock, SystemClock
from fair_marketplace.utils.logger import get_logger

LOGGER = get_logger(__name__)

DEFAULT_SUPPORTED_CURRENCIES: tuple[str, ...] = ("PHP", "IDR", "MYR", "USD")


class RateManager:
    """Owns the rate table: setup, fluctuation updates and cache reloads."""

    def __init__(
        self,
        store: BackendStrategy,
        cache: ExchangeRateCache,
        *,
        clock: Clock | None = None,
        supported_currencies: Iterable[str] = DEFAULT_SUPPORTED_CURRENCIES,
        place_overrides: Mapping[str, int] | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.clock = clock or SystemClock()
        self.supported_currencies = frozenset(supported_currencies) | {cache.peg_currency}
        self.place_overrides = place_overrides

    @property
    def peg_currency(self) -> str:
        return self.cache.peg_currency

    def validated_table(self, initial: Mapping[str, DecimalLike]) -> dict[str, Decimal]:
        table: dict[str, Decimal] = {}
        for currency, raw in initial.items():
            if currency not in self.supported_currencies:
                raise InvalidRequest(
                    "currency",
                    currency,
                    "supported currencies are " + ", ".join(sorted(self.supported_currencies)),
                )
            try:
                rate = to_decimal(raw)
            except ValueError as exc:
                raise InvalidRequest("rate", raw, str(exc)) from exc
            if rate <= 0:
                raise InvalidRequest("rate", raw, f"rate for {currency} must be positive")
            if currency == self.peg_currency and rate != PEG_RATE:
                raise InvalidRequest(
                    "rate", raw, f"the peg currency {currency} must have rate 1"
                )
            table[currency] = rate
        table.setdefault(self.peg_currency, PEG_RATE)
        return table

    def setup(self, initial: Mapping[str, DecimalLike] | None = None) -> list[ExchangeRate]:
        """Replace the persisted table with ``initial`` (defaults to the stock table)."""

        table = self.validated_table(DEFAULT_EXCHANGE_RATES if initial is None else initial)
        now = self.clock.now()
        rates = [
            ExchangeRate(currency=currency, rate_to_peg=rate, last_updated=now)
            for currency, rate in sorted(table.items())
        ]
        self.store.save_rates(rates, replace=True)
        self.cache.refresh(rates, loaded_at=now)
        LOGGER.info("Initialised %s exchange rates to %s", len(rates), self.peg_currency)
        return rates

    def update(self, policy: FluctuationPolicy | None = None) -> list[ExchangeRate]:
        """Apply ``policy`` to every non-peg rate and persist the results."""

        current = self.store.load_rates()
        if not current:
            raise RateNotFoundError("any currency", (), peg_currency=self.peg_currency)
        fluctuate = policy or RandomFluctuation(place_overrides=self.place_overrides)
        now = self.clock.now()
        updated: list[ExchangeRate] = []
        for rate in current:
            if rate.currency == self.peg_currency:
                continue
            new_rate = fluctuate(rate)
            if new_rate <= 0:
                raise InvalidRequest("rate", new_rate, f"fluctuation made {rate.currency} non-positive")
            change = quantize(
                divide(new_rate - rate.rate_to_peg, rate.rate_to_peg) * 100, 2
            )
            updated.append(
                ExchangeRate(
                    currency=rate.currency,
                    rate_to_peg=new_rate,
                    last_updated=now,
                    previous_rate=rate.rate_to_peg,
                    change_percent=change,
                )
            )
            LOGGER.info(
                "%s: %s -> %s (%s%%)", rate.currency, rate.rate_to_peg, new_rate, change
            )
        self.store.save_rates(updated)
        self.refresh()
        return updated

    def refresh(self) -> RateSnapshot:
        """Reload the cache from the persisted table (clear-then-reload)."""

        rates = self.store.load_rates()
        return self.cache.refresh(rates, loaded_at=self.clock.now())

    def ensure_loaded(self) -> RateSnapshot:
        """Load the cache from the store the first time it is needed."""

        if self.cache.is_empty():
            return self.refresh()
        return self.cache.snapshot


__all__ = ["RateManager", "DEFAULT_SUPPORTED_CURRENCIES"]
