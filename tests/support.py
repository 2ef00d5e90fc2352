"""Test doubles shared across the suite."""

from __future__ import annotations

import random
import dataclasses
from collections import Counter
from datetime import datetime, timezone
from itertools import groupby
from typing import Mapping, Sequence

from fair_marketplace.db.base_backend import (
    BackendStrategy,
    SortSpec,
    validate_group_field,
    validate_sort,
)
from fair_marketplace.models import (
    ExchangeRate,
    Listing,
    ListingFilter,
    PersistenceResult,
    PriceUpdate,
)
from fair_marketplace.utils.clock import FixedClock

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryBackend(BackendStrategy):
    """Dict backed store that evaluates filters with ``ListingFilter.matches``."""

    def __init__(self) -> None:
        self.listings: dict[str, Listing] = {}
        self.rates: dict[str, ExchangeRate] = {}
        self.calls: list[str] = []
        # (operation, skip, limit) for every windowed read.
        self.windows: list[tuple[str, int, int | None]] = []
        self.schema_ready = False

    def ensure_schema(self) -> None:
        self.calls.append("ensure_schema")
        self.schema_ready = True

    def _selected(self, listing_filter: ListingFilter) -> list[Listing]:
        return [listing for listing in self.listings.values() if listing_filter.matches(listing)]

    def find_matching(
        self,
        listing_filter: ListingFilter,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Listing]:
        self.calls.append("find_matching")
        selected = self._selected(listing_filter)
        for field, direction in reversed(list(validate_sort(sort))):
            selected.sort(key=lambda listing: getattr(listing, field), reverse=direction == -1)
        selected = selected[skip:]
        if limit is not None:
            selected = selected[:limit]
        return [dataclasses.replace(listing) for listing in selected]

    def count_matching(self, listing_filter: ListingFilter) -> int:
        self.calls.append("count_matching")
        return len(self._selected(listing_filter))

    def group_by(self, field: str, listing_filter: ListingFilter) -> list[tuple[str, list[Listing]]]:
        self.calls.append("group_by")
        validate_group_field(field)
        ordered = self.find_matching(
            listing_filter,
            sort=[(field, 1), ("rating", -1), ("created_at", -1), ("listing_id", 1)],
        )
        return [
            (key, list(members))
            for key, members in groupby(ordered, key=lambda listing: getattr(listing, field))
        ]

    def count_by(self, field: str, listing_filter: ListingFilter) -> dict[str, int]:
        self.calls.append("count_by")
        validate_group_field(field)
        counts = Counter(getattr(listing, field) for listing in self._selected(listing_filter))
        return {key: counts[key] for key in sorted(counts)}

    def find_ranked(
        self,
        listing_filter: ListingFilter,
        seller_rank: Mapping[str, int],
        *,
        per_seller: int | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Listing]:
        self.windows.append(("find_ranked", skip, limit))
        return super().find_ranked(
            listing_filter, seller_rank, per_seller=per_seller, skip=skip, limit=limit
        )

    def find_weighted(
        self,
        listing_filter: ListingFilter,
        *,
        skip: int = 0,
        limit: int | None = None,
        rng: random.Random | None = None,
    ) -> list[Listing]:
        self.windows.append(("find_weighted", skip, limit))
        return super().find_weighted(listing_filter, skip=skip, limit=limit, rng=rng)

    def insert_listings(self, listings: Sequence[Listing]) -> PersistenceResult:
        self.calls.append("insert_listings")
        result = PersistenceResult()
        for listing in listings:
            if listing.listing_id in self.listings:
                result.updated += 1
            else:
                result.inserted += 1
            self.listings[listing.listing_id] = dataclasses.replace(listing)
        return result

    def update_peg_prices(self, updates: Sequence[PriceUpdate]) -> PersistenceResult:
        self.calls.append("update_peg_prices")
        result = PersistenceResult()
        for update in updates:
            listing = self.listings.get(update.listing_id)
            if listing is None:
                continue
            listing.peg_price = update.peg_price
            listing.conversion_rate = update.conversion_rate
            listing.converted_at = update.converted_at
            result.updated += 1
        return result

    def delete_listings(self) -> int:
        self.calls.append("delete_listings")
        removed = len(self.listings)
        self.listings.clear()
        return removed

    def load_rates(self) -> list[ExchangeRate]:
        self.calls.append("load_rates")
        return [dataclasses.replace(self.rates[currency]) for currency in sorted(self.rates)]

    def save_rates(self, rates: Sequence[ExchangeRate], *, replace: bool = False) -> PersistenceResult:
        self.calls.append("save_rates")
        result = PersistenceResult()
        if replace:
            self.rates.clear()
        for rate in rates:
            if rate.currency in self.rates:
                result.updated += 1
            else:
                result.inserted += 1
            self.rates[rate.currency] = rate
        return result


class SequenceRandom(random.Random):
    """``random()`` replays the given values in a loop."""

    def __init__(self, values: Sequence[float]) -> None:
        super().__init__(0)
        self._values = list(values)
        self._index = 0

    def random(self) -> float:
        value = self._values[self._index % len(self._values)]
        self._index += 1
        return value

