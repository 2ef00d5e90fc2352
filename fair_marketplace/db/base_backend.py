"""Backend strategy interfaces for the marketplace document store."""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from collections import Counter
from typing import Mapping, Sequence

from fair_marketplace.models import (
    ExchangeRate,
    Listing,
    ListingFilter,
    PersistenceResult,
    PriceUpdate,
)

# ``(field, direction)`` pairs in pymongo style; ``1`` ascending, ``-1`` descending.
SortSpec = Sequence[tuple[str, int]]

LISTING_FIELDS = frozenset(
    {
        "listing_id",
        "category",
        "seller_id",
        "local_price",
        "currency",
        "peg_price",
        "rating",
        "created_at",
        "stock",
        "title",
        "converted_at",
    }
)
GROUPABLE_FIELDS = frozenset({"seller_id", "category", "currency"})
# Order of one seller's listings: best rated, then newest, then by id.
WITHIN_SELLER_ORDER: tuple[tuple[str, int], ...] = (
    ("rating", -1),
    ("created_at", -1),
    ("listing_id", 1),
)


def _window(listings: list[Listing], skip: int, limit: int | None) -> list[Listing]:
    end = None if limit is None else skip + limit
    return listings[skip:end]


class BackendStrategy(ABC):
    """Common interface implemented by every listing store.

    Implementations may push filtering, sorting and grouping down to the
    store, but the observable results must equal evaluating
    :meth:`ListingFilter.matches` over every stored listing.
    """

    @abstractmethod
    def ensure_schema(self) -> None:
        """Create required tables/collections and verify connectivity."""

    @abstractmethod
    def find_matching(
        self,
        listing_filter: ListingFilter,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Listing]:
        """Return listings selected by ``listing_filter``.

        Without ``sort`` the order is whatever the store yields.
        """

    @abstractmethod
    def count_matching(self, listing_filter: ListingFilter) -> int:
        """Count listings selected by ``listing_filter``."""

    @abstractmethod
    def group_by(self, field: str, listing_filter: ListingFilter) -> list[tuple[str, list[Listing]]]:
        """Group selected listings by ``field``, groups ordered by key.

        Members of each group are ordered by rating (desc) then recency (desc).
        """

    @abstractmethod
    def count_by(self, field: str, listing_filter: ListingFilter) -> dict[str, int]:
        """Count selected listings per value of ``field``, keys in ascending order."""

    def find_ranked(
        self,
        listing_filter: ListingFilter,
        seller_rank: Mapping[str, int],
        *,
        per_seller: int | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Listing]:
        """Return one window of listings ordered by their seller's rank.

        Listings sort by ``seller_rank`` ascending, then by
        :data:`WITHIN_SELLER_ORDER`; sellers missing from the mapping sort
        last. ``per_seller`` keeps only each seller's best listings. This
        implementation reads the whole selection, stores override it to push
        the window down.
        """

        missing = max(seller_rank.values(), default=0) + 1
        taken: Counter[str] = Counter()
        kept: list[Listing] = []
        for listing in self.find_matching(listing_filter, sort=WITHIN_SELLER_ORDER):
            if per_seller is not None and taken[listing.seller_id] >= per_seller:
                continue
            taken[listing.seller_id] += 1
            kept.append(listing)
        kept.sort(key=lambda listing: seller_rank.get(listing.seller_id, missing))
        return _window(kept, skip, limit)

    def find_weighted(
        self,
        listing_filter: ListingFilter,
        *,
        skip: int = 0,
        limit: int | None = None,
        rng: random.Random | None = None,
    ) -> list[Listing]:
        """Return one window of the weighted random ordering.

        Each listing scores ``draw * 100 + 100 / (seller_offers + 1)`` and the
        highest scores come first. Stores with server-side randomness ignore
        ``rng``. This implementation reads the whole selection.
        """

        from fair_marketplace.distribution.weighted_random import order_listings

        listings = self.find_matching(listing_filter, sort=[("listing_id", 1)])
        return _window(order_listings(listings, rng or random.Random()), skip, limit)

    @abstractmethod
    def insert_listings(self, listings: Sequence[Listing]) -> PersistenceResult:
        """Insert or replace listings in bulk."""

    @abstractmethod
    def update_peg_prices(self, updates: Sequence[PriceUpdate]) -> PersistenceResult:
        """Write recalculated peg prices and conversion stamps."""

    @abstractmethod
    def delete_listings(self) -> int:
        """Remove every listing and return how many were deleted."""

    @abstractmethod
    def load_rates(self) -> list[ExchangeRate]:
        """Return the persisted exchange-rate table."""

    @abstractmethod
    def save_rates(self, rates: Sequence[ExchangeRate], *, replace: bool = False) -> PersistenceResult:
        """Upsert ``rates``; ``replace`` clears the table first."""

    def ping(self) -> None:
        """Raise :class:`CollaboratorUnavailable` when the store is unreachable."""

        self.count_matching(ListingFilter())

    def reset(self) -> None:
        """Full reset: drop every listing and exchange rate."""

        self.delete_listings()
        self.save_rates([], replace=True)

    def close(self) -> None:  # pragma: no cover - optional cleanup hook
        """Backends may override to release connections/resources."""


def validate_sort(sort: SortSpec | None) -> SortSpec:
    if not sort:
        return ()
    for field, direction in sort:
        if field not in LISTING_FIELDS:
            raise ValueError(f"Unsupported sort field: {field}")
        if direction not in (1, -1):
            raise ValueError(f"Sort direction must be 1 or -1, got {direction}")
    return sort


def validate_group_field(field: str) -> str:
    if field not in GROUPABLE_FIELDS:
        raise ValueError(f"Unsupported group field: {field}")
    return field


__all__ = [
    "BackendStrategy",
    "SortSpec",
    "LISTING_FIELDS",
    "GROUPABLE_FIELDS",
    "WITHIN_SELLER_ORDER",
    "validate_sort",
    "validate_group_field",
]
