"""Weighted random ordering that favours sellers with few offers.

Each listing scores ``draw * 100 + 100 / (seller_offer_count + 1)`` with a
fresh draw per listing. The order changes on every call, so pages fetched
one after another may overlap or skip listings.
"""

from __future__ import annotations

import random
from collections import Counter
from typing import TYPE_CHECKING, Sequence

from fair_marketplace.distribution.strategy import WEIGHTED, Arrangement, DistributionStrategy
from fair_marketplace.models import Listing, ListingFilter

if TYPE_CHECKING:  # pragma: no cover - type checker helper
    from fair_marketplace.db.base_backend import BackendStrategy


def weighted_score(draw: float, seller_offer_count: int) -> float:
    return draw * 100 + 100 / (seller_offer_count + 1)


def order_listings(listings: Sequence[Listing], rng: random.Random) -> list[Listing]:
    """Score every listing with one draw each, in input order, highest first."""

    counts = Counter(listing.seller_id for listing in listings)
    scored = [
        (weighted_score(rng.random(), counts[listing.seller_id]), listing) for listing in listings
    ]
    scored.sort(key=lambda item: item[0], reverse=True)
    return [listing for _, listing in scored]


class WeightedRandom(DistributionStrategy):
    name = WEIGHTED
    label = "Weighted Random"
    seed_stable = False

    def __init__(self, rng: random.Random | None = None) -> None:
        self.rng = rng or random.Random()

    def arrange(
        self,
        store: BackendStrategy,
        listing_filter: ListingFilter,
        *,
        seed: int,
        skip: int = 0,
        limit: int | None = None,
        max_per_seller: int | None = None,
    ) -> Arrangement:
        total = store.count_matching(listing_filter)
        if total == 0 or skip >= total:
            return Arrangement(listings=[], total_count=total)
        listings = store.find_weighted(listing_filter, skip=skip, limit=limit, rng=self.rng)
        return Arrangement(listings=listings, total_count=total)


__all__ = ["WeightedRandom", "weighted_score", "order_listings"]
