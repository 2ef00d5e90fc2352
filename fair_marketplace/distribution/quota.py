"""Quota-based distribution: at most N listings per seller."""

from __future__ import annotations

import random
from typing import Iterable

from fair_marketplace.db.base_backend import BackendStrategy
from fair_marketplace.distribution.strategy import QUOTA, Arrangement, DistributionStrategy
from fair_marketplace.errors import InvalidRequest
from fair_marketplace.models import ListingFilter
from fair_marketplace.utils.logger import get_logger

LOGGER = get_logger(__name__)

DEFAULT_MAX_PER_SELLER = 2
MAX_MAX_PER_SELLER = 10


def effective_quota(
    requested: int | None,
    *,
    default: int = DEFAULT_MAX_PER_SELLER,
    ceiling: int = MAX_MAX_PER_SELLER,
) -> int:
    """Resolve the per-seller cap; values above ``ceiling`` are clamped to it."""

    if requested is None:
        return min(default, ceiling)
    if isinstance(requested, bool) or not isinstance(requested, int):
        raise InvalidRequest("max_per_seller", requested, "expected an integer")
    if requested < 1:
        raise InvalidRequest("max_per_seller", requested, "must be at least 1")
    if requested > ceiling:
        LOGGER.info("Clamping max_per_seller from %s to %s", requested, ceiling)
        return ceiling
    return requested


def shuffled_sellers(seller_ids: Iterable[str], rng: random.Random) -> dict[str, int]:
    """Rank sellers by one draw each, taken in the order given."""

    drawn = sorted(((rng.random(), seller_id) for seller_id in seller_ids), key=lambda item: item[0])
    return {seller_id: position for position, (_, seller_id) in enumerate(drawn)}


class QuotaDistribution(DistributionStrategy):
    """Cap every seller, shuffle the seller order, then concatenate.

    ``total_count`` is the category size, not the capped sequence length, so
    pages past the capped sequence come back empty.
    """

    name = QUOTA
    label = "Quota-based"
    seed_stable = False

    def __init__(
        self,
        rng: random.Random | None = None,
        *,
        default_max_per_seller: int = DEFAULT_MAX_PER_SELLER,
        max_max_per_seller: int = MAX_MAX_PER_SELLER,
    ) -> None:
        self.rng = rng or random.Random()
        self.default_max_per_seller = default_max_per_seller
        self.max_max_per_seller = max_max_per_seller

    def resolve_quota(self, requested: int | None) -> int:
        return effective_quota(
            requested,
            default=self.default_max_per_seller,
            ceiling=self.max_max_per_seller,
        )

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
        quota = self.resolve_quota(max_per_seller)
        total = store.count_matching(listing_filter)
        if total == 0:
            return Arrangement(listings=[], total_count=0)
        offers = store.count_by("seller_id", listing_filter)
        if skip >= sum(min(count, quota) for count in offers.values()):
            return Arrangement(listings=[], total_count=total)
        listings = store.find_ranked(
            listing_filter,
            shuffled_sellers(offers, self.rng),
            per_seller=quota,
            skip=skip,
            limit=limit,
        )
        return Arrangement(listings=listings, total_count=total)


__all__ = [
    "QuotaDistribution",
    "effective_quota",
    "shuffled_sellers",
    "DEFAULT_MAX_PER_SELLER",
    "MAX_MAX_PER_SELLER",
]
