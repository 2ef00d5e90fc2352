"""True round-robin: strict one-listing-per-seller rotation.

The whole category is materialised and grouped by seller, so cost grows with
category size rather than page size. Requests above the configured ceiling
are refused instead of silently loading everything.

Once a seller runs out of listings the rotation simply continues without
them; late pages are therefore dominated by the sellers with the most
offers.
"""

from __future__ import annotations

from typing import Sequence

from fair_marketplace.db.base_backend import BackendStrategy
from fair_marketplace.distribution.affinity import SellerAffinityKey, numeric_suffix_key
from fair_marketplace.distribution.strategy import (
    TRUE_ROUND_ROBIN,
    Arrangement,
    DistributionStrategy,
    rank_within_seller,
)
from fair_marketplace.errors import InvalidRequest
from fair_marketplace.models import Listing, ListingFilter
from fair_marketplace.utils.logger import get_logger

LOGGER = get_logger(__name__)

GROUP_MODULUS = 1_000
DEFAULT_MAX_CANDIDATES = 10_000


def group_order_key(seller_id: str, seed: int, key: SellerAffinityKey = numeric_suffix_key) -> int:
    return (key(seller_id) + seed) % GROUP_MODULUS


def interleave(groups: Sequence[Sequence[Listing]]) -> list[Listing]:
    """Take the i-th listing of every group, in group order, for i = 0, 1, ..."""

    result: list[Listing] = []
    depth = max((len(group) for group in groups), default=0)
    for round_index in range(depth):
        for group in groups:
            if round_index < len(group):
                result.append(group[round_index])
    return result


def order_listings(
    groups: Sequence[tuple[str, Sequence[Listing]]],
    seed: int,
    key: SellerAffinityKey = numeric_suffix_key,
) -> list[Listing]:
    ordered_groups = sorted(
        groups, key=lambda group: (group_order_key(group[0], seed, key), group[0])
    )
    return interleave([rank_within_seller(members) for _, members in ordered_groups])


class TrueRoundRobin(DistributionStrategy):
    name = TRUE_ROUND_ROBIN
    label = "True Round-Robin"
    seed_stable = True

    def __init__(
        self,
        affinity: SellerAffinityKey = numeric_suffix_key,
        *,
        max_candidates: int | None = DEFAULT_MAX_CANDIDATES,
    ) -> None:
        self.affinity = affinity
        self.max_candidates = max_candidates

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
        if self.max_candidates is not None and total > self.max_candidates:
            LOGGER.warning(
                "Refusing true round-robin over %s listings (ceiling %s)",
                total,
                self.max_candidates,
            )
            raise InvalidRequest(
                "category",
                listing_filter.category,
                f"{total} listings exceed the true round-robin ceiling of {self.max_candidates}",
            )
        if total == 0:
            return Arrangement(listings=[], total_count=0)
        ordered = order_listings(store.group_by("seller_id", listing_filter), seed, self.affinity)
        end = None if limit is None else skip + limit
        return Arrangement(listings=ordered[skip:end], total_count=len(ordered))


__all__ = ["TrueRoundRobin", "group_order_key", "interleave", "order_listings"]
