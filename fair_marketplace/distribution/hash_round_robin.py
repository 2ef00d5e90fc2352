"""Hash round-robin: cheap, seed-stable seller interleaving.

Each seller gets a pseudo-random bucket from the seed and the listings are
sorted by bucket. This approximates round-robin without materialising seller
groups: sellers whose keys land close together may still appear in runs, so
it is a heuristic, not a strict rotation.

Only the seller list is read in full; the store sorts by bucket and returns
just the requested window.
"""

from __future__ import annotations

from typing import Iterable

from fair_marketplace.db.base_backend import BackendStrategy
from fair_marketplace.distribution.affinity import SellerAffinityKey, numeric_suffix_key
from fair_marketplace.distribution.strategy import HASH_ROUND_ROBIN, Arrangement, DistributionStrategy
from fair_marketplace.models import ListingFilter

BUCKET_MODULUS = 10_000
SEED_OFFSET = 37


def hash_bucket(seller_id: str, seed: int, key: SellerAffinityKey = numeric_suffix_key) -> int:
    return ((key(seller_id) + seed) * (seed + SEED_OFFSET)) % BUCKET_MODULUS


def seller_buckets(
    seller_ids: Iterable[str], seed: int, key: SellerAffinityKey = numeric_suffix_key
) -> dict[str, int]:
    return {seller_id: hash_bucket(seller_id, seed, key) for seller_id in seller_ids}


class HashRoundRobin(DistributionStrategy):
    """Sort by (bucket asc, rating desc, created_at desc, listing_id asc)."""

    name = HASH_ROUND_ROBIN
    label = "Hash-based Round-Robin"
    seed_stable = True

    def __init__(self, affinity: SellerAffinityKey = numeric_suffix_key) -> None:
        self.affinity = affinity

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
        buckets = seller_buckets(store.count_by("seller_id", listing_filter), seed, self.affinity)
        listings = store.find_ranked(listing_filter, buckets, skip=skip, limit=limit)
        return Arrangement(listings=listings, total_count=total)


__all__ = ["HashRoundRobin", "hash_bucket", "seller_buckets", "BUCKET_MODULUS"]
