"""Abstractions shared by the pluggable distribution strategies."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar, Iterable, Mapping

from fair_marketplace.db.base_backend import BackendStrategy
from fair_marketplace.errors import InvalidRequest
from fair_marketplace.models import Listing, ListingFilter

HASH_ROUND_ROBIN = "hash-round-robin"
TRUE_ROUND_ROBIN = "true-round-robin"
WEIGHTED = "weighted"
QUOTA = "quota"

STRATEGY_NAMES: tuple[str, ...] = (HASH_ROUND_ROBIN, TRUE_ROUND_ROBIN, WEIGHTED, QUOTA)
STRATEGY_ALIASES: Mapping[str, str] = {
    "round-robin": HASH_ROUND_ROBIN,
    "weighted-random": WEIGHTED,
    "quota-based": QUOTA,
}


@dataclass(slots=True)
class Arrangement:
    """One requested window of the ordering plus the count reported to callers."""

    listings: list[Listing]
    total_count: int


class DistributionStrategy(ABC):
    """Contract for ordering one category's listings fairly across sellers.

    ``seed_stable`` strategies return the same order for the same seed and
    data, so consecutive pages fetched within one seed window are disjoint.
    The others make no such promise and callers must not paginate them as if
    they did.
    """

    name: ClassVar[str]
    label: ClassVar[str]
    seed_stable: ClassVar[bool] = False

    @abstractmethod
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
        """Return the listings at positions ``skip`` .. ``skip + limit`` in display order."""


def canonical_name(name: str) -> str:
    if name in STRATEGY_NAMES:
        return name
    try:
        return STRATEGY_ALIASES[name]
    except (KeyError, TypeError):
        raise InvalidRequest(
            "strategy",
            name,
            "expected one of " + ", ".join(STRATEGY_NAMES + tuple(STRATEGY_ALIASES)),
        ) from None


def rank_within_seller(listings: Iterable[Listing]) -> list[Listing]:
    """Order by rating (desc), then recency (desc), then id (asc)."""

    ranked = sorted(listings, key=lambda listing: listing.listing_id)
    ranked.sort(key=lambda listing: listing.created_at, reverse=True)
    ranked.sort(key=lambda listing: listing.rating, reverse=True)
    return ranked


__all__ = [
    "HASH_ROUND_ROBIN",
    "TRUE_ROUND_ROBIN",
    "WEIGHTED",
    "QUOTA",
    "STRATEGY_NAMES",
    "STRATEGY_ALIASES",
    "Arrangement",
    "DistributionStrategy",
    "canonical_name",
    "rank_within_seller",
]
