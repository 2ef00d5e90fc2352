"""Seller fairness and price analysis over listing snapshots.

Prices are converted to ``float`` inside the frames; these reports are for
inspection and never feed back into stored prices.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

import pandas as pd

from fair_marketplace.distribution.affinity import SellerAffinityKey, numeric_suffix_key
from fair_marketplace.distribution.hash_round_robin import hash_bucket
from fair_marketplace.distribution.true_round_robin import group_order_key
from fair_marketplace.models import Listing

FRAME_COLUMNS = [
    "listing_id",
    "category",
    "seller_id",
    "currency",
    "local_price",
    "peg_price",
    "rating",
    "stock",
]


@dataclass(slots=True)
class StrategyComparison:
    """How evenly one strategy spread sellers over its first page."""

    strategy: str
    label: str
    listing_count: int = 0
    unique_sellers: int = 0
    distribution: dict[str, int] = field(default_factory=dict)
    fairness_score: float = 0.0
    error: str | None = None


@dataclass(slots=True)
class SellerPlacement:
    """Where the round-robin keys put one seller for a given seed."""

    seller_id: str
    offer_count: int
    hash_bucket: int
    group_order: int


@dataclass(slots=True)
class DistributionDebug:
    category: str
    seed: int
    total_count: int
    sellers: list[SellerPlacement] = field(default_factory=list)
    hash_page: dict[str, int] = field(default_factory=dict)
    true_round_robin_page: dict[str, int] = field(default_factory=dict)
    true_round_robin_error: str | None = None


def listings_frame(listings: Sequence[Listing]) -> pd.DataFrame:
    records = [
        {
            "listing_id": listing.listing_id,
            "category": listing.category,
            "seller_id": listing.seller_id,
            "currency": listing.currency,
            "local_price": float(listing.local_price),
            "peg_price": float(listing.peg_price),
            "rating": listing.rating,
            "stock": listing.stock,
        }
        for listing in listings
    ]
    return pd.DataFrame.from_records(records, columns=FRAME_COLUMNS)


def seller_stats(listings: Sequence[Listing]) -> pd.DataFrame:
    """Per-seller offer count, average peg price and rating, and total stock."""

    frame = listings_frame(listings)
    stats = frame.groupby("seller_id").agg(
        offer_count=("listing_id", "count"),
        avg_peg_price=("peg_price", "mean"),
        avg_rating=("rating", "mean"),
        total_stock=("stock", "sum"),
    )
    return stats.sort_values("offer_count", ascending=False, kind="stable")


def seller_distribution(listings: Sequence[Listing]) -> dict[str, int]:
    if not listings:
        return {}
    counts = listings_frame(listings)["seller_id"].value_counts(sort=False)
    return {str(seller): int(count) for seller, count in counts.items()}


def fairness_score(distribution: Mapping[str, int]) -> float:
    """Population variance of per-seller counts; ``0`` is perfectly even."""

    if not distribution:
        return 0.0
    return float(pd.Series(list(distribution.values()), dtype="float64").var(ddof=0))


def seller_placements(
    offers: Mapping[str, int], seed: int, key: SellerAffinityKey = numeric_suffix_key
) -> list[SellerPlacement]:
    """Placement of every seller, most offers first."""

    frame = pd.DataFrame(
        {"seller_id": list(offers), "offer_count": [int(count) for count in offers.values()]},
        columns=["seller_id", "offer_count"],
    )
    frame = frame.sort_values(["offer_count", "seller_id"], ascending=[False, True], kind="stable")
    return [
        SellerPlacement(
            seller_id=seller_id,
            offer_count=int(count),
            hash_bucket=hash_bucket(seller_id, seed, key),
            group_order=group_order_key(seller_id, seed, key),
        )
        for seller_id, count in zip(frame["seller_id"], frame["offer_count"])
    ]


def price_distribution(listings: Sequence[Listing]) -> dict[str, pd.DataFrame]:
    """Peg price summaries overall, by listing currency and by category."""

    frame = listings_frame(listings)
    aggregations = {
        "count": ("peg_price", "count"),
        "avg_peg_price": ("peg_price", "mean"),
        "min_peg_price": ("peg_price", "min"),
        "max_peg_price": ("peg_price", "max"),
        "avg_local_price": ("local_price", "mean"),
    }
    overall = frame.assign(scope="all").groupby("scope").agg(**aggregations)
    return {
        "overall": overall,
        "by_currency": frame.groupby("currency").agg(**aggregations),
        "by_category": frame.groupby("category").agg(**aggregations),
    }


__all__ = [
    "StrategyComparison",
    "SellerPlacement",
    "DistributionDebug",
    "seller_placements",
    "listings_frame",
    "seller_stats",
    "seller_distribution",
    "fairness_score",
    "price_distribution",
]
