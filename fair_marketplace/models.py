"""Data models shared by the distribution, pricing and persistence layers."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from fair_marketplace.pricing.decimal_value import to_decimal
from fair_marketplace.utils.clock import ensure_utc


@dataclass(slots=True)
class Listing:
    """A single marketplace offer, priced locally and in the peg currency."""

    listing_id: str
    category: str
    seller_id: str
    local_price: Decimal
    currency: str
    peg_price: Decimal
    rating: float
    created_at: datetime
    stock: int = 0
    title: str = ""
    converted_at: datetime | None = None
    conversion_rate: Decimal | None = None

    def __post_init__(self) -> None:
        self.local_price = to_decimal(self.local_price)
        self.peg_price = to_decimal(self.peg_price)
        if self.local_price < 0:
            raise ValueError(f"Listing {self.listing_id}: local_price must be >= 0")
        if self.peg_price < 0:
            raise ValueError(f"Listing {self.listing_id}: peg_price must be >= 0")
        self.rating = float(self.rating)
        if not 0.0 <= self.rating <= 5.0:
            raise ValueError(f"Listing {self.listing_id}: rating must be within 0.0-5.0")
        if self.stock < 0:
            raise ValueError(f"Listing {self.listing_id}: stock must be non-negative")
        self.created_at = ensure_utc(self.created_at)
        if self.converted_at is not None:
            self.converted_at = ensure_utc(self.converted_at)
        if self.conversion_rate is not None:
            self.conversion_rate = to_decimal(self.conversion_rate)

    def is_price_stale(self, rate_updated_at: datetime) -> bool:
        """True when the peg price predates the rate it should reflect."""

        if self.converted_at is None:
            return True
        return self.converted_at < ensure_utc(rate_updated_at)


@dataclass(slots=True)
class ExchangeRate:
    """Rate that turns one unit of ``currency`` into the peg currency."""

    currency: str
    rate_to_peg: Decimal
    last_updated: datetime
    previous_rate: Decimal | None = None
    change_percent: Decimal | None = None

    def __post_init__(self) -> None:
        self.rate_to_peg = to_decimal(self.rate_to_peg)
        if self.rate_to_peg <= 0:
            raise ValueError(f"Exchange rate for {self.currency} must be positive")
        self.last_updated = ensure_utc(self.last_updated)
        if self.previous_rate is not None:
            self.previous_rate = to_decimal(self.previous_rate)
        if self.change_percent is not None:
            self.change_percent = to_decimal(self.change_percent)


@dataclass(frozen=True, slots=True)
class ListingFilter:
    """Selection criteria understood by every backend.

    ``matches`` is the reference semantics; backends that push the filter
    down to the store must select exactly the same listings. A listing that
    was never converted counts as older than any ``converted_before`` bound.
    """

    category: str | None = None
    seller_id: str | None = None
    currency: str | None = None
    exclude_currency: str | None = None
    converted_before: datetime | None = None
    min_peg_price: Decimal | None = None
    max_peg_price: Decimal | None = None

    def matches(self, listing: Listing) -> bool:
        if self.category is not None and listing.category != self.category:
            return False
        if self.seller_id is not None and listing.seller_id != self.seller_id:
            return False
        if self.currency is not None and listing.currency != self.currency:
            return False
        if self.exclude_currency is not None and listing.currency == self.exclude_currency:
            return False
        if self.converted_before is not None and listing.converted_at is not None:
            if listing.converted_at >= ensure_utc(self.converted_before):
                return False
        if self.min_peg_price is not None and listing.peg_price < self.min_peg_price:
            return False
        if self.max_peg_price is not None and listing.peg_price > self.max_peg_price:
            return False
        return True


@dataclass(slots=True)
class DistributionRequest:
    category: str
    strategy: str = "hash-round-robin"
    page: int = 1
    page_size: int | None = None
    seed: int | None = None
    max_per_seller: int | None = None


@dataclass(slots=True)
class Pagination:
    page: int
    page_size: int
    total_count: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.page_size

    @classmethod
    def build(cls, page: int, page_size: int, total_count: int) -> "Pagination":
        return cls(
            page=page,
            page_size=page_size,
            total_count=total_count,
            total_pages=math.ceil(total_count / page_size),
            has_next=page * page_size < total_count,
            has_prev=page > 1,
        )


@dataclass(slots=True)
class DistributionResult:
    """One fair page plus the metadata needed to request its neighbours."""

    listings: list[Listing]
    pagination: Pagination
    strategy: str
    label: str
    seed: int | None = None
    max_per_seller: int | None = None
    seed_stable: bool = False

    def seller_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for listing in self.listings:
            counts[listing.seller_id] = counts.get(listing.seller_id, 0) + 1
        return counts


@dataclass(slots=True)
class PriceUpdate:
    listing_id: str
    peg_price: Decimal
    conversion_rate: Decimal
    converted_at: datetime


@dataclass(slots=True)
class PersistenceResult:
    """Represents how many rows were inserted or updated in a batch."""

    inserted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        """Return the total number of affected rows."""

        return self.inserted + self.updated


@dataclass(slots=True)
class PriceQueryResult:
    """Listings ordered by peg price with prices rendered in ``currency``."""

    listings: list[Listing]
    pagination: Pagination
    currency: str
    display_prices: list[Decimal] = field(default_factory=list)
    min_peg_price: Decimal | None = None
    max_peg_price: Decimal | None = None


__all__ = [
    "Listing",
    "ExchangeRate",
    "ListingFilter",
    "DistributionRequest",
    "Pagination",
    "DistributionResult",
    "PriceUpdate",
    "PersistenceResult",
    "PriceQueryResult",
]
