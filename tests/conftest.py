"""Shared fixtures for the fair_marketplace test suite."""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable

import pytest

from fair_marketplace.models import Listing
from fair_marketplace.utils.clock import FixedClock
from tests.support import BASE_TIME, InMemoryBackend


ListingFactory = Callable[..., Listing]


@pytest.fixture
def make_listing() -> ListingFactory:
    def _make(
        listing_id: str,
        seller_id: str,
        *,
        category: str = "RPG",
        rating: float = 4.0,
        age_minutes: int = 0,
        currency: str = "USD",
        local_price: str = "10.00",
        peg_price: str | None = None,
        converted_at: datetime | None = None,
    ) -> Listing:
        return Listing(
            listing_id=listing_id,
            title=f"Item {listing_id}",
            category=category,
            seller_id=seller_id,
            local_price=Decimal(local_price),
            currency=currency,
            peg_price=Decimal(peg_price if peg_price is not None else local_price),
            rating=rating,
            created_at=BASE_TIME - timedelta(minutes=age_minutes),
            stock=5,
            converted_at=converted_at,
        )

    return _make


@pytest.fixture
def memory_store() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def fixed_clock() -> FixedClock:
    return FixedClock(BASE_TIME)


@pytest.fixture
def rpg_store(memory_store: InMemoryBackend, make_listing: ListingFactory) -> InMemoryBackend:
    """Five sellers with four RPG listings each."""

    listings = [
        make_listing(
            f"s{seller}-{index}",
            f"seller_{seller}",
            rating=5.0 - index,
            age_minutes=index,
        )
        for seller in range(1, 6)
        for index in range(4)
    ]
    memory_store.insert_listings(listings)
    memory_store.calls.clear()
    return memory_store
