from __future__ import annotations

from datetime import timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

from fair_marketplace.db.relational_backend import RelationalBackend
from fair_marketplace.errors import CollaboratorUnavailable
from fair_marketplace.models import ExchangeRate, ListingFilter, PriceUpdate
from tests.support import BASE_TIME


@pytest.fixture
def backend(tmp_path: Path) -> RelationalBackend:
    backend = RelationalBackend(f"sqlite:///{tmp_path / 'relational.db'}")
    backend.ensure_schema()
    yield backend
    backend.close()


@pytest.fixture
def stocked(backend, make_listing) -> RelationalBackend:
    backend.insert_listings(
        [
            make_listing("a", "seller_2", rating=4.0, age_minutes=1, peg_price="30"),
            make_listing("b", "seller_1", rating=4.5, age_minutes=2, peg_price="10"),
            make_listing("c", "seller_2", rating=4.5, age_minutes=3, peg_price="20"),
            make_listing(
                "d",
                "seller_3",
                category="FPS",
                currency="PHP",
                local_price="1000",
                peg_price="17.8",
                converted_at=BASE_TIME - timedelta(hours=2),
            ),
            make_listing("e", "seller_3", currency="MYR", local_price="100", peg_price="22.47"),
        ]
    )
    return backend


def test_insert_reports_inserted_and_updated(backend, make_listing) -> None:
    first = backend.insert_listings([make_listing("a", "seller_1"), make_listing("b", "seller_1")])
    second = backend.insert_listings([make_listing("a", "seller_1", rating=1.0)])

    assert (first.inserted, first.updated) == (2, 0)
    assert (second.inserted, second.updated) == (0, 1)
    found = backend.find_matching(ListingFilter(seller_id="seller_1"), sort=[("listing_id", 1)])
    assert found[0].rating == 1.0


def test_round_trip_keeps_decimals_and_utc(stocked) -> None:
    (listing,) = stocked.find_matching(ListingFilter(category="FPS"))

    assert listing.local_price == Decimal("1000")
    assert listing.peg_price == Decimal("17.8")
    assert listing.created_at == BASE_TIME
    assert listing.created_at.tzinfo is timezone.utc
    assert listing.converted_at == BASE_TIME - timedelta(hours=2)


def test_filters_and_sorting(stocked) -> None:
    cheapest = stocked.find_matching(ListingFilter(), sort=[("peg_price", 1)], limit=2)
    page_two = stocked.find_matching(ListingFilter(), sort=[("peg_price", -1)], skip=2, limit=2)
    in_range = stocked.find_matching(
        ListingFilter(min_peg_price=Decimal("17.8"), max_peg_price=Decimal("25"))
    )

    assert [item.listing_id for item in cheapest] == ["b", "d"]
    assert [item.listing_id for item in page_two] == ["c", "d"]
    assert sorted(item.listing_id for item in in_range) == ["c", "d", "e"]
    assert stocked.count_matching(ListingFilter(category="RPG")) == 4
    assert stocked.count_matching(ListingFilter(currency="MYR")) == 1


def test_converted_before_includes_never_converted(stocked) -> None:
    selection = ListingFilter(exclude_currency="USD", converted_before=BASE_TIME - timedelta(hours=1))

    assert sorted(item.listing_id for item in stocked.find_matching(selection)) == ["d", "e"]
    narrower = ListingFilter(exclude_currency="USD", converted_before=BASE_TIME - timedelta(hours=3))
    assert [item.listing_id for item in stocked.find_matching(narrower)] == ["e"]


def test_group_by_orders_groups_and_members(stocked) -> None:
    groups = stocked.group_by("seller_id", ListingFilter(category="RPG"))

    assert [key for key, _ in groups] == ["seller_1", "seller_2", "seller_3"]
    assert [item.listing_id for item in groups[1][1]] == ["c", "a"]
    with pytest.raises(ValueError):
        stocked.group_by("rating", ListingFilter())


def test_count_by_counts_each_key_in_order(stocked) -> None:
    assert stocked.count_by("seller_id", ListingFilter(category="RPG")) == {
        "seller_1": 1,
        "seller_2": 2,
        "seller_3": 1,
    }
    assert stocked.count_by("currency", ListingFilter()) == {"MYR": 1, "PHP": 1, "USD": 3}
    with pytest.raises(ValueError):
        stocked.count_by("title", ListingFilter())


def test_find_ranked_orders_by_seller_rank_then_rating(stocked) -> None:
    rpg = ListingFilter(category="RPG")
    # seller_1 is unranked and sorts last.
    ranks = {"seller_3": 0, "seller_2": 1}

    everything = stocked.find_ranked(rpg, ranks)
    window = stocked.find_ranked(rpg, ranks, skip=1, limit=2)
    capped = stocked.find_ranked(rpg, ranks, per_seller=1)

    assert [item.listing_id for item in everything] == ["e", "c", "a", "b"]
    assert [item.listing_id for item in window] == ["c", "a"]
    assert [item.listing_id for item in capped] == ["e", "c", "b"]


def test_find_ranked_cap_applies_before_the_window(stocked) -> None:
    ranks = {"seller_2": 0, "seller_1": 1, "seller_3": 2}

    page = stocked.find_ranked(ListingFilter(category="RPG"), ranks, per_seller=1, skip=1, limit=5)

    assert [item.listing_id for item in page] == ["b", "e"]


def test_find_weighted_returns_only_the_requested_window(stocked) -> None:
    rpg = ListingFilter(category="RPG")

    everything = stocked.find_weighted(rpg)
    window = stocked.find_weighted(rpg, skip=1, limit=2)

    assert sorted(item.listing_id for item in everything) == ["a", "b", "c", "e"]
    assert len(window) == 2
    assert {item.listing_id for item in window} <= {"a", "b", "c", "e"}
    assert stocked.find_weighted(rpg, skip=4, limit=2) == []


def test_update_peg_prices_skips_unknown_rows(stocked) -> None:
    result = stocked.update_peg_prices(
        [
            PriceUpdate("e", Decimal("22.5"), Decimal("0.225"), BASE_TIME),
            PriceUpdate("missing", Decimal("1"), Decimal("1"), BASE_TIME),
        ]
    )

    (listing,) = stocked.find_matching(ListingFilter(currency="MYR"))
    assert result.updated == 1
    assert listing.peg_price == Decimal("22.5")
    assert listing.conversion_rate == Decimal("0.225")
    assert listing.converted_at == BASE_TIME


def test_rates_save_load_and_replace(backend) -> None:
    backend.save_rates(
        [
            ExchangeRate("PHP", Decimal("0.0178"), BASE_TIME),
            ExchangeRate("IDR", Decimal("0.0000635"), BASE_TIME),
        ]
    )
    updated = backend.save_rates(
        [
            ExchangeRate(
                "PHP",
                Decimal("0.017978"),
                BASE_TIME,
                previous_rate=Decimal("0.0178"),
                change_percent=Decimal("1.00"),
            )
        ]
    )

    loaded = backend.load_rates()
    assert updated.updated == 1
    assert [rate.currency for rate in loaded] == ["IDR", "PHP"]
    assert loaded[0].rate_to_peg == Decimal("0.0000635")
    assert loaded[1].previous_rate == Decimal("0.0178")
    assert loaded[1].last_updated == BASE_TIME

    backend.save_rates([ExchangeRate("USD", Decimal("1"), BASE_TIME)], replace=True)
    assert [rate.currency for rate in backend.load_rates()] == ["USD"]


def test_reset_clears_listings_and_rates(stocked) -> None:
    stocked.save_rates([ExchangeRate("PHP", Decimal("0.0178"), BASE_TIME)])

    stocked.reset()

    assert stocked.count_matching(ListingFilter()) == 0
    assert stocked.load_rates() == []


def test_unreachable_database_raises_collaborator_unavailable(tmp_path: Path) -> None:
    backend = RelationalBackend(f"sqlite:///{tmp_path / 'missing' / 'nested' / 'db.sqlite'}")

    with pytest.raises(CollaboratorUnavailable) as excinfo:
        backend.ping()

    assert excinfo.value.operation == "count_matching"
