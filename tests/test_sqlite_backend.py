from __future__ import annotations

from decimal import Decimal

from fair_marketplace.db.sqlite_backend import SQLiteBackend
from fair_marketplace.models import ExchangeRate, ListingFilter
from tests.support import BASE_TIME


def test_sqlite_backend_creates_file_and_schema(tmp_path) -> None:
    db_path = tmp_path / "nested" / "marketplace.db"

    backend = SQLiteBackend(db_path=db_path)

    assert db_path.exists()
    assert backend.count_matching(ListingFilter()) == 0
    backend.close()


def test_sqlite_backend_roundtrip(tmp_path, make_listing) -> None:
    backend = SQLiteBackend(db_path=tmp_path / "sqlite_backend.db")

    result = backend.insert_listings(
        [
            make_listing("a", "seller_1", currency="PHP", local_price="1000", peg_price="17.8"),
            make_listing("b", "seller_2"),
        ]
    )
    backend.save_rates([ExchangeRate("PHP", Decimal("0.0178"), BASE_TIME)])

    assert result.total == 2
    assert backend.count_matching(ListingFilter(currency="PHP")) == 1
    assert backend.load_rates()[0].rate_to_peg == Decimal("0.0178")

    backend.close()


def test_sqlite_backend_reopens_existing_file(tmp_path, make_listing) -> None:
    db_path = tmp_path / "persisted.db"
    first = SQLiteBackend(db_path=db_path)
    first.insert_listings([make_listing("a", "seller_1")])
    first.close()

    second = SQLiteBackend(db_path=db_path)

    assert [item.listing_id for item in second.find_matching(ListingFilter())] == ["a"]
    second.close()
