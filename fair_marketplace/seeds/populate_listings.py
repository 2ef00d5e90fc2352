"""Generate and store sample marketplace listings."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Mapping, Sequence

from faker import Faker

from fair_marketplace.config import DEFAULT_CATEGORIES, DEFAULT_CURRENCIES
from fair_marketplace.db.base_backend import BackendStrategy
from fair_marketplace.models import Listing, PersistenceResult
from fair_marketplace.pricing.converter import RateSource, to_peg
from fair_marketplace.pricing.rate_cache import DEFAULT_EXCHANGE_RATES, RateSnapshot
from fair_marketplace.utils.clock import SystemClock, ensure_utc
from fair_marketplace.utils.logger import get_logger

LOGGER = get_logger(__name__)

DEFAULT_LISTING_COUNT = 1000
DEFAULT_SELLER_COUNT = 20
DEFAULT_BATCH_SIZE = 500
RECENT_DAYS = 30


@dataclass(frozen=True, slots=True)
class PriceBand:
    minimum: int
    maximum: int
    places: int = 2


# Local price ranges that look plausible in each currency.
PRICE_BANDS: Mapping[str, PriceBand] = {
    "PHP": PriceBand(500, 50_000),
    "IDR": PriceBand(100_000, 5_000_000, places=0),
    "MYR": PriceBand(10, 2_000),
    "USD": PriceBand(5, 1_000),
}
FALLBACK_BAND = PriceBand(10, 500)


def _random_price(fake: Faker, currency: str) -> Decimal:
    band = PRICE_BANDS.get(currency, FALLBACK_BAND)
    scale = 10**band.places
    cents = fake.random.randint(band.minimum * scale, band.maximum * scale)
    return Decimal(cents).scaleb(-band.places)


def generate_listings(
    count: int,
    *,
    seller_count: int = DEFAULT_SELLER_COUNT,
    categories: Sequence[str] = DEFAULT_CATEGORIES,
    currencies: Sequence[str] = DEFAULT_CURRENCIES,
    rates: RateSource | None = None,
    seed: int | None = None,
    now: datetime | None = None,
) -> list[Listing]:
    """Build ``count`` listings spread over ``seller_1`` .. ``seller_<seller_count>``.

    Peg prices are converted with ``rates`` (the stock table by default) and
    stamped as converted at ``now``.
    """

    if count < 0:
        raise ValueError("count must be non-negative")
    if seller_count < 1:
        raise ValueError("seller_count must be positive")
    fake = Faker()
    if seed is not None:
        fake.seed_instance(seed)
    rate_source = rates if rates is not None else RateSnapshot(rates=DEFAULT_EXCHANGE_RATES)
    stamp = ensure_utc(now) if now is not None else SystemClock().now()
    window_seconds = RECENT_DAYS * 86_400

    listings: list[Listing] = []
    for _ in range(count):
        currency = fake.random_element(currencies)
        local_price = _random_price(fake, currency)
        listings.append(
            Listing(
                listing_id=fake.uuid4(),
                title=" ".join(word.title() for word in fake.words(nb=3)),
                category=fake.random_element(categories),
                seller_id=f"seller_{fake.random.randint(1, seller_count)}",
                local_price=local_price,
                currency=currency,
                peg_price=to_peg(local_price, currency, rate_source),
                rating=round(fake.random.uniform(0.0, 5.0), 1),
                created_at=stamp - timedelta(seconds=fake.random.randint(0, window_seconds)),
                stock=fake.random.randint(1, 50),
                converted_at=stamp,
                conversion_rate=rate_source.rate_for(currency),
            )
        )
    return listings


def seed_listings(
    store: BackendStrategy,
    count: int = DEFAULT_LISTING_COUNT,
    *,
    replace: bool = True,
    batch_size: int = DEFAULT_BATCH_SIZE,
    dry_run: bool = False,
    **generate_options,
) -> PersistenceResult:
    """Insert generated listings, clearing existing ones first unless ``replace`` is False."""

    if dry_run:
        LOGGER.info("Dry-run enabled; skipping generation of %s listings", count)
        return PersistenceResult()
    listings = generate_listings(count, **generate_options)
    if replace:
        removed = store.delete_listings()
        LOGGER.info("Cleared %s existing listings", removed)
    result = PersistenceResult()
    for offset in range(0, len(listings), batch_size):
        chunk = store.insert_listings(listings[offset : offset + batch_size])
        result.inserted += chunk.inserted
        result.updated += chunk.updated
    LOGGER.info(
        "Seeded %s listings (inserted=%s, updated=%s)",
        len(listings),
        result.inserted,
        result.updated,
    )
    return result


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--db-url", dest="db_url", help="Database URL (defaults to MARKETPLACE_DB_URL)")
    parser.add_argument("--count", type=int, default=DEFAULT_LISTING_COUNT, help="Listings to create")
    parser.add_argument(
        "--sellers", type=int, default=DEFAULT_SELLER_COUNT, help="Number of distinct sellers"
    )
    parser.add_argument("--seed", type=int, help="Seed for reproducible sample data")
    parser.add_argument(
        "--append",
        dest="replace",
        action="store_false",
        default=True,
        help="Keep existing listings instead of replacing them",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    from fair_marketplace import FairMarketplace
    from fair_marketplace.config import MarketplaceConfig

    args = parse_args(argv)
    config = MarketplaceConfig.from_env()
    with FairMarketplace(args.db_url or config.db_url, config=config) as marketplace:
        marketplace.seed_listings(
            args.count,
            seller_count=args.sellers,
            replace=args.replace,
            seed=args.seed,
        )


__all__ = ["generate_listings", "seed_listings", "PRICE_BANDS", "PriceBand", "parse_args", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
