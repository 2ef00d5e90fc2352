"""Command line access to fair search, rate management and recalculation."""

from __future__ import annotations

import argparse
import json
from dataclasses import asdict, is_dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Sequence

from fair_marketplace import FairMarketplace
from fair_marketplace.config import MarketplaceConfig
from fair_marketplace.distribution.strategy import STRATEGY_ALIASES, STRATEGY_NAMES
from fair_marketplace.errors import MarketplaceError
from fair_marketplace.pricing.fluctuation import FixedChange, RandomFluctuation
from fair_marketplace.utils.logger import get_logger

LOGGER = get_logger(__name__)

# Upper bound used when only --min is given.
UNBOUNDED_PRICE = "999999999999"


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if is_dataclass(value):
        return asdict(value)
    raise TypeError(f"Cannot serialise {type(value).__name__}")


def _emit(payload: Any) -> None:
    if is_dataclass(payload):
        payload = asdict(payload)
    print(json.dumps(payload, indent=2, default=_json_default))


def _listing_rows(listings) -> list[dict[str, Any]]:
    return [
        {
            "listing_id": listing.listing_id,
            "title": listing.title,
            "seller_id": listing.seller_id,
            "local_price": listing.local_price,
            "currency": listing.currency,
            "peg_price": listing.peg_price,
            "rating": listing.rating,
        }
        for listing in listings
    ]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--db-url", dest="db_url", help="Database URL (defaults to MARKETPLACE_DB_URL)")
    commands = parser.add_subparsers(dest="command", required=True)

    search = commands.add_parser("search", help="Fetch one fair page of a category")
    search.add_argument("category")
    search.add_argument(
        "--strategy",
        default="hash-round-robin",
        choices=STRATEGY_NAMES + tuple(STRATEGY_ALIASES),
    )
    search.add_argument("--page", type=int, default=1)
    search.add_argument("--page-size", dest="page_size", type=int)
    search.add_argument("--seed", type=int)
    search.add_argument("--max-per-seller", dest="max_per_seller", type=int)

    commands.add_parser("setup-rates", help="Install the default exchange-rate table")
    commands.add_parser("rates", help="Show the stored exchange rates and their last change")

    update = commands.add_parser("update-rates", help="Fluctuate every non-peg rate")
    update.add_argument("--max-change", dest="max_change", default="0.02")
    update.add_argument("--fixed", help="Apply a fixed relative change such as 0.01")

    recalc = commands.add_parser("recalculate", help="Recompute peg prices")
    recalc.add_argument("--older-than", dest="older_than", type=datetime.fromisoformat)
    recalc.add_argument("--limit", type=int)
    recalc.add_argument("--check", action="store_true", help="Preview without writing")
    recalc.add_argument(
        "--samples", type=int, default=0, help="With --check, show this many candidates"
    )

    prices = commands.add_parser("prices", help="List listings ordered by peg price")
    prices.add_argument("--currency")
    prices.add_argument("--category")
    prices.add_argument("--descending", action="store_true")
    prices.add_argument("--min", dest="min_price")
    prices.add_argument("--max", dest="max_price")
    prices.add_argument("--page", type=int, default=1)
    prices.add_argument("--page-size", dest="page_size", type=int)

    compare = commands.add_parser("compare", help="Compare seller spread across strategies")
    compare.add_argument("category")
    compare.add_argument("--page-size", dest="page_size", type=int, default=20)
    compare.add_argument("--max-per-seller", dest="max_per_seller", type=int, default=3)

    debug = commands.add_parser("debug", help="Explain round-robin placement for a category")
    debug.add_argument("category")
    debug.add_argument("--seed", type=int)

    stats = commands.add_parser("stats", help="Per-seller statistics")
    stats.add_argument("--category")

    seed = commands.add_parser("seed", help="Generate sample listings")
    seed.add_argument("--count", type=int, default=1000)
    seed.add_argument("--sellers", type=int, default=20)
    seed.add_argument("--seed", type=int)

    commands.add_parser("reset", help="Delete every listing and exchange rate")
    commands.add_parser("ping", help="Check database connectivity")
    return parser


def run(args: argparse.Namespace, marketplace: FairMarketplace) -> int:
    if args.command == "search":
        result = marketplace.search(
            args.category,
            args.strategy,
            args.page,
            args.page_size,
            seed=args.seed,
            max_per_seller=args.max_per_seller,
        )
        _emit(
            {
                "strategy": result.label,
                "seed": result.seed,
                "max_per_seller": result.max_per_seller,
                "pagination": asdict(result.pagination),
                "listings": _listing_rows(result.listings),
            }
        )
    elif args.command == "setup-rates":
        _emit(marketplace.setup_rates())
    elif args.command == "rates":
        _emit(marketplace.exchange_rates())
    elif args.command == "update-rates":
        policy = FixedChange(args.fixed) if args.fixed else RandomFluctuation(args.max_change)
        _emit(marketplace.update_rates(policy))
    elif args.command == "recalculate":
        if args.check:
            _emit(
                marketplace.check_recalculate(args.older_than, args.limit, samples=args.samples)
            )
        else:
            _emit(marketplace.recalculate(args.older_than, args.limit))
    elif args.command == "prices":
        if args.min_price is not None or args.max_price is not None:
            result = marketplace.search_price_range(
                args.min_price or "0",
                args.max_price or UNBOUNDED_PRICE,
                args.currency,
                category=args.category,
                page=args.page,
                page_size=args.page_size,
            )
        else:
            result = marketplace.list_by_price(
                args.currency,
                ascending=not args.descending,
                page=args.page,
                page_size=args.page_size,
                category=args.category,
            )
        rows = _listing_rows(result.listings)
        for row, display in zip(rows, result.display_prices):
            row["display_price"] = display
        _emit(
            {
                "currency": result.currency,
                "pagination": asdict(result.pagination),
                "listings": rows,
            }
        )
    elif args.command == "compare":
        _emit(
            marketplace.compare_strategies(
                args.category, page_size=args.page_size, max_per_seller=args.max_per_seller
            )
        )
    elif args.command == "debug":
        _emit(marketplace.debug_distribution(args.category, seed=args.seed))
    elif args.command == "stats":
        print(marketplace.seller_stats(args.category).to_string())
    elif args.command == "seed":
        _emit(marketplace.seed_listings(args.count, seller_count=args.sellers, seed=args.seed))
    elif args.command == "reset":
        marketplace.reset()
        _emit({"reset": True})
    elif args.command == "ping":
        ok, message = marketplace.connection()
        _emit({"connected": ok, "error": message})
        return 0 if ok else 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    config = MarketplaceConfig.from_env()
    with FairMarketplace(args.db_url or config.db_url, config=config) as marketplace:
        try:
            return run(args, marketplace)
        except MarketplaceError as exc:
            LOGGER.error("%s failed: %s", args.command, exc)
            return 2


__all__ = ["build_parser", "run", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
