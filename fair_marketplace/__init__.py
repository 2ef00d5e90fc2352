"""Public interface for the fair_marketplace package."""

from __future__ import annotations

import random
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from importlib import metadata as importlib_metadata
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import quote, urlparse, urlunparse

import pandas as pd

from fair_marketplace import analysis
from fair_marketplace.analysis import DistributionDebug, StrategyComparison
from fair_marketplace.config import MarketplaceConfig
from fair_marketplace.db import DEFAULT_SQLITE_DB_PATH
from fair_marketplace.db.base_backend import BackendStrategy
from fair_marketplace.db.mongo_backend import MongoBackend
from fair_marketplace.db.relational_backend import RelationalBackend
from fair_marketplace.db.sqlite_backend import SQLiteBackend
from fair_marketplace.distribution.affinity import SellerAffinityKey, resolve_affinity
from fair_marketplace.distribution.engine import DistributionEngine, default_strategies
from fair_marketplace.distribution.pager import validate_page, validate_page_size
from fair_marketplace.distribution.seed_clock import SeedClock
from fair_marketplace.distribution.strategy import (
    HASH_ROUND_ROBIN,
    QUOTA,
    STRATEGY_NAMES,
    TRUE_ROUND_ROBIN,
)
from fair_marketplace.errors import (
    CollaboratorUnavailable,
    InvalidRequest,
    MarketplaceError,
    RateNotFoundError,
)
from fair_marketplace.models import (
    DistributionRequest,
    DistributionResult,
    ExchangeRate,
    Listing,
    ListingFilter,
    Pagination,
    PersistenceResult,
    PriceQueryResult,
)
from fair_marketplace.pricing.converter import from_peg, peg_range, to_peg
from fair_marketplace.pricing.decimal_value import DecimalLike, to_decimal
from fair_marketplace.pricing.fluctuation import FluctuationPolicy
from fair_marketplace.pricing.rate_cache import DEFAULT_EXCHANGE_RATES, ExchangeRateCache, RateSnapshot
from fair_marketplace.pricing.rates import RateManager
from fair_marketplace.pricing.recalculation import (
    RecalculationEngine,
    RecalculationMetrics,
    RecalculationPreview,
    validate_selection,
)
from fair_marketplace.utils.clock import Clock, SystemClock
from fair_marketplace.utils.logger import get_logger

LOGGER = get_logger(__name__)

__all__ = [
    "__version__",
    "DatabaseBackend",
    "DatabaseConnectionInfo",
    "FairMarketplace",
    "MarketplaceConfig",
    "MarketplaceError",
    "InvalidRequest",
    "RateNotFoundError",
    "CollaboratorUnavailable",
    "DistributionResult",
    "Listing",
    "ExchangeRate",
    "PersistenceResult",
    "seed_listings",
]

try:
    __version__ = importlib_metadata.version("fair-marketplace")
except importlib_metadata.PackageNotFoundError:  # pragma: no cover - fallback for local runs
    __version__ = "0.1.0"


def seed_listings(*args, **kwargs):
    from fair_marketplace.seeds.populate_listings import seed_listings as _seed_listings

    return _seed_listings(*args, **kwargs)


class DatabaseBackend(str, Enum):
    """Supported database engines for FairMarketplace."""

    SQLITE = "sqlite"
    MYSQL = "mysql"
    POSTGRES = "postgres"
    MONGODB = "mongodb"

    @classmethod
    def resolve_backend_and_scheme(cls, scheme: str) -> tuple["DatabaseBackend", str]:
        """Return backend enum + canonical scheme used in connection URLs."""

        if not scheme:
            raise ValueError("Database URL must include a scheme (e.g. mongodb:// or sqlite://)")
        scheme_lower = scheme.lower()
        base_scheme, _, driver = scheme_lower.partition("+")
        if base_scheme in {"postgresql", "postgres"}:
            return cls.POSTGRES, scheme_lower if driver else "postgresql"
        if base_scheme == "sqlite":
            return cls.SQLITE, "sqlite"
        if base_scheme == "mysql":
            # Preserve optional driver hints such as ``mysql+pymysql``.
            return cls.MYSQL, scheme_lower if driver else "mysql"
        if base_scheme == "mongodb":
            # Keep srv-style schemes intact so pymongo can route via DNS.
            return cls.MONGODB, scheme_lower if driver else "mongodb"
        raise ValueError(
            "Unsupported database backend. Supported values are SQLite, MySQL, "
            "Postgres, and MongoDB."
        )

    @classmethod
    def from_scheme(cls, scheme: str) -> "DatabaseBackend":
        backend, _ = cls.resolve_backend_and_scheme(scheme)
        return backend


@dataclass(slots=True)
class DatabaseConnectionInfo:
    """Represents how FairMarketplace should talk to the document store."""

    backend: DatabaseBackend
    url: str
    name: str | None
    username: str | None = None
    password: str | None = None
    host: str | None = None
    port: int | None = None

    @classmethod
    def from_url(cls, url: str) -> "DatabaseConnectionInfo":
        """Create a connection object by parsing a database URL/DSN."""

        parsed = urlparse(url)
        if not parsed.scheme:
            raise ValueError("Database URL must include a scheme (e.g. mongodb:// or sqlite://)")
        backend, canonical_scheme = DatabaseBackend.resolve_backend_and_scheme(parsed.scheme)
        cleaned_url = url
        if parsed.scheme != canonical_scheme:
            parsed = parsed._replace(scheme=canonical_scheme)
            cleaned_url = urlunparse(parsed)
        name = parsed.path[1:] if parsed.path and parsed.path != "/" else None
        return cls(
            backend=backend,
            url=cleaned_url,
            name=name,
            username=parsed.username,
            password=parsed.password,
            host=parsed.hostname,
            port=parsed.port,
        )

    @classmethod
    def default_sqlite(cls, db_path: str | Path = DEFAULT_SQLITE_DB_PATH) -> "DatabaseConnectionInfo":
        path = Path(db_path)
        return cls(
            backend=DatabaseBackend.SQLITE,
            url=f"sqlite:///{quote(path.as_posix(), safe='/:')}",
            name=str(path),
        )

    @property
    def is_sqlite(self) -> bool:
        return self.backend is DatabaseBackend.SQLITE

    @property
    def is_external(self) -> bool:
        """Return True for MySQL/Postgres/MongoDB backends."""

        return not self.is_sqlite


class FairMarketplace:
    """Package facade: fair listing search plus peg-currency pricing.

    Callers supply either a ``DatabaseConnectionInfo``, a DSN string
    (``mongodb://host/marketplace``), or nothing, in which case a local
    SQLite file is used. Tests and embedders can pass a ready
    ``BackendStrategy`` through ``backend`` instead.
    """

    def __init__(
        self,
        db_config: DatabaseConnectionInfo | str | None = None,
        *,
        config: MarketplaceConfig | None = None,
        backend: BackendStrategy | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        affinity: SellerAffinityKey | None = None,
    ) -> None:
        self.config = config or MarketplaceConfig()
        self.clock = clock or SystemClock()
        self.affinity = affinity or resolve_affinity(self.config.seller_affinity)
        if backend is not None:
            self.connection_info: DatabaseConnectionInfo | None = None
            self.store = backend
        else:
            self.connection_info = self._build_connection_info(db_config or self.config.db_url)
            self.store = self._build_backend(self.connection_info)
        self._schema_ready = False

        self.cache = ExchangeRateCache(self.config.peg_currency)
        self.rates = RateManager(
            self.store,
            self.cache,
            clock=self.clock,
            supported_currencies=self.config.supported_currencies,
            place_overrides=self.config.rate_place_overrides,
        )
        self.engine = DistributionEngine(
            self.store,
            strategies=default_strategies(
                affinity=self.affinity,
                rng=rng,
                true_round_robin_max_candidates=self.config.true_round_robin_max_candidates,
                default_max_per_seller=self.config.default_max_per_seller,
                max_max_per_seller=self.config.max_max_per_seller,
            ),
            seed_clock=SeedClock(self.config.seed_window_ms, self.clock),
            default_page_size=self.config.default_page_size,
            max_page_size=self.config.max_page_size,
        )
        self.recalculation = RecalculationEngine(
            self.store,
            self.rates,
            clock=self.clock,
            batch_size=self.config.recalculation_batch_size,
        )

    @staticmethod
    def _build_connection_info(db_config: DatabaseConnectionInfo | str | None) -> DatabaseConnectionInfo:
        if isinstance(db_config, DatabaseConnectionInfo):
            return db_config
        if isinstance(db_config, str):
            return DatabaseConnectionInfo.from_url(db_config)
        return DatabaseConnectionInfo.default_sqlite()

    @staticmethod
    def _build_backend(info: DatabaseConnectionInfo) -> BackendStrategy:
        if info.backend is DatabaseBackend.SQLITE:
            return SQLiteBackend(Path(info.name or DEFAULT_SQLITE_DB_PATH))
        if info.backend is DatabaseBackend.MONGODB:
            return MongoBackend(info.url, database=info.name)
        return RelationalBackend(info.url)

    def _backend(self) -> BackendStrategy:
        if not self._schema_ready:
            self.store.ensure_schema()
            self._schema_ready = True
        return self.store

    # Distribution -----------------------------------------------------

    def search(
        self,
        category: str,
        strategy: str = "hash-round-robin",
        page: int = 1,
        page_size: int | None = None,
        *,
        seed: int | None = None,
        max_per_seller: int | None = None,
    ) -> DistributionResult:
        """Return one fair page of ``category`` using the named strategy."""

        plan = self.engine.plan(
            DistributionRequest(
                category=category,
                strategy=strategy,
                page=page,
                page_size=page_size,
                seed=seed,
                max_per_seller=max_per_seller,
            )
        )
        self._backend()
        return self.engine.execute(plan)

    # Rates and conversion ---------------------------------------------

    def setup_rates(self, initial: Mapping[str, DecimalLike] | None = None) -> list[ExchangeRate]:
        table = self.rates.validated_table(DEFAULT_EXCHANGE_RATES if initial is None else initial)
        self._backend()
        return self.rates.setup(table)

    def update_rates(self, policy: FluctuationPolicy | None = None) -> list[ExchangeRate]:
        self._backend()
        return self.rates.update(policy)

    def refresh_rates(self) -> RateSnapshot:
        self._backend()
        return self.rates.refresh()

    def exchange_rates(self) -> list[ExchangeRate]:
        """Return the persisted rate table with its last update and change."""

        return self._backend().load_rates()

    def to_peg(self, amount: DecimalLike, currency: str) -> Decimal:
        self._backend()
        return to_peg(amount, currency, self.rates.ensure_loaded())

    def from_peg(self, peg_amount: DecimalLike, currency: str) -> Decimal:
        self._backend()
        return from_peg(peg_amount, currency, self.rates.ensure_loaded())

    def recalculate(
        self, older_than: datetime | None = None, limit: int | None = None
    ) -> RecalculationMetrics:
        validate_selection(older_than, limit)
        self._backend()
        return self.recalculation.run(older_than, limit)

    def check_recalculate(
        self,
        older_than: datetime | None = None,
        limit: int | None = None,
        *,
        samples: int = 0,
    ) -> RecalculationPreview:
        validate_selection(older_than, limit, samples)
        self._backend()
        return self.recalculation.check(older_than, limit, samples=samples)

    # Price queries ----------------------------------------------------

    def _check_currency(self, currency: str) -> None:
        if currency not in self.config.supported_currencies:
            raise InvalidRequest(
                "currency",
                currency,
                "supported currencies are " + ", ".join(self.config.supported_currencies),
            )

    def _price_page(
        self,
        listing_filter: ListingFilter,
        currency: str,
        *,
        ascending: bool,
        page: int,
        page_size: int | None,
    ) -> PriceQueryResult:
        size = validate_page_size(
            self.config.default_page_size if page_size is None else page_size,
            self.config.max_page_size,
        )
        validate_page(page)
        store = self._backend()
        snapshot = self.rates.ensure_loaded()
        direction = 1 if ascending else -1
        total = store.count_matching(listing_filter)
        pagination = Pagination.build(page, size, total)
        listings = store.find_matching(
            listing_filter,
            sort=[("peg_price", direction), ("listing_id", 1)],
            skip=pagination.skip,
            limit=size,
        )
        return PriceQueryResult(
            listings=listings,
            pagination=pagination,
            currency=currency,
            display_prices=[from_peg(listing.peg_price, currency, snapshot) for listing in listings],
            min_peg_price=listing_filter.min_peg_price,
            max_peg_price=listing_filter.max_peg_price,
        )

    def list_by_price(
        self,
        currency: str | None = None,
        *,
        ascending: bool = True,
        page: int = 1,
        page_size: int | None = None,
        category: str | None = None,
    ) -> PriceQueryResult:
        """Sort by the indexed peg price and show prices in ``currency``."""

        display = currency or self.config.peg_currency
        self._check_currency(display)
        return self._price_page(
            ListingFilter(category=category),
            display,
            ascending=ascending,
            page=page,
            page_size=page_size,
        )

    def search_price_range(
        self,
        min_price: DecimalLike,
        max_price: DecimalLike,
        currency: str | None = None,
        *,
        category: str | None = None,
        page: int = 1,
        page_size: int | None = None,
    ) -> PriceQueryResult:
        """Find listings whose price, expressed in ``currency``, falls in the range.

        The bounds are converted to the peg once and the query runs on the peg
        price alone, so listings in every currency are compared fairly.
        """

        display = currency or self.config.peg_currency
        self._check_currency(display)
        try:
            low, high = to_decimal(min_price), to_decimal(max_price)
        except ValueError as exc:
            raise InvalidRequest("price", (min_price, max_price), str(exc)) from exc
        if low < 0:
            raise InvalidRequest("min_price", min_price, "must be non-negative")
        if low > high:
            raise InvalidRequest("max_price", max_price, f"must not be below min_price {min_price}")
        self._backend()
        peg_low, peg_high = peg_range(low, high, display, self.rates.ensure_loaded())
        return self._price_page(
            ListingFilter(category=category, min_peg_price=peg_low, max_peg_price=peg_high),
            display,
            ascending=True,
            page=page,
            page_size=page_size,
        )

    # Analysis ---------------------------------------------------------

    def seller_stats(self, category: str | None = None) -> pd.DataFrame:
        listings = self._backend().find_matching(ListingFilter(category=category))
        return analysis.seller_stats(listings)

    def price_distribution(self, category: str | None = None) -> dict[str, pd.DataFrame]:
        listings = self._backend().find_matching(ListingFilter(category=category))
        return analysis.price_distribution(listings)

    def compare_strategies(
        self,
        category: str,
        *,
        page_size: int = 20,
        max_per_seller: int = 3,
        seed: int | None = None,
    ) -> list[StrategyComparison]:
        """Run every strategy on page one and score how evenly sellers appear."""

        comparisons: list[StrategyComparison] = []
        for name in STRATEGY_NAMES:
            strategy = self.engine.strategy(name)
            try:
                result = self.search(
                    category,
                    name,
                    1,
                    page_size,
                    seed=seed,
                    max_per_seller=max_per_seller if name == QUOTA else None,
                )
            except InvalidRequest as exc:
                LOGGER.warning("Skipping %s comparison: %s", strategy.label, exc)
                comparisons.append(StrategyComparison(name, strategy.label, error=str(exc)))
                continue
            distribution = analysis.seller_distribution(result.listings)
            comparisons.append(
                StrategyComparison(
                    strategy=name,
                    label=strategy.label,
                    listing_count=len(result.listings),
                    unique_sellers=len(distribution),
                    distribution=distribution,
                    fairness_score=analysis.fairness_score(distribution),
                )
            )
        return comparisons

    def debug_distribution(
        self, category: str, *, seed: int | None = None, page_size: int = 5
    ) -> DistributionDebug:
        """Explain how both round-robin strategies place ``category``'s sellers."""

        plan = self.engine.plan(
            DistributionRequest(
                category=category,
                strategy=HASH_ROUND_ROBIN,
                page_size=page_size,
                seed=seed,
            )
        )
        offers = self._backend().count_by("seller_id", ListingFilter(category=category))
        report = DistributionDebug(
            category=category,
            seed=plan.seed,
            total_count=sum(offers.values()),
            sellers=analysis.seller_placements(offers, plan.seed, self.affinity),
        )
        if not offers:
            LOGGER.info("No listings in %s; run seed_listings() first", category)
            return report
        report.hash_page = analysis.seller_distribution(self.engine.execute(plan).listings)
        try:
            true_result = self.engine.execute(
                replace(plan, strategy=self.engine.strategy(TRUE_ROUND_ROBIN))
            )
        except InvalidRequest as exc:
            report.true_round_robin_error = str(exc)
        else:
            report.true_round_robin_page = analysis.seller_distribution(true_result.listings)
        return report

    # Maintenance ------------------------------------------------------

    def seed_listings(self, count: int = 1000, *, replace: bool = True, **options: Any) -> PersistenceResult:
        """Generate sample listings priced with the current rates."""

        store = self._backend()
        snapshot = self.rates.ensure_loaded()
        if len(snapshot) <= 1:
            LOGGER.info("No exchange rates stored yet; installing the default table")
            self.rates.setup()
            snapshot = self.cache.snapshot
        options.setdefault("categories", self.config.categories)
        options.setdefault("currencies", self.config.supported_currencies)
        options.setdefault("now", self.clock.now())
        return seed_listings(
            store,
            count,
            replace=replace,
            rates=snapshot,
            **options,
        )

    def reset(self) -> None:
        """Drop every listing and exchange rate and empty the cache."""

        self._backend().reset()
        self.cache.invalidate()

    def connection(self) -> tuple[bool, str | None]:
        """Attempt to reach the document store and report the outcome."""

        try:
            self.store.ping()
        except CollaboratorUnavailable as exc:
            return False, str(exc)
        return True, None

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "FairMarketplace":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
