"""Entry point that turns a :class:`DistributionRequest` into a fair page."""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Mapping

from fair_marketplace.db.base_backend import BackendStrategy
from fair_marketplace.distribution.affinity import SellerAffinityKey, numeric_suffix_key
from fair_marketplace.distribution.hash_round_robin import HashRoundRobin
from fair_marketplace.distribution.pager import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    paginate,
    validate_page,
    validate_page_size,
)
from fair_marketplace.distribution.quota import (
    DEFAULT_MAX_PER_SELLER,
    MAX_MAX_PER_SELLER,
    QuotaDistribution,
)
from fair_marketplace.distribution.seed_clock import SeedClock
from fair_marketplace.distribution.strategy import QUOTA, DistributionStrategy, canonical_name
from fair_marketplace.distribution.true_round_robin import DEFAULT_MAX_CANDIDATES, TrueRoundRobin
from fair_marketplace.distribution.weighted_random import WeightedRandom
from fair_marketplace.errors import InvalidRequest
from fair_marketplace.models import DistributionRequest, DistributionResult, ListingFilter
from fair_marketplace.utils.logger import get_logger

LOGGER = get_logger(__name__)


def default_strategies(
    *,
    affinity: SellerAffinityKey = numeric_suffix_key,
    rng: random.Random | None = None,
    true_round_robin_max_candidates: int | None = DEFAULT_MAX_CANDIDATES,
    default_max_per_seller: int = DEFAULT_MAX_PER_SELLER,
    max_max_per_seller: int = MAX_MAX_PER_SELLER,
) -> dict[str, DistributionStrategy]:
    """Build one instance of every bundled strategy keyed by canonical name."""

    strategies: list[DistributionStrategy] = [
        HashRoundRobin(affinity),
        TrueRoundRobin(affinity, max_candidates=true_round_robin_max_candidates),
        WeightedRandom(rng),
        QuotaDistribution(
            rng,
            default_max_per_seller=default_max_per_seller,
            max_max_per_seller=max_max_per_seller,
        ),
    ]
    return {strategy.name: strategy for strategy in strategies}


@dataclass(frozen=True, slots=True)
class SearchPlan:
    """A validated request, ready to run against the store."""

    strategy: DistributionStrategy
    category: str
    page: int
    page_size: int
    seed: int
    max_per_seller: int | None = None

    @property
    def skip(self) -> int:
        return (self.page - 1) * self.page_size


class DistributionEngine:
    """Validate, seed, arrange and paginate one search."""

    def __init__(
        self,
        store: BackendStrategy,
        *,
        strategies: Mapping[str, DistributionStrategy] | None = None,
        seed_clock: SeedClock | None = None,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self.store = store
        self.strategies = dict(strategies) if strategies is not None else default_strategies()
        self.seed_clock = seed_clock or SeedClock()
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def strategy(self, name: str) -> DistributionStrategy:
        canonical = canonical_name(name)
        try:
            return self.strategies[canonical]
        except KeyError:
            raise InvalidRequest("strategy", name, "strategy is not registered") from None

    def plan(self, request: DistributionRequest) -> SearchPlan:
        """Validate ``request`` and resolve its seed without touching the store."""

        if not isinstance(request.category, str) or not request.category.strip():
            raise InvalidRequest("category", request.category, "category must be a non-empty string")
        strategy = self.strategy(request.strategy)
        page = validate_page(request.page)
        page_size = validate_page_size(
            self.default_page_size if request.page_size is None else request.page_size,
            self.max_page_size,
        )
        quota: int | None = None
        if isinstance(strategy, QuotaDistribution):
            quota = strategy.resolve_quota(request.max_per_seller)
        return SearchPlan(
            strategy=strategy,
            category=request.category,
            page=page,
            page_size=page_size,
            seed=self.seed_clock.seed(request.seed),
            max_per_seller=quota,
        )

    def execute(self, plan: SearchPlan) -> DistributionResult:
        strategy = plan.strategy
        arrangement = strategy.arrange(
            self.store,
            ListingFilter(category=plan.category),
            seed=plan.seed,
            skip=plan.skip,
            limit=plan.page_size,
            max_per_seller=plan.max_per_seller,
        )
        listings, pagination = paginate(
            arrangement.listings,
            plan.page,
            plan.page_size,
            arrangement.total_count,
            offset=plan.skip,
            max_page_size=self.max_page_size,
        )
        LOGGER.info(
            "%s: category=%s page=%s/%s seed=%s returned %s of %s listings",
            strategy.label,
            plan.category,
            pagination.page,
            pagination.total_pages,
            plan.seed,
            len(listings),
            pagination.total_count,
        )
        return DistributionResult(
            listings=listings,
            pagination=pagination,
            strategy=strategy.name,
            label=strategy.label,
            seed=plan.seed if strategy.seed_stable else None,
            max_per_seller=plan.max_per_seller if strategy.name == QUOTA else None,
            seed_stable=strategy.seed_stable,
        )

    def search(self, request: DistributionRequest) -> DistributionResult:
        return self.execute(self.plan(request))


__all__ = ["DistributionEngine", "SearchPlan", "default_strategies"]
