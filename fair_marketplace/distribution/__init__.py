"""Seller-fair distribution strategies and the engine that runs them."""

from __future__ import annotations

from fair_marketplace.distribution.engine import DistributionEngine, default_strategies
from fair_marketplace.distribution.strategy import (
    STRATEGY_ALIASES,
    STRATEGY_NAMES,
    DistributionStrategy,
    canonical_name,
)

__all__ = [
    "DistributionEngine",
    "DistributionStrategy",
    "STRATEGY_NAMES",
    "STRATEGY_ALIASES",
    "canonical_name",
    "default_strategies",
]
