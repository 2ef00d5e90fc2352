"""Runtime configuration for fair_marketplace.

Values come from keyword arguments or, through :meth:`MarketplaceConfig.from_env`,
from the process environment after a ``.env`` file has been loaded.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

from dotenv import load_dotenv

from fair_marketplace.distribution.affinity import AFFINITY_KEYS

DEFAULT_CATEGORIES: tuple[str, ...] = (
    "RPG",
    "FPS",
    "Strategy",
    "Sports",
    "Racing",
    "Adventure",
    "Simulation",
    "Puzzle",
)
DEFAULT_CURRENCIES: tuple[str, ...] = ("PHP", "IDR", "MYR", "USD")


@dataclass(frozen=True, slots=True)
class MarketplaceConfig:
    db_url: str | None = None
    default_page_size: int = 10
    max_page_size: int = 100
    seed_window_ms: int = 60_000
    default_max_per_seller: int = 2
    max_max_per_seller: int = 10
    true_round_robin_max_candidates: int | None = 10_000
    peg_currency: str = "USD"
    supported_currencies: tuple[str, ...] = DEFAULT_CURRENCIES
    rate_place_overrides: Mapping[str, int] = field(
        default_factory=lambda: MappingProxyType({"IDR": 8})
    )
    recalculation_batch_size: int = 500
    seller_affinity: str = "numeric-suffix"
    categories: tuple[str, ...] = DEFAULT_CATEGORIES

    def __post_init__(self) -> None:
        problems = self.validate()
        if problems:
            raise ValueError("Invalid marketplace configuration: " + "; ".join(problems))

    def validate(self) -> list[str]:
        """Return every problem found; an empty list means the config is usable."""

        problems: list[str] = []
        if self.default_page_size < 1:
            problems.append("default_page_size must be positive")
        if self.max_page_size < 1:
            problems.append("max_page_size must be positive")
        if self.default_page_size > self.max_page_size:
            problems.append("default_page_size cannot exceed max_page_size")
        if self.seed_window_ms < 1:
            problems.append("seed_window_ms must be positive")
        if self.default_max_per_seller < 1:
            problems.append("default_max_per_seller must be positive")
        if self.max_max_per_seller < self.default_max_per_seller:
            problems.append("max_max_per_seller cannot be below default_max_per_seller")
        if (
            self.true_round_robin_max_candidates is not None
            and self.true_round_robin_max_candidates < 1
        ):
            problems.append("true_round_robin_max_candidates must be positive or None")
        if self.peg_currency not in self.supported_currencies:
            problems.append(f"peg currency {self.peg_currency} must be a supported currency")
        if self.recalculation_batch_size < 1:
            problems.append("recalculation_batch_size must be positive")
        if self.seller_affinity not in AFFINITY_KEYS:
            problems.append(
                f"seller_affinity must be one of {', '.join(sorted(AFFINITY_KEYS))}"
            )
        if not self.categories:
            problems.append("at least one category is required")
        return problems

    @classmethod
    def from_env(
        cls,
        *,
        env_file: str | Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> "MarketplaceConfig":
        """Build a config from ``MARKETPLACE_*`` variables.

        When ``environ`` is omitted a ``.env`` file is loaded first (existing
        variables win) and ``os.environ`` is read.
        """

        if environ is None:
            load_dotenv(env_file)
            environ = os.environ
        window_seconds = _int_setting(environ, "MARKETPLACE_SEED_WINDOW_SECONDS", 60)
        return cls(
            db_url=environ.get("MARKETPLACE_DB_URL") or environ.get("MONGODB_URI") or None,
            default_page_size=_int_setting(environ, "MARKETPLACE_PAGE_SIZE", 10),
            max_page_size=_int_setting(environ, "MARKETPLACE_MAX_PAGE_SIZE", 100),
            seed_window_ms=window_seconds * 1000,
            peg_currency=environ.get("MARKETPLACE_PEG_CURRENCY", "USD").upper(),
            seller_affinity=environ.get("MARKETPLACE_SELLER_AFFINITY", "numeric-suffix"),
        )


def _int_setting(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


__all__ = ["MarketplaceConfig", "DEFAULT_CATEGORIES", "DEFAULT_CURRENCIES"]
