"""Database seeding utilities for :mod:`fair_marketplace`."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

__all__ = ["generate_listings", "seed_listings"]

if TYPE_CHECKING:  # pragma: no cover - import only for static analyzers
    from fair_marketplace.seeds.populate_listings import generate_listings as generate_listings
    from fair_marketplace.seeds.populate_listings import seed_listings as seed_listings


def __getattr__(name: str) -> Any:
    """Lazily expose seed helpers so importing the package does not load Faker."""

    if name in {"generate_listings", "seed_listings"}:
        from fair_marketplace.seeds.populate_listings import generate_listings as _generate
        from fair_marketplace.seeds.populate_listings import seed_listings as _seed

        return {"generate_listings": _generate, "seed_listings": _seed}[name]
    raise AttributeError(f"module 'fair_marketplace.seeds' has no attribute {name}")
