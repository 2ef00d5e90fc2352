"""Time-windowed seeds that keep page boundaries stable for a minute."""

from __future__ import annotations

from fair_marketplace.errors import InvalidRequest
from fair_marketplace.utils.clock import Clock, SystemClock, epoch_millis

DEFAULT_SEED_WINDOW_MS = 60_000


class SeedClock:
    """Derive the ordering seed for a search.

    An explicit seed always wins (``0`` included). Otherwise the seed is the
    index of the current window, so every request inside the same window sees
    the same ordering and adjacent pages neither repeat nor skip listings.
    """

    def __init__(self, window_ms: int = DEFAULT_SEED_WINDOW_MS, clock: Clock | None = None) -> None:
        if isinstance(window_ms, bool) or not isinstance(window_ms, int) or window_ms < 1:
            raise ValueError("window_ms must be a positive integer")
        self.window_ms = window_ms
        self.clock = clock or SystemClock()

    def seed(self, explicit: int | None = None) -> int:
        if explicit is not None:
            if isinstance(explicit, bool) or not isinstance(explicit, int):
                raise InvalidRequest("seed", explicit, "seed must be an integer")
            return explicit
        return epoch_millis(self.clock.now()) // self.window_ms


__all__ = ["SeedClock", "DEFAULT_SEED_WINDOW_MS"]
