"""Bulk peg-price recalculation with a side-effect free preview mode.

``check`` and ``run`` select candidates through the same
:func:`build_selection`, so the preview's ``total_available`` always equals
the count the real pass starts from.

A pass is read-then-write and not transactional: a listing edited while a
pass is running may have its new price overwritten, or may be missed until
the next pass.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Sequence

from fair_marketplace.db.base_backend import BackendStrategy
from fair_marketplace.errors import InvalidRequest
from fair_marketplace.models import Listing, ListingFilter, PriceUpdate
from fair_marketplace.pricing.converter import to_peg
from fair_marketplace.pricing.decimal_value import divide, quantize
from fair_marketplace.pricing.rate_cache import RateSnapshot
from fair_marketplace.pricing.rates import RateManager
from fair_marketplace.utils.clock import Clock, SystemClock, ensure_utc
from fair_marketplace.utils.logger import get_logger

LOGGER = get_logger(__name__)

DEFAULT_BATCH_SIZE = 500
# Throughput assumption behind the preview's duration estimate.
ESTIMATED_MS_PER_RECORD = 0.5
MIN_ESTIMATED_MS = 50


def build_selection(peg_currency: str, older_than: datetime | None = None) -> ListingFilter:
    """Listings whose peg price must be recomputed."""

    return ListingFilter(
        exclude_currency=peg_currency,
        converted_before=ensure_utc(older_than) if older_than is not None else None,
    )


def format_duration(milliseconds: float) -> str:
    if milliseconds < 1000:
        return f"{milliseconds:g}ms"
    if milliseconds < 60_000:
        return f"{milliseconds / 1000:.1f}s"
    if milliseconds < 3_600_000:
        return f"{milliseconds / 60_000:.1f}m"
    return f"{milliseconds / 3_600_000:.1f}h"


@dataclass(slots=True)
class CurrencyBreakdown:
    currency: str
    count: int
    avg_local_price: Decimal
    min_local_price: Decimal
    max_local_price: Decimal


@dataclass(slots=True)
class RecalculationSample:
    """One candidate with its stored and would-be peg price."""

    listing_id: str
    title: str
    currency: str
    local_price: Decimal
    current_peg_price: Decimal
    new_peg_price: Decimal | None
    current_rate: Decimal | None
    new_rate: Decimal | None
    converted_at: datetime | None = None


@dataclass(slots=True)
class RecalculationPreview:
    """What a recalculation with the same arguments would touch."""

    total_available: int
    records_to_process: int
    limit_applied: bool
    date_filter_applied: bool
    limit: int | None = None
    older_than: datetime | None = None
    currency_breakdown: list[CurrencyBreakdown] = field(default_factory=list)
    oldest_conversion: datetime | None = None
    newest_conversion: datetime | None = None
    missing_rates: tuple[str, ...] = ()
    estimated_ms: int = MIN_ESTIMATED_MS
    check_ms: float = 0.0
    samples: list[RecalculationSample] = field(default_factory=list)

    @property
    def estimated_duration(self) -> str:
        return format_duration(self.estimated_ms)

    @property
    def ready(self) -> bool:
        return not self.missing_rates


@dataclass(slots=True)
class RecalculationMetrics:
    total_available: int
    records_to_process: int
    processed: int
    elapsed_ms: float
    records_per_second: float
    limit_applied: bool
    limit: int | None = None


def validate_selection(older_than: datetime | None, limit: int | None, samples: int = 0) -> None:
    if older_than is not None and not isinstance(older_than, datetime):
        raise InvalidRequest("older_than", older_than, "expected a datetime or None")
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
        raise InvalidRequest("limit", limit, "limit must be a positive integer or None")
    if isinstance(samples, bool) or not isinstance(samples, int) or samples < 0:
        raise InvalidRequest("samples", samples, "samples must be a non-negative integer")


def summarise_currencies(listings: Sequence[Listing]) -> list[CurrencyBreakdown]:
    grouped: dict[str, list[Decimal]] = {}
    for listing in listings:
        grouped.setdefault(listing.currency, []).append(listing.local_price)
    breakdown = []
    for currency, prices in sorted(grouped.items()):
        total = sum(prices, Decimal(0))
        breakdown.append(
            CurrencyBreakdown(
                currency=currency,
                count=len(prices),
                avg_local_price=quantize(divide(total, len(prices))),
                min_local_price=min(prices),
                max_local_price=max(prices),
            )
        )
    return breakdown


def preview_samples(
    candidates: Sequence[Listing], snapshot: RateSnapshot, count: int
) -> list[RecalculationSample]:
    samples = []
    for listing in candidates[:count]:
        known = listing.currency in snapshot
        samples.append(
            RecalculationSample(
                listing_id=listing.listing_id,
                title=listing.title,
                currency=listing.currency,
                local_price=listing.local_price,
                current_peg_price=listing.peg_price,
                new_peg_price=(
                    to_peg(listing.local_price, listing.currency, snapshot) if known else None
                ),
                current_rate=listing.conversion_rate,
                new_rate=snapshot.rate_for(listing.currency) if known else None,
                converted_at=listing.converted_at,
            )
        )
    return samples


class RecalculationEngine:
    """Rewrites peg prices for non-peg listings from the current rate snapshot."""

    def __init__(
        self,
        store: BackendStrategy,
        rates: RateManager,
        *,
        clock: Clock | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.store = store
        self.rates = rates
        self.clock = clock or SystemClock()
        self.batch_size = batch_size

    def _select(
        self, older_than: datetime | None, limit: int | None
    ) -> tuple[int, list[Listing]]:
        selection = build_selection(self.rates.peg_currency, older_than)
        total = self.store.count_matching(selection)
        candidates = self.store.find_matching(selection, limit=limit)
        return total, candidates

    def check(
        self,
        older_than: datetime | None = None,
        limit: int | None = None,
        *,
        samples: int = 0,
    ) -> RecalculationPreview:
        """Preview a pass without writing anything.

        ``samples`` candidates are returned with their current and would-be
        peg prices.
        """

        validate_selection(older_than, limit, samples)
        snapshot = self.rates.ensure_loaded()
        started = time.perf_counter()
        total, candidates = self._select(older_than, limit)
        breakdown = summarise_currencies(candidates)
        missing = tuple(item.currency for item in breakdown if item.currency not in snapshot)
        stamps = [listing.converted_at for listing in candidates if listing.converted_at is not None]
        estimated = max(MIN_ESTIMATED_MS, math.ceil(len(candidates) * ESTIMATED_MS_PER_RECORD))
        preview = RecalculationPreview(
            total_available=total,
            records_to_process=len(candidates),
            limit_applied=limit is not None and limit < total,
            date_filter_applied=older_than is not None,
            limit=limit,
            older_than=older_than,
            currency_breakdown=breakdown,
            oldest_conversion=min(stamps) if stamps else None,
            newest_conversion=max(stamps) if stamps else None,
            missing_rates=missing,
            estimated_ms=estimated,
            check_ms=(time.perf_counter() - started) * 1000,
            samples=preview_samples(candidates, snapshot, samples),
        )
        if missing:
            LOGGER.warning(
                "Recalculation preview: no cached rate for %s; run setup_rates() first",
                ", ".join(missing),
            )
        LOGGER.info(
            "Recalculation preview: %s available, %s to process, estimated %s",
            preview.total_available,
            preview.records_to_process,
            preview.estimated_duration,
        )
        return preview

    def run(
        self, older_than: datetime | None = None, limit: int | None = None
    ) -> RecalculationMetrics:
        """Recompute and persist peg prices for the selected listings."""

        validate_selection(older_than, limit)
        # One snapshot for the whole pass, even if a refresh lands meanwhile.
        snapshot = self.rates.ensure_loaded()
        started = time.perf_counter()
        total, candidates = self._select(older_than, limit)
        used_rates = {
            currency: snapshot.rate_for(currency)
            for currency in sorted({listing.currency for listing in candidates})
        }
        converted_at = self.clock.now()
        updates = [
            PriceUpdate(
                listing_id=listing.listing_id,
                peg_price=to_peg(listing.local_price, listing.currency, snapshot),
                conversion_rate=used_rates[listing.currency],
                converted_at=converted_at,
            )
            for listing in candidates
        ]
        processed = 0
        for offset in range(0, len(updates), self.batch_size):
            batch = updates[offset : offset + self.batch_size]
            processed += self.store.update_peg_prices(batch).updated
            LOGGER.info("Recalculated %s/%s peg prices", processed, len(updates))
        elapsed_ms = (time.perf_counter() - started) * 1000
        per_second = processed / (elapsed_ms / 1000) if elapsed_ms > 0 else float(processed)
        metrics = RecalculationMetrics(
            total_available=total,
            records_to_process=len(candidates),
            processed=processed,
            elapsed_ms=elapsed_ms,
            records_per_second=per_second,
            limit_applied=limit is not None and limit < total,
            limit=limit,
        )
        LOGGER.info(
            "Recalculation finished: %s of %s listings in %.1f ms (%.0f/s)",
            metrics.processed,
            metrics.total_available,
            metrics.elapsed_ms,
            metrics.records_per_second,
        )
        return metrics


__all__ = [
    "DEFAULT_BATCH_SIZE",
    "build_selection",
    "format_duration",
    "summarise_currencies",
    "preview_samples",
    "validate_selection",
    "RecalculationSample",
    "CurrencyBreakdown",
    "RecalculationPreview",
    "RecalculationMetrics",
    "RecalculationEngine",
]
