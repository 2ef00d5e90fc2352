"""Exception taxonomy surfaced by fair_marketplace.

Zero matches is never an error: an empty category yields a fully populated
:class:`~fair_marketplace.models.DistributionResult` with no listings.
"""

from __future__ import annotations

from typing import Any, Iterable


class MarketplaceError(Exception):
    """Base class for every error raised by the package."""


class InvalidRequest(MarketplaceError, ValueError):
    """A caller supplied a value the core refuses to guess around.

    Raised before the document store is touched.
    """

    def __init__(self, field: str, value: Any, detail: str) -> None:
        self.field = field
        self.value = value
        self.detail = detail
        super().__init__(f"Invalid {field}={value!r}: {detail}")


class RateNotFoundError(MarketplaceError, LookupError):
    """A conversion needed a currency that is missing from the rate cache."""

    def __init__(self, currency: str, known: Iterable[str], *, peg_currency: str = "USD") -> None:
        self.currency = currency
        self.known = tuple(sorted(known))
        available = ", ".join(self.known) if self.known else "none"
        super().__init__(
            f"Exchange rate not found for {currency} to {peg_currency}; "
            f"available rates: {available}. "
            "Run setup_rates() first to initialise exchange rates."
        )


class CollaboratorUnavailable(MarketplaceError, RuntimeError):
    """The document store failed; the core propagates instead of retrying."""

    def __init__(self, operation: str, cause: BaseException | str) -> None:
        self.operation = operation
        super().__init__(f"Document store call '{operation}' failed: {cause}")


__all__ = [
    "MarketplaceError",
    "InvalidRequest",
    "RateNotFoundError",
    "CollaboratorUnavailable",
]
