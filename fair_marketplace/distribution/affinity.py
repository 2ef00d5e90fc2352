"""Seller affinity keys: map a seller identifier to a stable integer.

Round-robin strategies mix this integer with the seed to decide which seller
comes first. The default reads the numeric tail of ids such as
``seller_42``; ids that are too short or carry no digits all collapse to
``1`` and therefore share a position. Deployments whose seller ids are not
numbered should switch to :func:`crc32_key`.
"""

from __future__ import annotations

import re
import zlib
from typing import Callable, Mapping

SellerAffinityKey = Callable[[str], int]

_TRAILING_DIGITS = re.compile(r"(\d+)$")
# ``seller_`` is seven characters; anything shorter has no numeric part.
MIN_NUMBERED_LENGTH = 8


def numeric_suffix_key(seller_id: str) -> int:
    if len(seller_id) < MIN_NUMBERED_LENGTH:
        return 1
    match = _TRAILING_DIGITS.search(seller_id)
    if match is None:
        return 1
    return int(match.group(1))


def crc32_key(seller_id: str) -> int:
    return zlib.crc32(seller_id.encode("utf-8"))


AFFINITY_KEYS: Mapping[str, SellerAffinityKey] = {
    "numeric-suffix": numeric_suffix_key,
    "crc32": crc32_key,
}


def resolve_affinity(key: str | SellerAffinityKey) -> SellerAffinityKey:
    """Return the key function for ``key`` (a registered name or a callable)."""

    if callable(key):
        return key
    try:
        return AFFINITY_KEYS[key]
    except KeyError:
        raise ValueError(
            f"Unknown seller affinity {key!r}; expected one of {', '.join(sorted(AFFINITY_KEYS))}"
        ) from None


__all__ = [
    "SellerAffinityKey",
    "numeric_suffix_key",
    "crc32_key",
    "AFFINITY_KEYS",
    "resolve_affinity",
]
