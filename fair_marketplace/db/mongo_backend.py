"""MongoDB backend strategy."""

from __future__ import annotations

import random
from contextlib import contextmanager
from itertools import groupby
from typing import Any, Iterator, Mapping, Sequence

from pymongo import MongoClient, UpdateOne
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from fair_marketplace.db.base_backend import (
    BackendStrategy,
    SortSpec,
    WITHIN_SELLER_ORDER,
    validate_group_field,
    validate_sort,
)
from fair_marketplace.errors import CollaboratorUnavailable
from fair_marketplace.models import (
    ExchangeRate,
    Listing,
    ListingFilter,
    PersistenceResult,
    PriceUpdate,
)
from fair_marketplace.pricing.decimal_value import from_decimal128, to_decimal128
from fair_marketplace.utils.logger import get_logger

LOGGER = get_logger(__name__)

LISTINGS_COLLECTION = "marketplace_listings"
RATES_COLLECTION = "exchange_rates"

LISTING_INDEXES: tuple[tuple[str, list[tuple[str, int]]], ...] = (
    ("category_seller_idx", [("category", 1), ("seller_id", 1)]),
    ("category_date_idx", [("category", 1), ("created_at", -1)]),
    ("compound_roundrobin_idx", [("category", 1), ("seller_id", 1), ("created_at", -1)]),
    ("seller_idx", [("seller_id", 1)]),
    ("peg_price_idx", [("peg_price", 1)]),
    ("peg_price_category_idx", [("peg_price", 1), ("category", 1)]),
    ("rating_idx", [("rating", -1)]),
    ("currency_converted_idx", [("currency", 1), ("converted_at", 1)]),
)


@contextmanager
def _store_call(operation: str) -> Iterator[None]:
    try:
        yield
    except PyMongoError as exc:
        raise CollaboratorUnavailable(operation, exc) from exc


def _mongo_field(field: str) -> str:
    return "_id" if field == "listing_id" else field


WITHIN_SELLER_SORT: dict[str, int] = {
    _mongo_field(field): direction for field, direction in WITHIN_SELLER_ORDER
}


def seller_rank_expression(seller_rank: Mapping[str, int]) -> dict[str, Any]:
    """Aggregation expression resolving ``$seller_id`` to its rank.

    Sellers absent from ``seller_rank`` resolve to one past the largest rank.
    """

    sellers = list(seller_rank)
    missing = max(seller_rank.values(), default=0) + 1
    return {
        "$let": {
            "vars": {"position": {"$indexOfArray": [sellers, "$seller_id"]}},
            "in": {
                "$cond": [
                    {"$eq": ["$$position", -1]},
                    missing,
                    {"$arrayElemAt": [[seller_rank[seller] for seller in sellers], "$$position"]},
                ]
            },
        }
    }


def _window_stages(skip: int, limit: int | None) -> list[dict[str, int]]:
    stages: list[dict[str, int]] = []
    if skip:
        stages.append({"$skip": skip})
    if limit is not None:
        stages.append({"$limit": limit})
    return stages


def build_query(listing_filter: ListingFilter) -> dict[str, Any]:
    """Translate a :class:`ListingFilter` into a MongoDB query document."""

    query: dict[str, Any] = {}
    if listing_filter.category is not None:
        query["category"] = listing_filter.category
    if listing_filter.seller_id is not None:
        query["seller_id"] = listing_filter.seller_id
    currency_clause: dict[str, Any] = {}
    if listing_filter.currency is not None:
        currency_clause["$eq"] = listing_filter.currency
    if listing_filter.exclude_currency is not None:
        currency_clause["$ne"] = listing_filter.exclude_currency
    if currency_clause:
        query["currency"] = currency_clause
    if listing_filter.converted_before is not None:
        # ``None`` also matches documents where the field is missing.
        query["$or"] = [
            {"converted_at": {"$lt": listing_filter.converted_before}},
            {"converted_at": None},
        ]
    price_clause: dict[str, Any] = {}
    if listing_filter.min_peg_price is not None:
        price_clause["$gte"] = to_decimal128(listing_filter.min_peg_price)
    if listing_filter.max_peg_price is not None:
        price_clause["$lte"] = to_decimal128(listing_filter.max_peg_price)
    if price_clause:
        query["peg_price"] = price_clause
    return query


def listing_to_document(listing: Listing) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "_id": listing.listing_id,
        "title": listing.title,
        "category": listing.category,
        "seller_id": listing.seller_id,
        "local_price": to_decimal128(listing.local_price),
        "currency": listing.currency,
        "peg_price": to_decimal128(listing.peg_price),
        "rating": listing.rating,
        "created_at": listing.created_at,
        "stock": listing.stock,
        "converted_at": listing.converted_at,
        "conversion_rate": None,
    }
    if listing.conversion_rate is not None:
        doc["conversion_rate"] = to_decimal128(listing.conversion_rate)
    return doc


def document_to_listing(doc: dict[str, Any]) -> Listing:
    return Listing(
        listing_id=str(doc["_id"]),
        title=doc.get("title", ""),
        category=doc["category"],
        seller_id=doc["seller_id"],
        local_price=from_decimal128(doc["local_price"]),
        currency=doc["currency"],
        peg_price=from_decimal128(doc["peg_price"]),
        rating=float(doc.get("rating", 0.0)),
        created_at=doc["created_at"],
        stock=int(doc.get("stock", 0)),
        converted_at=doc.get("converted_at"),
        conversion_rate=from_decimal128(doc.get("conversion_rate")),
    )


def _rate_to_document(rate: ExchangeRate) -> dict[str, Any]:
    return {
        "currency": rate.currency,
        "rate_to_peg": to_decimal128(rate.rate_to_peg),
        "last_updated": rate.last_updated,
        "previous_rate": (
            to_decimal128(rate.previous_rate) if rate.previous_rate is not None else None
        ),
        "change_percent": (
            to_decimal128(rate.change_percent) if rate.change_percent is not None else None
        ),
    }


def _document_to_rate(doc: dict[str, Any]) -> ExchangeRate:
    return ExchangeRate(
        currency=doc["currency"],
        rate_to_peg=from_decimal128(doc["rate_to_peg"]),
        last_updated=doc["last_updated"],
        previous_rate=from_decimal128(doc.get("previous_rate")),
        change_percent=from_decimal128(doc.get("change_percent")),
    )


class MongoBackend(BackendStrategy):
    """Backend strategy that stores listings and rates inside MongoDB."""

    def __init__(
        self,
        url: str,
        *,
        database: str | None = None,
        server_selection_timeout_ms: int = 5000,
    ) -> None:
        self.url = url
        self._client = MongoClient(
            url,
            serverSelectionTimeoutMS=server_selection_timeout_ms,
            tz_aware=True,
        )
        db = self._client.get_default_database() if database is None else self._client[database]
        if db is None:
            raise ValueError("MongoDB connection URI must include a database name")
        self._listings: Collection = db[LISTINGS_COLLECTION]
        self._rates: Collection = db[RATES_COLLECTION]

    def ensure_schema(self) -> None:
        with _store_call("ensure_schema"):
            LOGGER.info("Ensuring MongoDB listing and rate collections exist")
            self._client.admin.command("ping")
            for name, keys in LISTING_INDEXES:
                self._listings.create_index(keys, name=name)
            self._rates.create_index([("last_updated", -1)], name="last_updated_idx")

    def ping(self) -> None:
        with _store_call("ping"):
            self._client.admin.command("ping")

    def find_matching(
        self,
        listing_filter: ListingFilter,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Listing]:
        sort_spec = validate_sort(sort)
        with _store_call("find_matching"):
            cursor = self._listings.find(build_query(listing_filter))
            if sort_spec:
                cursor = cursor.sort([(_mongo_field(field), direction) for field, direction in sort_spec])
            if skip:
                cursor = cursor.skip(skip)
            if limit is not None:
                cursor = cursor.limit(limit)
            return [document_to_listing(doc) for doc in cursor]

    def count_matching(self, listing_filter: ListingFilter) -> int:
        with _store_call("count_matching"):
            return int(self._listings.count_documents(build_query(listing_filter)))

    def group_by(self, field: str, listing_filter: ListingFilter) -> list[tuple[str, list[Listing]]]:
        # Groups are cut from one sorted cursor so no document holds a whole group.
        group_field = validate_group_field(field)
        ordered = self.find_matching(listing_filter, sort=[(group_field, 1), *WITHIN_SELLER_ORDER])
        return [
            (key, list(members))
            for key, members in groupby(ordered, key=lambda listing: getattr(listing, group_field))
        ]

    def count_by(self, field: str, listing_filter: ListingFilter) -> dict[str, int]:
        group_field = validate_group_field(field)
        pipeline = [
            {"$match": build_query(listing_filter)},
            {"$group": {"_id": f"${group_field}", "count": {"$sum": 1}}},
            {"$sort": {"_id": 1}},
        ]
        with _store_call("count_by"):
            return {
                str(group["_id"]): int(group["count"])
                for group in self._listings.aggregate(pipeline, allowDiskUse=True)
            }

    def find_ranked(
        self,
        listing_filter: ListingFilter,
        seller_rank: Mapping[str, int],
        *,
        per_seller: int | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Listing]:
        pipeline: list[dict[str, Any]] = [{"$match": build_query(listing_filter)}]
        if per_seller is not None:
            # $topN keeps each seller's group document bounded by the quota.
            pipeline += [
                {
                    "$group": {
                        "_id": "$seller_id",
                        "listings": {
                            "$topN": {
                                "n": per_seller,
                                "sortBy": WITHIN_SELLER_SORT,
                                "output": "$$ROOT",
                            }
                        },
                    }
                },
                {"$unwind": "$listings"},
                {"$replaceRoot": {"newRoot": "$listings"}},
            ]
        pipeline += [
            {"$addFields": {"_seller_rank": seller_rank_expression(seller_rank)}},
            {"$sort": {"_seller_rank": 1, **WITHIN_SELLER_SORT}},
            *_window_stages(skip, limit),
            {"$project": {"_seller_rank": 0}},
        ]
        with _store_call("find_ranked"):
            return [
                document_to_listing(doc)
                for doc in self._listings.aggregate(pipeline, allowDiskUse=True)
            ]

    def find_weighted(
        self,
        listing_filter: ListingFilter,
        *,
        skip: int = 0,
        limit: int | None = None,
        rng: random.Random | None = None,
    ) -> list[Listing]:
        pipeline = [
            {"$match": build_query(listing_filter)},
            {
                "$setWindowFields": {
                    "partitionBy": "$seller_id",
                    "output": {"_seller_offers": {"$count": {}}},
                }
            },
            {
                "$addFields": {
                    "_weighted_score": {
                        "$add": [
                            {"$multiply": [{"$rand": {}}, 100]},
                            {"$divide": [100, {"$add": ["$_seller_offers", 1]}]},
                        ]
                    }
                }
            },
            {"$sort": {"_weighted_score": -1, "_id": 1}},
            *_window_stages(skip, limit),
            {"$project": {"_seller_offers": 0, "_weighted_score": 0}},
        ]
        with _store_call("find_weighted"):
            return [
                document_to_listing(doc)
                for doc in self._listings.aggregate(pipeline, allowDiskUse=True)
            ]

    def insert_listings(self, listings: Sequence[Listing]) -> PersistenceResult:
        result = PersistenceResult()
        if not listings:
            return result
        operations = [
            UpdateOne({"_id": listing.listing_id}, {"$set": listing_to_document(listing)}, upsert=True)
            for listing in listings
        ]
        with _store_call("insert_listings"):
            outcome = self._listings.bulk_write(operations, ordered=False)
        result.inserted = int(outcome.upserted_count)
        result.updated = int(outcome.matched_count)
        return result

    def update_peg_prices(self, updates: Sequence[PriceUpdate]) -> PersistenceResult:
        result = PersistenceResult()
        if not updates:
            return result
        operations = [
            UpdateOne(
                {"_id": update.listing_id},
                {
                    "$set": {
                        "peg_price": to_decimal128(update.peg_price),
                        "conversion_rate": to_decimal128(update.conversion_rate),
                        "converted_at": update.converted_at,
                    }
                },
                upsert=False,
            )
            for update in updates
        ]
        with _store_call("update_peg_prices"):
            outcome = self._listings.bulk_write(operations, ordered=False)
        result.updated = int(outcome.matched_count)
        return result

    def delete_listings(self) -> int:
        with _store_call("delete_listings"):
            return int(self._listings.delete_many({}).deleted_count)

    def load_rates(self) -> list[ExchangeRate]:
        with _store_call("load_rates"):
            return [_document_to_rate(doc) for doc in self._rates.find({}).sort("currency", 1)]

    def save_rates(self, rates: Sequence[ExchangeRate], *, replace: bool = False) -> PersistenceResult:
        result = PersistenceResult()
        with _store_call("save_rates"):
            if replace:
                self._rates.delete_many({})
            if not rates:
                return result
            operations = [
                UpdateOne({"_id": rate.currency}, {"$set": _rate_to_document(rate)}, upsert=True)
                for rate in rates
            ]
            outcome = self._rates.bulk_write(operations, ordered=False)
        result.inserted = int(outcome.upserted_count)
        result.updated = int(outcome.matched_count)
        return result

    def close(self) -> None:  # pragma: no cover - trivial cleanup
        self._client.close()


__all__ = [
    "MongoBackend",
    "build_query",
    "seller_rank_expression",
    "listing_to_document",
    "document_to_listing",
]
