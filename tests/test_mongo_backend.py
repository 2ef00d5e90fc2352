"""Mongo backend tests that monkeypatch pymongo primitives."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List

import pytest
from bson.decimal128 import Decimal128

from fair_marketplace.db import mongo_backend as mongo_module
from fair_marketplace.errors import CollaboratorUnavailable
from fair_marketplace.models import ExchangeRate, ListingFilter, PriceUpdate
from tests.support import BASE_TIME


def _sortable(value: Any) -> Any:
    return value.to_decimal() if isinstance(value, Decimal128) else value


class _DummyCursor:
    def __init__(self, docs: List[Dict[str, Any]]) -> None:
        self._docs = docs
        self.sorted_by: Any = None

    def sort(self, key: Any, direction: int | None = None) -> "_DummyCursor":
        spec = [(key, direction)] if isinstance(key, str) else list(key)
        self.sorted_by = spec
        for field, order in reversed(spec):
            self._docs.sort(key=lambda doc: _sortable(doc[field]), reverse=order == -1)
        return self

    def skip(self, count: int) -> "_DummyCursor":
        self._docs = self._docs[count:]
        return self

    def limit(self, count: int) -> "_DummyCursor":
        self._docs = self._docs[:count]
        return self

    def __iter__(self):
        return iter(self._docs)


class _DummyBulkResult:
    def __init__(self, upserted_count: int, matched_count: int) -> None:
        self.upserted_count = upserted_count
        self.matched_count = matched_count


class _DummyDeleteResult:
    def __init__(self, deleted_count: int) -> None:
        self.deleted_count = deleted_count


class _DummyCollection:
    def __init__(self) -> None:
        self.docs: Dict[str, Dict[str, Any]] = {}
        self.indexes: list[tuple[str, tuple[tuple[str, int], ...]]] = []
        self.queries: list[Dict[str, Any]] = []
        self.pipelines: list[list[Dict[str, Any]]] = []
        self.aggregate_results: list[Dict[str, Any]] = []
        self.cursors: list[_DummyCursor] = []
        self.fail_with: Exception | None = None

    def __bool__(self) -> bool:  # pragma: no cover - behavioural parity with pymongo
        raise NotImplementedError("Collection truthiness is undefined")

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def create_index(self, keys: list[tuple[str, int]], *, name: str) -> None:
        self.indexes.append((name, tuple(keys)))

    def bulk_write(self, operations: list["_DummyUpdateOne"], ordered: bool) -> _DummyBulkResult:
        assert ordered is False
        self._check()
        upserted = matched = 0
        for op in operations:
            assert isinstance(op, _DummyUpdateOne)
            key = op.filter["_id"]
            if key in self.docs:
                matched += 1
                self.docs[key].update(op.update["$set"])
            elif op.upsert:
                upserted += 1
                self.docs[key] = {"_id": key, **op.update["$set"]}
        return _DummyBulkResult(upserted, matched)

    def find(self, query: Dict[str, Any]) -> _DummyCursor:
        self._check()
        self.queries.append(query)
        docs = list(self.docs.values())
        if "category" in query:
            docs = [doc for doc in docs if doc["category"] == query["category"]]
        cursor = _DummyCursor(docs)
        self.cursors.append(cursor)
        return cursor

    def count_documents(self, query: Dict[str, Any]) -> int:
        return len(list(self.find(query)))

    def aggregate(self, pipeline: list[Dict[str, Any]], *, allowDiskUse: bool) -> list[Dict[str, Any]]:
        assert allowDiskUse is True
        self._check()
        self.pipelines.append(pipeline)
        return list(self.aggregate_results)

    def delete_many(self, query: Dict[str, Any]) -> _DummyDeleteResult:
        assert query == {}
        removed = len(self.docs)
        self.docs.clear()
        return _DummyDeleteResult(removed)


class _DummyUpdateOne:
    def __init__(self, filter: Dict[str, Any], update: Dict[str, Dict[str, Any]], *, upsert: bool) -> None:
        self.filter = filter
        self.update = update
        self.upsert = upsert


class _DummyDatabase(dict):
    def __getitem__(self, name: str) -> _DummyCollection:  # type: ignore[override]
        if name not in self:
            self[name] = _DummyCollection()
        return dict.__getitem__(self, name)


class _DummyClient:
    instances: list["_DummyClient"] = []

    def __init__(self, url: str, **options: Any) -> None:
        self.url = url
        self.options = options
        self.admin = self
        self.closed = False
        self.commands: list[str] = []
        self.databases: Dict[str, _DummyDatabase] = {}
        _DummyClient.instances.append(self)

    def __getitem__(self, name: str) -> _DummyDatabase:
        return self.databases.setdefault(name, _DummyDatabase())

    def get_default_database(self) -> _DummyDatabase | None:
        if self.url.rstrip("/").count("/") < 3:
            return None
        return self.__getitem__(self.url.rsplit("/", 1)[1])

    def command(self, name: str) -> None:
        assert name == "ping"
        self.commands.append(name)

    def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def patch_mongo_client(monkeypatch: pytest.MonkeyPatch) -> None:
    _DummyClient.instances.clear()
    monkeypatch.setattr(mongo_module, "MongoClient", _DummyClient)
    monkeypatch.setattr(mongo_module, "PyMongoError", RuntimeError)
    monkeypatch.setattr(mongo_module, "UpdateOne", _DummyUpdateOne)


@pytest.fixture
def backend() -> mongo_module.MongoBackend:
    return mongo_module.MongoBackend("mongodb://example.com/", database="marketplace")


def _listings_collection(backend: mongo_module.MongoBackend) -> _DummyCollection:
    return _DummyClient.instances[-1]["marketplace"]["marketplace_listings"]


def test_client_is_timezone_aware_and_uses_default_database() -> None:
    mongo_module.MongoBackend("mongodb://example.com/shop")

    client = _DummyClient.instances[-1]
    assert client.options["tz_aware"] is True
    assert client.options["serverSelectionTimeoutMS"] == 5000
    assert "shop" in client.databases


def test_missing_database_name_is_rejected() -> None:
    with pytest.raises(ValueError):
        mongo_module.MongoBackend("mongodb://example.com/")


def test_ensure_schema_pings_and_creates_indexes(backend) -> None:
    backend.ensure_schema()

    client = _DummyClient.instances[-1]
    names = {name for name, _ in _listings_collection(backend).indexes}
    assert client.commands == ["ping"]
    assert {"compound_roundrobin_idx", "peg_price_idx", "currency_converted_idx"} <= names


def test_build_query_translates_every_criterion() -> None:
    cutoff = BASE_TIME - timedelta(hours=1)
    query = mongo_module.build_query(
        ListingFilter(
            category="RPG",
            exclude_currency="USD",
            converted_before=cutoff,
            min_peg_price=Decimal("8.9000"),
            max_peg_price=Decimal("35.6000"),
        )
    )

    assert query["category"] == "RPG"
    assert query["currency"] == {"$ne": "USD"}
    assert query["$or"] == [{"converted_at": {"$lt": cutoff}}, {"converted_at": None}]
    assert query["peg_price"]["$gte"] == Decimal128("8.9000")
    assert query["peg_price"]["$lte"] == Decimal128("35.6000")
    assert mongo_module.build_query(ListingFilter()) == {}


def test_insert_and_find_round_trip_decimals(backend, make_listing) -> None:
    listing = make_listing("l-1", "seller_1", currency="PHP", local_price="1000", peg_price="17.8")

    first = backend.insert_listings([listing, make_listing("l-2", "seller_2")])
    second = backend.insert_listings([listing])

    stored = _listings_collection(backend).docs["l-1"]
    assert isinstance(stored["peg_price"], Decimal128)
    assert (first.inserted, first.updated) == (2, 0)
    assert (second.inserted, second.updated) == (0, 1)

    found = backend.find_matching(ListingFilter(category="RPG"), sort=[("listing_id", 1)])
    assert [item.listing_id for item in found] == ["l-1", "l-2"]
    assert found[0].peg_price == Decimal("17.8")
    assert found[0].local_price == Decimal("1000")


def test_find_matching_maps_listing_id_sort_and_paging(backend, make_listing) -> None:
    backend.insert_listings([make_listing(f"l-{n}", "seller_1", peg_price=str(n)) for n in range(5)])

    found = backend.find_matching(
        ListingFilter(), sort=[("peg_price", -1), ("listing_id", 1)], skip=1, limit=2
    )

    assert [item.listing_id for item in found] == ["l-3", "l-2"]
    assert backend.count_matching(ListingFilter(category="RPG")) == 5


def test_group_by_cuts_groups_from_a_sorted_cursor(backend, make_listing) -> None:
    backend.insert_listings(
        [
            make_listing("a", "seller_2"),
            make_listing("b", "seller_1"),
            make_listing("c", "seller_2", rating=4.5),
        ]
    )

    groups = backend.group_by("seller_id", ListingFilter(category="RPG"))

    collection = _listings_collection(backend)
    assert collection.pipelines == []
    assert collection.cursors[-1].sorted_by == [
        ("seller_id", 1),
        ("rating", -1),
        ("created_at", -1),
        ("_id", 1),
    ]
    assert [key for key, _ in groups] == ["seller_1", "seller_2"]
    assert [item.listing_id for item in groups[1][1]] == ["c", "a"]
    with pytest.raises(ValueError):
        backend.group_by("title", ListingFilter())


def test_count_by_groups_and_sums_on_the_server(backend) -> None:
    collection = _listings_collection(backend)
    collection.aggregate_results = [
        {"_id": "seller_1", "count": 3},
        {"_id": "seller_2", "count": 1},
    ]

    counts = backend.count_by("seller_id", ListingFilter(category="RPG"))

    assert counts == {"seller_1": 3, "seller_2": 1}
    assert collection.pipelines[-1] == [
        {"$match": {"category": "RPG"}},
        {"$group": {"_id": "$seller_id", "count": {"$sum": 1}}},
        {"$sort": {"_id": 1}},
    ]
    with pytest.raises(ValueError):
        backend.count_by("rating", ListingFilter())


def test_seller_rank_expression_sends_unknown_sellers_last() -> None:
    expression = mongo_module.seller_rank_expression({"seller_2": 0, "seller_1": 4})

    position = expression["$let"]["vars"]["position"]
    missing, ranks = expression["$let"]["in"]["$cond"][1:]
    assert position == {"$indexOfArray": [["seller_2", "seller_1"], "$seller_id"]}
    assert missing == 5
    assert ranks == {"$arrayElemAt": [[0, 4], "$$position"]}


def test_find_ranked_caps_sellers_and_windows_inside_the_pipeline(backend, make_listing) -> None:
    collection = _listings_collection(backend)
    collection.aggregate_results = [
        mongo_module.listing_to_document(make_listing("b0", "seller_2")),
        mongo_module.listing_to_document(make_listing("a0", "seller_1")),
    ]

    found = backend.find_ranked(
        ListingFilter(category="RPG"),
        {"seller_2": 0, "seller_1": 1},
        per_seller=2,
        skip=20,
        limit=10,
    )

    pipeline = collection.pipelines[-1]
    stages = [next(iter(stage)) for stage in pipeline]
    top = pipeline[1]["$group"]["listings"]["$topN"]
    assert [item.listing_id for item in found] == ["b0", "a0"]
    assert stages == [
        "$match",
        "$group",
        "$unwind",
        "$replaceRoot",
        "$addFields",
        "$sort",
        "$skip",
        "$limit",
        "$project",
    ]
    assert top["n"] == 2
    assert top["sortBy"] == {"rating": -1, "created_at": -1, "_id": 1}
    assert pipeline[5]["$sort"] == {"_seller_rank": 1, "rating": -1, "created_at": -1, "_id": 1}
    assert pipeline[6:8] == [{"$skip": 20}, {"$limit": 10}]
    assert "$push" not in repr(pipeline)


def test_find_ranked_without_cap_skips_the_group_stage(backend) -> None:
    backend.find_ranked(ListingFilter(category="RPG"), {"seller_1": 0}, limit=5)

    pipeline = _listings_collection(backend).pipelines[-1]
    assert [next(iter(stage)) for stage in pipeline] == [
        "$match",
        "$addFields",
        "$sort",
        "$limit",
        "$project",
    ]


def test_find_weighted_scores_with_server_side_draws(backend) -> None:
    backend.find_weighted(ListingFilter(category="RPG"), skip=10, limit=10)

    pipeline = _listings_collection(backend).pipelines[-1]
    window = pipeline[1]["$setWindowFields"]
    score = pipeline[2]["$addFields"]["_weighted_score"]["$add"]
    assert window["partitionBy"] == "$seller_id"
    assert window["output"] == {"_seller_offers": {"$count": {}}}
    assert score[0] == {"$multiply": [{"$rand": {}}, 100]}
    assert score[1] == {"$divide": [100, {"$add": ["$_seller_offers", 1]}]}
    assert pipeline[3]["$sort"] == {"_weighted_score": -1, "_id": 1}
    assert pipeline[4:6] == [{"$skip": 10}, {"$limit": 10}]


def test_aggregation_errors_become_collaborator_unavailable(backend) -> None:
    _listings_collection(backend).fail_with = RuntimeError("cursor killed")

    with pytest.raises(CollaboratorUnavailable) as excinfo:
        backend.find_ranked(ListingFilter(), {}, limit=10)

    assert excinfo.value.operation == "find_ranked"


def test_update_peg_prices_never_upserts(backend, make_listing) -> None:
    backend.insert_listings([make_listing("l-1", "seller_1", currency="PHP", local_price="1000")])

    result = backend.update_peg_prices(
        [
            PriceUpdate("l-1", Decimal("17.8"), Decimal("0.0178"), BASE_TIME),
            PriceUpdate("ghost", Decimal("1"), Decimal("1"), BASE_TIME),
        ]
    )

    docs = _listings_collection(backend).docs
    assert result.updated == 1
    assert "ghost" not in docs
    assert docs["l-1"]["peg_price"] == Decimal128("17.8")
    assert docs["l-1"]["converted_at"] == BASE_TIME


def test_rates_round_trip_and_replace(backend) -> None:
    rates = [
        ExchangeRate("USD", Decimal("1"), BASE_TIME),
        ExchangeRate(
            "PHP",
            Decimal("0.0178"),
            BASE_TIME,
            previous_rate=Decimal("0.0176"),
            change_percent=Decimal("1.14"),
        ),
    ]
    backend.save_rates(rates)

    loaded = backend.load_rates()
    assert [rate.currency for rate in loaded] == ["PHP", "USD"]
    assert loaded[0].rate_to_peg == Decimal("0.0178")
    assert loaded[0].previous_rate == Decimal("0.0176")

    backend.save_rates([ExchangeRate("USD", Decimal("1"), BASE_TIME)], replace=True)
    assert [rate.currency for rate in backend.load_rates()] == ["USD"]


def test_delete_listings_reports_count(backend, make_listing) -> None:
    backend.insert_listings([make_listing("a", "seller_1"), make_listing("b", "seller_2")])

    assert backend.delete_listings() == 2
    assert backend.count_matching(ListingFilter()) == 0


def test_driver_errors_become_collaborator_unavailable(backend) -> None:
    _listings_collection(backend).fail_with = RuntimeError("connection refused")

    with pytest.raises(CollaboratorUnavailable) as excinfo:
        backend.find_matching(ListingFilter())

    assert excinfo.value.operation == "find_matching"
    assert "connection refused" in str(excinfo.value)
