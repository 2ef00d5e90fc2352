"""Shared logic for SQL (SQLite/Postgres/MySQL) backends."""

from __future__ import annotations

import random
from contextlib import contextmanager
from datetime import datetime, timezone
from itertools import groupby
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Sequence

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    Numeric,
    Select,
    String,
    case,
    create_engine,
    delete,
    func,
    literal,
    or_,
    select,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

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
from fair_marketplace.utils.clock import ensure_utc
from fair_marketplace.utils.logger import get_logger

if TYPE_CHECKING:  # pragma: no cover - type checker helper
    from sqlalchemy.engine import Engine
else:  # pragma: no cover - fallback type used at runtime
    Engine = Any

LOGGER = get_logger(__name__)


class Base(DeclarativeBase):
    pass


class _ListingRow(Base):
    __tablename__ = "marketplace_listings"

    listing_id = Column(String(64), primary_key=True)
    title = Column(String(255), nullable=False, default="")
    category = Column(String(64), nullable=False, index=True)
    seller_id = Column(String(64), nullable=False, index=True)
    local_price = Column(Numeric(24, 4), nullable=False)
    currency = Column(String(3), nullable=False, index=True)
    peg_price = Column(Numeric(24, 4), nullable=False, index=True)
    rating = Column(Float, nullable=False)
    created_at = Column(DateTime, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    converted_at = Column(DateTime, nullable=True)
    conversion_rate = Column(Numeric(24, 10), nullable=True)


class _RateRow(Base):
    __tablename__ = "exchange_rates"

    currency = Column(String(3), primary_key=True)
    rate_to_peg = Column(Numeric(24, 10), nullable=False)
    last_updated = Column(DateTime, nullable=False)
    previous_rate = Column(Numeric(24, 10), nullable=True)
    change_percent = Column(Numeric(12, 4), nullable=True)


@contextmanager
def _store_call(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise CollaboratorUnavailable(operation, exc) from exc


def _to_naive_utc(value: datetime | None) -> datetime | None:
    # Portable DateTime columns carry no zone; everything is stored as UTC.
    if value is None:
        return None
    return ensure_utc(value).replace(tzinfo=None)


def _from_naive_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def build_conditions(listing_filter: ListingFilter) -> list[Any]:
    """Translate a :class:`ListingFilter` into SQLAlchemy ``WHERE`` clauses."""

    conditions: list[Any] = []
    if listing_filter.category is not None:
        conditions.append(_ListingRow.category == listing_filter.category)
    if listing_filter.seller_id is not None:
        conditions.append(_ListingRow.seller_id == listing_filter.seller_id)
    if listing_filter.currency is not None:
        conditions.append(_ListingRow.currency == listing_filter.currency)
    if listing_filter.exclude_currency is not None:
        conditions.append(_ListingRow.currency != listing_filter.exclude_currency)
    if listing_filter.converted_before is not None:
        conditions.append(
            or_(
                _ListingRow.converted_at < _to_naive_utc(listing_filter.converted_before),
                _ListingRow.converted_at.is_(None),
            )
        )
    if listing_filter.min_peg_price is not None:
        conditions.append(_ListingRow.peg_price >= listing_filter.min_peg_price)
    if listing_filter.max_peg_price is not None:
        conditions.append(_ListingRow.peg_price <= listing_filter.max_peg_price)
    return conditions


def _row_to_listing(row: _ListingRow) -> Listing:
    return Listing(
        listing_id=row.listing_id,
        title=row.title or "",
        category=row.category,
        seller_id=row.seller_id,
        local_price=row.local_price,
        currency=row.currency,
        peg_price=row.peg_price,
        rating=row.rating,
        created_at=_from_naive_utc(row.created_at),
        stock=row.stock,
        converted_at=_from_naive_utc(row.converted_at),
        conversion_rate=row.conversion_rate,
    )


def _copy_listing(row: _ListingRow, listing: Listing) -> None:
    row.title = listing.title
    row.category = listing.category
    row.seller_id = listing.seller_id
    row.local_price = listing.local_price
    row.currency = listing.currency
    row.peg_price = listing.peg_price
    row.rating = listing.rating
    row.created_at = _to_naive_utc(listing.created_at)
    row.stock = listing.stock
    row.converted_at = _to_naive_utc(listing.converted_at)
    row.conversion_rate = listing.conversion_rate


def _row_to_rate(row: _RateRow) -> ExchangeRate:
    return ExchangeRate(
        currency=row.currency,
        rate_to_peg=row.rate_to_peg,
        last_updated=_from_naive_utc(row.last_updated),
        previous_rate=row.previous_rate,
        change_percent=row.change_percent,
    )


def _within_seller_order() -> list[Any]:
    return [
        getattr(_ListingRow, field).asc() if direction == 1 else getattr(_ListingRow, field).desc()
        for field, direction in WITHIN_SELLER_ORDER
    ]


def _windowed(stmt: Select, skip: int, limit: int | None) -> Select:
    if skip:
        stmt = stmt.offset(skip)
    if limit is not None:
        stmt = stmt.limit(limit)
    return stmt


class RelationalBackend(BackendStrategy):
    """Base class that encapsulates SQLAlchemy powered interactions.

    Money columns are ``NUMERIC``. Engines without a native decimal type
    (SQLite) store them as floating point and SQLAlchemy quantizes on read,
    so exactness beyond the column scale is not guaranteed there.
    """

    def __init__(self, url: str, **engine_options: Any) -> None:
        self.url = url
        self._engine_options = engine_options
        self._engine_instance: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    def _get_engine(self) -> Engine:
        if self._engine_instance is None:
            self._engine_instance = create_engine(self.url, future=True, **self._engine_options)
        return self._engine_instance

    def _session(self) -> Session:
        if self._session_factory is None:
            self._session_factory = sessionmaker(
                bind=self._get_engine(), expire_on_commit=False, future=True
            )
        return self._session_factory()

    def ensure_schema(self) -> None:
        engine = self._get_engine()
        with _store_call("ensure_schema"):
            with engine.begin() as connection:
                LOGGER.info("Ensuring marketplace_listings and exchange_rates tables exist")
                connection.execute(text("SELECT 1"))
            Base.metadata.create_all(engine)

    def find_matching(
        self,
        listing_filter: ListingFilter,
        *,
        sort: SortSpec | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Listing]:
        sort_spec = validate_sort(sort)
        stmt = select(_ListingRow).where(*build_conditions(listing_filter))
        for field, direction in sort_spec:
            column = getattr(_ListingRow, field)
            stmt = stmt.order_by(column.asc() if direction == 1 else column.desc())
        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)
        with _store_call("find_matching"):
            with self._session() as session:
                return [_row_to_listing(row) for row in session.scalars(stmt)]

    def count_matching(self, listing_filter: ListingFilter) -> int:
        stmt = (
            select(func.count())
            .select_from(_ListingRow)
            .where(*build_conditions(listing_filter))
        )
        with _store_call("count_matching"):
            with self._session() as session:
                return int(session.scalar(stmt) or 0)

    def group_by(self, field: str, listing_filter: ListingFilter) -> list[tuple[str, list[Listing]]]:
        group_field = validate_group_field(field)
        ordered = self.find_matching(listing_filter, sort=[(group_field, 1), *WITHIN_SELLER_ORDER])
        return [
            (key, list(members))
            for key, members in groupby(ordered, key=lambda listing: getattr(listing, group_field))
        ]

    def count_by(self, field: str, listing_filter: ListingFilter) -> dict[str, int]:
        column = getattr(_ListingRow, validate_group_field(field))
        stmt = (
            select(column, func.count())
            .where(*build_conditions(listing_filter))
            .group_by(column)
            .order_by(column)
        )
        with _store_call("count_by"):
            with self._session() as session:
                return {str(key): int(count) for key, count in session.execute(stmt)}

    def find_ranked(
        self,
        listing_filter: ListingFilter,
        seller_rank: Mapping[str, int],
        *,
        per_seller: int | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[Listing]:
        conditions = build_conditions(listing_filter)
        stmt = select(_ListingRow).where(*conditions)
        if per_seller is not None:
            positions = (
                select(
                    _ListingRow.listing_id.label("listing_id"),
                    func.row_number()
                    .over(partition_by=_ListingRow.seller_id, order_by=_within_seller_order())
                    .label("seller_position"),
                )
                .where(*conditions)
                .subquery()
            )
            stmt = stmt.join(positions, positions.c.listing_id == _ListingRow.listing_id).where(
                positions.c.seller_position <= per_seller
            )
        if seller_rank:
            missing = max(seller_rank.values()) + 1
            stmt = stmt.order_by(case(dict(seller_rank), value=_ListingRow.seller_id, else_=missing))
        stmt = _windowed(stmt.order_by(*_within_seller_order()), skip, limit)
        with _store_call("find_ranked"):
            with self._session() as session:
                return [_row_to_listing(row) for row in session.scalars(stmt)]

    def find_weighted(
        self,
        listing_filter: ListingFilter,
        *,
        skip: int = 0,
        limit: int | None = None,
        rng: random.Random | None = None,
    ) -> list[Listing]:
        conditions = build_conditions(listing_filter)
        offers = (
            select(_ListingRow.seller_id.label("seller_id"), func.count().label("offers"))
            .where(*conditions)
            .group_by(_ListingRow.seller_id)
            .subquery()
        )
        score = self._random_unit() * 100 + literal(100.0, Float) / (offers.c.offers + 1)
        stmt = (
            select(_ListingRow)
            .join(offers, offers.c.seller_id == _ListingRow.seller_id)
            .where(*conditions)
            .order_by(score.desc(), _ListingRow.listing_id)
        )
        with _store_call("find_weighted"):
            with self._session() as session:
                return [_row_to_listing(row) for row in session.scalars(_windowed(stmt, skip, limit))]

    def _random_unit(self) -> Any:
        """SQL expression drawing a uniform value in ``[0, 1)`` per row."""

        dialect = self._get_engine().dialect.name
        if dialect == "sqlite":
            # SQLite's random() is a signed 64-bit integer.
            return func.random(type_=Float) / literal(18446744073709551616.0, Float) + 0.5
        if dialect in ("mysql", "mariadb"):
            return func.rand(type_=Float)
        return func.random(type_=Float)

    def insert_listings(self, listings: Sequence[Listing]) -> PersistenceResult:
        result = PersistenceResult()
        if not listings:
            return result
        with _store_call("insert_listings"):
            with self._session() as session:
                for listing in listings:
                    existing = session.get(_ListingRow, listing.listing_id)
                    if existing is None:
                        row = _ListingRow(listing_id=listing.listing_id)
                        _copy_listing(row, listing)
                        session.add(row)
                        result.inserted += 1
                    else:
                        _copy_listing(existing, listing)
                        result.updated += 1
                session.commit()
        return result

    def update_peg_prices(self, updates: Sequence[PriceUpdate]) -> PersistenceResult:
        result = PersistenceResult()
        if not updates:
            return result
        with _store_call("update_peg_prices"):
            with self._session() as session:
                for update in updates:
                    row = session.get(_ListingRow, update.listing_id)
                    if row is None:
                        continue
                    row.peg_price = update.peg_price
                    row.conversion_rate = update.conversion_rate
                    row.converted_at = _to_naive_utc(update.converted_at)
                    result.updated += 1
                session.commit()
        return result

    def delete_listings(self) -> int:
        with _store_call("delete_listings"):
            with self._session() as session:
                deleted = session.execute(delete(_ListingRow)).rowcount
                session.commit()
        return int(deleted or 0)

    def load_rates(self) -> list[ExchangeRate]:
        stmt = select(_RateRow).order_by(_RateRow.currency)
        with _store_call("load_rates"):
            with self._session() as session:
                return [_row_to_rate(row) for row in session.scalars(stmt)]

    def save_rates(self, rates: Sequence[ExchangeRate], *, replace: bool = False) -> PersistenceResult:
        result = PersistenceResult()
        with _store_call("save_rates"):
            with self._session() as session:
                if replace:
                    session.execute(delete(_RateRow))
                for rate in rates:
                    row = session.get(_RateRow, rate.currency)
                    if row is None:
                        row = _RateRow(currency=rate.currency)
                        session.add(row)
                        result.inserted += 1
                    else:
                        result.updated += 1
                    row.rate_to_peg = rate.rate_to_peg
                    row.last_updated = _to_naive_utc(rate.last_updated)
                    row.previous_rate = rate.previous_rate
                    row.change_percent = rate.change_percent
                session.commit()
        return result

    def close(self) -> None:  # pragma: no cover - trivial resource cleanup
        if self._engine_instance is not None:
            self._engine_instance.dispose()


__all__ = ["RelationalBackend", "Base", "build_conditions"]
