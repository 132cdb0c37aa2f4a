"""
Order detail fetcher.

Loads one order plus its line items and denormalizes the bits the
notification overlay shows: customer display name and item names. Item
names live in one of several product tables, so resolution walks a fixed
list of strategies:

    stored product_name -> ready cocktail -> cocktail kit -> product
    -> "Unknown product"

Failures never raise; callers get a FetchFailure and skip notifying.
"""
from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import (
    Any, Callable, Dict, List, Mapping, Optional,
    Sequence, Tuple, Union,
)

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..helpers import to_iso
from ..infra.sql import Gated
from ..infra.timings import timeit

logger = structlog.get_logger(__name__)

UNKNOWN_PRODUCT = "Unknown product"
UNKNOWN_CUSTOMER = "Unknown customer"

NOT_FOUND = "not_found"
FETCH_ERROR = "fetch_error"


@dataclass(frozen=True)
class OrderLine:
    name: str
    quantity: int
    unit_price: float


@dataclass(frozen=True)
class OrderPayload:
    id: str
    order_number: str
    customer_name: str
    total_amount: float
    timestamp: Optional[str]
    items: Tuple[OrderLine, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["items"] = [asdict(i) for i in self.items]
        return d


@dataclass(frozen=True)
class FetchFailure:
    order_id: str
    reason: str  # not_found | fetch_error
    detail: str = ""


FetchResult = Union[OrderPayload, FetchFailure]


# ----------------------------
# Name resolution strategies
# ----------------------------
Row = Mapping[str, Any]
Resolver = Tuple[str, Callable[[Row], Optional[str]]]


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _join_names(first: Any, last: Any) -> Optional[str]:
    return _clean(f"{first or ''} {last or ''}")


def _stored_name(row: Row) -> Optional[str]:
    return _clean(row.get("product_name"))


def _ready_cocktail_name(row: Row) -> Optional[str]:
    return _clean(row.get("ready_cocktail_name"))


def _cocktail_kit_name(row: Row) -> Optional[str]:
    return _clean(row.get("cocktail_maison_name"))


def _product_name(row: Row) -> Optional[str]:
    return _clean(row.get("joined_product_name"))


NAME_RESOLVERS: List[Resolver] = [
    ("stored_name", _stored_name),
    ("ready_cocktail", _ready_cocktail_name),
    ("cocktail_kit", _cocktail_kit_name),
    ("product", _product_name),
]


def _customer_full_name(row: Row) -> Optional[str]:
    return _clean(row.get("c_full_name"))


def _customer_first_last(row: Row) -> Optional[str]:
    return _join_names(row.get("c_first_name"), row.get("c_last_name"))


def _order_first_last(row: Row) -> Optional[str]:
    return _join_names(
        row.get("customer_first_name"), row.get("customer_last_name")
    )


CUSTOMER_NAME_RESOLVERS: List[Resolver] = [
    ("customer_full_name", _customer_full_name),
    ("customer_first_last", _customer_first_last),
    ("order_first_last", _order_first_last),
]


def resolve(row: Row, resolvers: Sequence[Resolver], fallback: str) -> str:
    for _, strategy in resolvers:
        name = strategy(row)
        if name:
            return name
    return fallback


def resolve_item_name(row: Row) -> str:
    return resolve(row, NAME_RESOLVERS, UNKNOWN_PRODUCT)


def resolve_customer_name(row: Row) -> str:
    return resolve(row, CUSTOMER_NAME_RESOLVERS, UNKNOWN_CUSTOMER)


def build_line(row: Row) -> OrderLine:
    try:
        quantity = int(row.get("quantity") or 1)
    except (TypeError, ValueError):
        quantity = 1
    try:
        unit_price = float(row.get("unit_price") or 0)
    except (TypeError, ValueError):
        unit_price = 0.0
    return OrderLine(
        name=resolve_item_name(row), quantity=quantity, unit_price=unit_price
    )


# ----------------------------
# Queries
# ----------------------------
SQL_ORDER_WITH_CUSTOMER = text("""
    SELECT o.id, o.order_number, o.total_amount, o.created_at,
           o.customer_first_name, o.customer_last_name,
           c.first_name AS c_first_name,
           c.last_name AS c_last_name,
           c.full_name AS c_full_name
    FROM orders AS o
    LEFT JOIN customers AS c ON c.id = o.customer_id
    WHERE o.id = :id
""")

SQL_ORDER_ITEMS = text("""
    SELECT i.id, i.quantity, i.unit_price, i.product_name, i.product_type,
           p.name AS joined_product_name,
           rc.name AS ready_cocktail_name,
           cm.name AS cocktail_maison_name
    FROM order_items AS i
    LEFT JOIN products AS p ON p.id = i.product_id
    LEFT JOIN ready_cocktails AS rc ON rc.id = i.ready_cocktail_id
    LEFT JOIN cocktails_maison AS cm ON cm.id = i.cocktail_maison_id
    WHERE i.order_id = :id
    ORDER BY i.id
""")


async def fetch_order_details(db: AsyncSession, order_id: str) -> FetchResult:
    try:
        async with db.begin():
            order = (await db.execute(
                SQL_ORDER_WITH_CUSTOMER, {"id": order_id}
            )).mappings().first()
            if not order:
                logger.warning("order_not_found", order_id=order_id)
                return FetchFailure(order_id, NOT_FOUND)
            items = (await db.execute(
                SQL_ORDER_ITEMS, {"id": order_id}
            )).mappings().all()
    except SQLAlchemyError as e:
        logger.error("order_fetch_failed", order_id=order_id, error=str(e))
        return FetchFailure(order_id, FETCH_ERROR, str(e))

    try:
        lines = tuple(build_line(r) for r in items)
        total = float(order["total_amount"] or 0)
    except (TypeError, ValueError) as e:
        # malformed join data
        logger.error("order_rows_malformed", order_id=order_id, error=str(e))
        return FetchFailure(order_id, FETCH_ERROR, str(e))

    return OrderPayload(
        id=order["id"],
        order_number=order["order_number"] or "N/A",
        customer_name=resolve_customer_name(order),
        total_amount=total,
        timestamp=to_iso(order["created_at"]),
        items=lines,
    )


class OrderDetailFetcher:
    """Opens a fresh session per lookup; no caching."""

    def __init__(self, sessions: async_sessionmaker, gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated

    async def __call__(self, order_id: str) -> FetchResult:
        async with timeit("fetch.order_details"):
            async with self.gated():
                async with self.sessions() as db:
                    return await fetch_order_details(db, order_id)
