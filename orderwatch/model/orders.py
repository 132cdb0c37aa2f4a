from __future__ import annotations
import math
import uuid
from typing import Optional, Dict, Any, List

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db import Order, OrderItem
from ..helpers import now_ts
from ..infra.sql import Gated
from ..infra.timings import timeit


class OrderNotFound(Exception):
    pass


class InvalidOrder(ValueError):
    pass


class OrderLookup:
    """Newest-order queries for the change detectors."""

    def __init__(self, sessions: async_sessionmaker, gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated

    async def latest(self) -> Optional[Dict[str, Any]]:
        async with timeit("lookup.latest_order"):
            async with self.gated():
                async with self.sessions() as db:
                    return await latest_order(db)

    async def created_after(
        self, created_at: float, order_id: str
    ) -> List[Dict[str, Any]]:
        async with timeit("lookup.orders_created_after"):
            async with self.gated():
                async with self.sessions() as db:
                    return await orders_created_after(db, created_at,
                                                      order_id)


async def latest_order(db: AsyncSession) -> Optional[Dict[str, Any]]:
    async with db.begin():
        row = (await db.execute(text("""
            SELECT id, created_at FROM orders
            ORDER BY created_at DESC, id DESC
            LIMIT 1
        """))).mappings().first()
    return dict(row) if row else None


async def orders_created_after(
    db: AsyncSession, created_at: float, order_id: str, limit: int = 100
) -> List[Dict[str, Any]]:
    # oldest first; (created_at, id) breaks ties the same way latest_order does
    async with db.begin():
        rows = (await db.execute(text("""
            SELECT id, created_at FROM orders
            WHERE created_at > :ts OR (created_at = :ts AND id > :id)
            ORDER BY created_at ASC, id ASC
            LIMIT :limit
        """), {"ts": created_at, "id": order_id, "limit": limit})
        ).mappings().all()
    return [dict(r) for r in rows]


async def list_recent_orders(
    db: AsyncSession, limit: int = 200
) -> List[Dict[str, Any]]:
    async with db.begin():
        rows = (await db.execute(text("""
            SELECT id, order_number, status, total_amount, created_at,
                   confirmed_at, customer_first_name, customer_last_name
            FROM orders
            ORDER BY created_at DESC
            LIMIT :limit
        """), {"limit": max(1, min(limit, 500))})).mappings().all()
    return [dict(r) for r in rows]


_ITEM_REFS = ("product_id", "ready_cocktail_id", "cocktail_maison_id")
_ITEM_TEXT = ("product_type", "product_name")


def _clean_item(i: Dict[str, Any]) -> Dict[str, Any]:
    try:
        quantity = int(i.get("quantity") or 1)
        unit_price = float(i.get("unit_price") or 0)
    except (TypeError, ValueError):
        raise InvalidOrder("quantity and unit_price must be numbers")
    if quantity < 1 or unit_price < 0 or not math.isfinite(unit_price):
        raise InvalidOrder("quantity must be >= 1 and unit_price >= 0")
    item = {"quantity": quantity, "unit_price": unit_price}
    for key in _ITEM_REFS + _ITEM_TEXT:
        value = i.get(key)
        if value is not None and not isinstance(value, str):
            raise InvalidOrder(f"{key} must be a string")
        item[key] = value
    return item


async def create_order(
    db: AsyncSession,
    *,
    items: List[Dict[str, Any]],
    customer_id: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    email: Optional[str] = None,
    order_number: Optional[str] = None,
    total_amount: Optional[float] = None,
    created_at: Optional[float] = None,
) -> Order:
    """Insert an order and its items in one transaction.

    Each item is a dict with `quantity`, `unit_price` and any of
    `product_name`, `product_type`, `product_id`, `ready_cocktail_id`,
    `cocktail_maison_id`. The total defaults to sum(quantity * unit_price).
    Raises InvalidOrder for malformed items or unknown references.
    """
    cleaned = [_clean_item(i) for i in items]
    order_id = uuid.uuid4().hex
    created = now_ts() if created_at is None else created_at
    if total_amount is None:
        total_amount = sum(i["quantity"] * i["unit_price"] for i in cleaned)
    elif isinstance(total_amount, bool) or not isinstance(
            total_amount, (int, float)):
        raise InvalidOrder("total_amount must be a number")
    order = Order(
        id=order_id,
        order_number=order_number or f"AK-{order_id[:8].upper()}",
        customer_id=customer_id,
        customer_first_name=first_name,
        customer_last_name=last_name,
        customer_email=email,
        status="new",
        total_amount=total_amount,
        created_at=created,
    )
    try:
        async with db.begin():
            db.add(order)
            # order row must exist before its items reference it
            await db.flush()
            for i in cleaned:
                db.add(OrderItem(order_id=order_id, **i))
    except IntegrityError as e:
        raise InvalidOrder("unknown customer or catalog reference") from e
    return order


async def confirm_order(db: AsyncSession, order_id: str) -> float:
    confirmed_at = now_ts()
    async with db.begin():
        result = await db.execute(text("""
            UPDATE orders SET status = 'confirmed', confirmed_at = :ts
            WHERE id = :id
        """), {"id": order_id, "ts": confirmed_at})
        if result.rowcount == 0:
            raise OrderNotFound(order_id)
    return confirmed_at
