from __future__ import annotations
from typing import Optional, Dict, Any, List

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Notification
from ..helpers import now_ts, to_iso, format_xaf

NOTIFICATION_TYPES = ("order", "stock", "payment", "delivery", "system",
                      "other")
PRIORITIES = ("low", "medium", "high")


def _as_dict(n: Notification) -> Dict[str, Any]:
    return {
        "id": n.id,
        "title": n.title,
        "message": n.message,
        "type": n.type,
        "priority": n.priority,
        "link": n.link,
        "order_id": n.order_id,
        "read": bool(n.is_read),
        "created_at": to_iso(n.created_at),
    }


class NotificationStore:
    """Admin notification history (bell dropdown)."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create_notification(
        self,
        *,
        title: str,
        message: str,
        type: str = "other",
        priority: str = "medium",
        link: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"invalid notification type: {type}")
        if priority not in PRIORITIES:
            raise ValueError(f"invalid priority: {priority}")
        n = Notification(
            title=title,
            message=message,
            type=type,
            priority=priority,
            link=link,
            order_id=order_id,
            is_read=False,
            created_at=now_ts(),
        )
        async with self.db.begin():
            self.db.add(n)
        return _as_dict(n)

    async def record_new_order(
        self, order_id: str, order_number: str, total_amount: float
    ) -> Dict[str, Any]:
        return await self.create_notification(
            title="New order",
            message=(
                f"Order #{order_number} of {format_xaf(total_amount)} XAF "
                "received."
            ),
            type="order",
            priority="high",
            link=f"/admin/orders/{order_id}",
            order_id=order_id,
        )

    async def list_notifications(
        self, limit: int = 50, unread_only: bool = False
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM notifications"
        if unread_only:
            sql += " WHERE is_read = :false"
        sql += " ORDER BY created_at DESC, id DESC LIMIT :limit"
        async with self.db.begin():
            rows = (await self.db.execute(
                text(sql), {"limit": max(1, min(limit, 500)), "false": False}
            )).mappings().all()
        return [{
            "id": r["id"],
            "title": r["title"],
            "message": r["message"],
            "type": r["type"],
            "priority": r["priority"],
            "link": r["link"],
            "order_id": r["order_id"],
            "read": bool(r["is_read"]),
            "created_at": to_iso(r["created_at"]),
        } for r in rows]

    async def unread_count(self) -> int:
        async with self.db.begin():
            n = (await self.db.execute(
                text("SELECT COUNT(*) FROM notifications "
                     "WHERE is_read = :false"),
                {"false": False},
            )).scalar_one()
        return int(n)

    async def mark_as_read(self, notification_id: int) -> bool:
        async with self.db.begin():
            result = await self.db.execute(
                text("UPDATE notifications SET is_read = :true "
                     "WHERE id = :id"),
                {"id": notification_id, "true": True},
            )
        return result.rowcount > 0

    async def mark_all_as_read(self) -> int:
        async with self.db.begin():
            result = await self.db.execute(
                text("UPDATE notifications SET is_read = :true "
                     "WHERE is_read = :false"),
                {"true": True, "false": False},
            )
        return result.rowcount

    async def delete_notification(self, notification_id: int) -> bool:
        async with self.db.begin():
            result = await self.db.execute(
                text("DELETE FROM notifications WHERE id = :id"),
                {"id": notification_id},
            )
        return result.rowcount > 0

    async def clear_all(self) -> int:
        async with self.db.begin():
            result = await self.db.execute(text("DELETE FROM notifications"))
        return result.rowcount
