# model/changefeed/__init__.py
import json
from typing import Optional, Callable, Any

import redis.asyncio as redis
import structlog

from ...config import FEED_BACKEND as BACKEND, FEED_CHANNEL

logger = structlog.get_logger(__name__)

# subscription status values reported through on_status
SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
TIMED_OUT = "TIMED_OUT"
CLOSED = "CLOSED"

StatusCallback = Callable[[str], None]


class FeedError(Exception):
    """The insert feed failed (channel error, timeout, or forced close)."""

    def __init__(self, status: str, detail: str = "") -> None:
        super().__init__(f"{status}: {detail}" if detail else status)
        self.status = status
        self.detail = detail


def insert_event(order_id: str) -> str:
    return json.dumps({"type": "INSERT", "table": "orders",
                       "new": {"id": order_id}})


def parse_insert_event(data: Any) -> Optional[str]:
    """Extract the new row id from an insert event payload."""
    if isinstance(data, bytes):
        data = data.decode()
    if not isinstance(data, str) or not data:
        return None
    try:
        event = json.loads(data)
    except json.JSONDecodeError:
        # bare id
        return data.strip() or None
    if not isinstance(event, dict):
        return None
    new = event.get("new") or {}
    order_id = new.get("id") if isinstance(new, dict) else None
    if not order_id:
        logger.warning("insert_event_without_id", payload=data)
        return None
    return str(order_id)


if BACKEND == "pg":
    from ._postgres import OrderInsertFeed as _OrderInsertFeed
else:
    from ._redis import OrderInsertFeed as _OrderInsertFeed


# Factory keeps server.py simple and constructor-agnostic:
def new_feed(*, r: Optional[redis.Redis] = None,
             dsn: Optional[str] = None,
             channel: str = FEED_CHANNEL):
    if BACKEND == "pg":
        if dsn is None:
            raise RuntimeError("OrderInsertFeed(pg) requires dsn=str")
        return _OrderInsertFeed(dsn=dsn)
    else:
        if r is None:
            raise RuntimeError(
                "OrderInsertFeed(redis) requires r=redis.Redis"
            )
        return _OrderInsertFeed(r=r, channel=channel)


OrderInsertFeed = _OrderInsertFeed
__all__ = [
    "OrderInsertFeed", "new_feed", "BACKEND", "FeedError",
    "SUBSCRIBED", "CHANNEL_ERROR", "TIMED_OUT", "CLOSED",
    "insert_event", "parse_insert_event",
]
