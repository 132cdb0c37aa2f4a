from __future__ import annotations
import asyncio
from typing import AsyncIterator, Optional

import asyncpg
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from . import (
    SUBSCRIBED, CHANNEL_ERROR, TIMED_OUT, CLOSED,
    FeedError, StatusCallback, parse_insert_event,
)

logger = structlog.get_logger(__name__)

PG_CHANNEL = "orders_insert"

# ------------------------------------------------------------------------------
# DDL (idempotent): every INSERT on orders raises a NOTIFY at commit time
# ------------------------------------------------------------------------------
SQL_CREATE_NOTIFY_FUNCTION = r"""
CREATE OR REPLACE FUNCTION notify_order_insert() RETURNS trigger AS $$
BEGIN
  PERFORM pg_notify(
    'orders_insert',
    json_build_object(
      'type', 'INSERT',
      'table', 'orders',
      'new', json_build_object('id', NEW.id)
    )::text
  );
  RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

SQL_DROP_TRIGGER = r"""
DROP TRIGGER IF EXISTS orders_insert_notify ON orders;
"""

SQL_CREATE_TRIGGER = r"""
CREATE TRIGGER orders_insert_notify
  AFTER INSERT ON orders
  FOR EACH ROW EXECUTE FUNCTION notify_order_insert();
"""


async def create_schema(conn: AsyncConnection):
    await conn.execute(text(SQL_CREATE_NOTIFY_FUNCTION))
    await conn.execute(text(SQL_DROP_TRIGGER))
    await conn.execute(text(SQL_CREATE_TRIGGER))


class OrderInsertFeed:
    """Insert events on `orders` via PostgreSQL LISTEN/NOTIFY.

    Uses its own asyncpg connection; the pooled SQLAlchemy connections are
    never parked on LISTEN.
    """

    def __init__(self, dsn: str, connect_timeout: float = 10.0) -> None:
        self.dsn = dsn
        self.connect_timeout = connect_timeout

    async def publish(self, order_id: str) -> int:
        # the insert trigger already notified
        return 0

    async def listen(self, on_status: StatusCallback) -> AsyncIterator[str]:
        queue: asyncio.Queue = asyncio.Queue()
        conn: Optional[asyncpg.Connection] = None

        def _on_notify(_conn, _pid, _channel, payload):
            queue.put_nowait(payload)

        def _on_terminate(_conn):
            logger.warning("listen_connection_terminated", channel=PG_CHANNEL)
            queue.put_nowait(FeedError(CLOSED, "connection terminated"))

        try:
            try:
                conn = await asyncpg.connect(
                    self.dsn, timeout=self.connect_timeout
                )
                await conn.add_listener(PG_CHANNEL, _on_notify)
            except asyncio.TimeoutError:
                on_status(TIMED_OUT)
                raise FeedError(TIMED_OUT, PG_CHANNEL)
            except (OSError, asyncpg.PostgresError) as e:
                on_status(CHANNEL_ERROR)
                raise FeedError(CHANNEL_ERROR, str(e)) from e
            conn.add_termination_listener(_on_terminate)
            on_status(SUBSCRIBED)

            while True:
                item = await queue.get()
                if isinstance(item, FeedError):
                    raise item
                order_id = parse_insert_event(item)
                if order_id:
                    yield order_id
        finally:
            on_status(CLOSED)
            if conn is not None and not conn.is_closed():
                await conn.close()
