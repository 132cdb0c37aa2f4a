from __future__ import annotations
import asyncio
from typing import AsyncIterator

import redis.asyncio as redis
from redis.exceptions import RedisError

from . import (
    SUBSCRIBED, CHANNEL_ERROR, TIMED_OUT, CLOSED,
    FeedError, StatusCallback, insert_event, parse_insert_event,
)


class OrderInsertFeed:
    """Insert events on `orders`, carried over a Redis pub/sub channel.

    Writers announce new rows with publish(); nothing is replayed for
    subscribers that were offline.
    """

    def __init__(self, r: redis.Redis, channel: str,
                 subscribe_timeout: float = 10.0) -> None:
        self.r = r
        self.channel = channel
        self.subscribe_timeout = subscribe_timeout

    async def publish(self, order_id: str) -> int:
        return await self.r.publish(self.channel, insert_event(order_id))

    async def listen(self, on_status: StatusCallback) -> AsyncIterator[str]:
        pubsub = self.r.pubsub(ignore_subscribe_messages=True)
        try:
            try:
                await asyncio.wait_for(
                    pubsub.subscribe(self.channel), self.subscribe_timeout
                )
            except asyncio.TimeoutError:
                on_status(TIMED_OUT)
                raise FeedError(TIMED_OUT, self.channel)
            except RedisError as e:
                on_status(CHANNEL_ERROR)
                raise FeedError(CHANNEL_ERROR, str(e)) from e
            on_status(SUBSCRIBED)

            try:
                async for msg in pubsub.listen():
                    if msg.get("type") != "message":
                        continue
                    order_id = parse_insert_event(msg.get("data"))
                    if order_id:
                        yield order_id
            except RedisError as e:
                on_status(CHANNEL_ERROR)
                raise FeedError(CHANNEL_ERROR, str(e)) from e
            # listen() only ends when the connection is gone
            raise FeedError(CLOSED, "subscription ended")
        finally:
            on_status(CLOSED)
            await pubsub.aclose()
