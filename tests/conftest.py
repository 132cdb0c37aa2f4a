import asyncio
from typing import Any, Dict, List, Optional

import pytest

from orderwatch.audio import AudioAlertGenerator
from orderwatch.helpers import now_ts
from orderwatch.infra.sql import make_async_engine
from orderwatch.model.changefeed import (
    FeedError, SUBSCRIBED, CHANNEL_ERROR, CLOSED,
)
from orderwatch.model.db import (
    Base, Customer, Product, ReadyCocktail, CocktailMaison,
)

_END = object()


class FakeFeed:
    """In-memory insert feed with the same listen() contract as the real
    backends."""

    def __init__(self, fail_on_subscribe: int = 0) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.published: List[str] = []
        self.statuses: List[str] = []
        self.fail_on_subscribe = fail_on_subscribe
        self.subscribe_attempts = 0

    async def publish(self, order_id: str) -> int:
        self.published.append(order_id)
        self.queue.put_nowait(order_id)
        return 1

    def push(self, *order_ids: str) -> None:
        for oid in order_ids:
            self.queue.put_nowait(oid)

    def end(self) -> None:
        self.queue.put_nowait(_END)

    def fail(self, status: str = CHANNEL_ERROR) -> None:
        self.queue.put_nowait(FeedError(status, "injected"))

    async def listen(self, on_status):
        self.subscribe_attempts += 1

        def report(status):
            self.statuses.append(status)
            on_status(status)

        if self.subscribe_attempts <= self.fail_on_subscribe:
            report(CHANNEL_ERROR)
            raise FeedError(CHANNEL_ERROR, "refused")
        report(SUBSCRIBED)
        try:
            while True:
                item = await self.queue.get()
                if item is _END:
                    return
                if isinstance(item, FeedError):
                    report(item.status)
                    raise item
                yield item
        finally:
            report(CLOSED)


class FakeAudioContext:
    def __init__(self) -> None:
        self.state = "suspended"
        self.resumes = 0
        self.plays = 0
        self.fail_resume = False

    async def resume(self) -> None:
        self.resumes += 1
        if self.fail_resume:
            raise RuntimeError("user gesture required")
        self.state = "running"

    def play(self, samples, sample_rate: int) -> None:
        self.plays += 1


class FakeLookup:
    """Orders as (id, created_at) rows, newest by created_at."""

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None) -> None:
        self.rows: List[Dict[str, Any]] = list(rows or [])

    def add(self, order_id: str, created_at: float) -> None:
        self.rows.append({"id": order_id, "created_at": created_at})

    def _sorted(self):
        return sorted(self.rows, key=lambda r: (r["created_at"], r["id"]))

    async def latest(self):
        rows = self._sorted()
        return dict(rows[-1]) if rows else None

    async def created_after(self, created_at, order_id):
        return [dict(r) for r in self._sorted()
                if (r["created_at"], r["id"]) > (created_at, order_id)]


@pytest.fixture
def audio_context():
    return FakeAudioContext()


@pytest.fixture
async def audio(audio_context):
    gen = AudioAlertGenerator(lambda: audio_context, repeat_interval=0.05)
    yield gen
    gen.stop_alert()


@pytest.fixture
async def database(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path}/orderwatch-test.db"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine, SessionAsync, gated
    await engine.dispose()


async def seed_catalog(SessionAsync) -> None:
    async with SessionAsync() as db:
        async with db.begin():
            db.add_all([
                Customer(id="cust-1", first_name="Jean", last_name="Dupont",
                         email="jean@example.com", created_at=now_ts()),
                Customer(id="cust-2", full_name="Awa Ndong",
                         first_name="A.", last_name="N.",
                         created_at=now_ts()),
                Product(id="prod-chips", name="Chips", price=3000),
                ReadyCocktail(id="rc-punch", name="Punch Coco", price=5000),
                CocktailMaison(id="cm-mojito", name="Mojito",
                               base_price=4500),
            ])
