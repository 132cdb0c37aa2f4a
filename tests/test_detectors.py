import asyncio

import pytest

from orderwatch.detectors import (
    POLLING, REALTIME, OrderWatch, PollingDetector, RealtimeDetector,
)
from orderwatch.model.changefeed import CLOSED, SUBSCRIBED
from orderwatch.model.orderdetails import (
    FETCH_ERROR, FetchFailure, OrderPayload,
)

from conftest import FakeFeed, FakeLookup


def payload_for(order_id):
    return OrderPayload(id=order_id, order_number=f"N-{order_id}",
                        customer_name="Jean Dupont", total_amount=1000,
                        timestamp=None)


class Recorder:
    def __init__(self, failing=()):
        self.fetched = []
        self.shown = []
        self.vibrations = []
        self.failing = set(failing)

    async def fetch(self, order_id):
        self.fetched.append(order_id)
        if order_id in self.failing:
            return FetchFailure(order_id, FETCH_ERROR, "boom")
        return payload_for(order_id)

    async def on_order(self, payload):
        self.shown.append(payload.id)

    def vibrate(self, pattern):
        self.vibrations.append(tuple(pattern))


async def wait_for(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def realtime(feed, lookup, rec, settle=0.0):
    return RealtimeDetector(feed, lookup, rec.fetch, rec.on_order,
                            vibrate=rec.vibrate, settle_seconds=settle)


# ----------------------------
# Realtime
# ----------------------------
async def test_each_new_insert_fetched_exactly_once():
    feed, rec = FakeFeed(), Recorder()
    ids = [f"o-{i:03d}" for i in range(1, 8)]
    feed.push(*ids)
    feed.end()
    detector = realtime(feed, FakeLookup(), rec)
    await detector.start()
    await detector.finished
    assert rec.fetched == ids
    assert rec.shown == ids
    assert detector.last_order_id == ids[-1]
    assert rec.vibrations == [(200, 100, 200)] * len(ids)
    assert feed.statuses == [SUBSCRIBED, CLOSED]
    await detector.stop()


async def test_existing_newest_order_is_the_baseline():
    feed, rec = FakeFeed(), Recorder()
    lookup = FakeLookup([{"id": "o-old", "created_at": 1.0}])
    feed.push("o-old", "o-new")
    feed.end()
    detector = realtime(feed, lookup, rec)
    await detector.start()
    assert detector.last_order_id == "o-old"
    await detector.finished
    assert rec.fetched == ["o-new"]


async def test_duplicate_delivery_ignored():
    feed, rec = FakeFeed(), Recorder()
    feed.push("o-1", "o-1", "o-2")
    feed.end()
    detector = realtime(feed, FakeLookup(), rec)
    await detector.start()
    await detector.finished
    assert rec.fetched == ["o-1", "o-2"]


async def test_fetch_failure_keeps_state():
    feed, rec = FakeFeed(), Recorder(failing={"o-2"})
    feed.push("o-1", "o-2")
    feed.end()
    detector = realtime(feed, FakeLookup(), rec)
    await detector.start()
    await detector.finished
    assert rec.shown == ["o-1"]
    assert detector.last_order_id == "o-1"
    assert rec.vibrations == [(200, 100, 200)]


async def test_stop_during_settle_delay_drops_order():
    feed, rec = FakeFeed(), Recorder()
    detector = realtime(feed, FakeLookup(), rec, settle=0.5)
    await detector.start()
    feed.push("o-1")
    await asyncio.sleep(0.05)
    await detector.stop()
    assert rec.fetched == []
    assert rec.shown == []


async def test_result_arriving_after_stop_is_ignored():
    release = asyncio.Event()
    rec = Recorder()

    async def slow_fetch(order_id):
        rec.fetched.append(order_id)
        await release.wait()
        return payload_for(order_id)

    detector = RealtimeDetector(FakeFeed(), FakeLookup(), slow_fetch,
                                rec.on_order, settle_seconds=0)
    await detector.start()
    pending = asyncio.create_task(detector.handle_insert("o-1"))
    await wait_for(lambda: rec.fetched == ["o-1"])
    await detector.stop()
    release.set()
    assert await pending is None
    assert rec.shown == []
    assert detector.last_order_id is None


async def test_feed_error_ends_detector():
    feed, rec = FakeFeed(), Recorder()
    feed.fail()
    detector = realtime(feed, FakeLookup(), rec)
    await detector.start()
    with pytest.raises(Exception) as info:
        await detector.finished
    assert info.value.status == "CHANNEL_ERROR"
    assert detector.status == CLOSED
    await detector.stop()


# ----------------------------
# Polling
# ----------------------------
def poller(lookup, rec, coalesce=True, interval=5.0):
    return PollingDetector(lookup, rec.fetch, rec.on_order,
                           vibrate=rec.vibrate, interval=interval,
                           coalesce=coalesce)


async def test_first_tick_only_sets_baseline():
    lookup, rec = FakeLookup([{"id": "o-1", "created_at": 1.0}]), Recorder()
    detector = poller(lookup, rec)
    assert await detector.tick() == []
    assert detector.last_order_id == "o-1"
    assert rec.fetched == []
    # nothing new
    assert await detector.tick() == []
    lookup.add("o-2", 2.0)
    shown = await detector.tick()
    assert [p.id for p in shown] == ["o-2"]
    assert rec.shown == ["o-2"]
    assert rec.vibrations == [(200, 100, 200)]


async def test_first_tick_on_empty_table_then_first_order_notifies():
    lookup, rec = FakeLookup(), Recorder()
    detector = poller(lookup, rec)
    await detector.tick()
    lookup.add("o-1", 1.0)
    await detector.tick()
    assert rec.shown == ["o-1"]


async def test_orders_between_ticks_are_coalesced():
    lookup, rec = FakeLookup([{"id": "o-1", "created_at": 1.0}]), Recorder()
    detector = poller(lookup, rec)
    await detector.tick()
    lookup.add("o-2", 2.0)
    lookup.add("o-3", 3.0)
    await detector.tick()
    assert rec.fetched == ["o-3"]
    assert rec.shown == ["o-3"]
    assert detector.last_order_id == "o-3"


async def test_no_coalescing_notifies_every_order_in_order():
    lookup, rec = FakeLookup([{"id": "o-1", "created_at": 1.0}]), Recorder()
    detector = poller(lookup, rec, coalesce=False)
    await detector.tick()
    lookup.add("o-3", 3.0)
    lookup.add("o-2", 2.0)
    await detector.tick()
    assert rec.shown == ["o-2", "o-3"]
    assert detector.last_order_id == "o-3"
    assert detector.last_created_at == 3.0


async def test_failed_fetch_is_retried_next_tick():
    lookup, rec = FakeLookup([{"id": "o-1", "created_at": 1.0}]), Recorder()
    detector = poller(lookup, rec)
    await detector.tick()
    lookup.add("o-2", 2.0)
    rec.failing.add("o-2")
    await detector.tick()
    assert detector.last_order_id == "o-1"
    rec.failing.clear()
    await detector.tick()
    assert rec.shown == ["o-2"]


async def test_polling_loop_and_toggle():
    lookup, rec = FakeLookup([{"id": "o-1", "created_at": 1.0}]), Recorder()
    detector = poller(lookup, rec, interval=0.02)
    detector.start()
    assert detector.enabled
    await asyncio.sleep(0.05)
    lookup.add("o-2", 2.0)
    await wait_for(lambda: rec.shown == ["o-2"])

    assert detector.toggle() is False
    lookup.add("o-3", 3.0)
    await asyncio.sleep(0.08)
    assert rec.shown == ["o-2"]

    # re-enabling starts over with a fresh baseline
    assert detector.toggle() is True
    await asyncio.sleep(0.08)
    assert rec.shown == ["o-2"]
    assert detector.last_order_id == "o-3"
    await detector.stop()
    assert detector.enabled is False


# ----------------------------
# Supervisor
# ----------------------------
def test_backoff_doubles_and_caps():
    watch = OrderWatch(lambda: None, None, base_delay=1.0, max_delay=5.0)
    assert [watch.backoff(a) for a in range(1, 6)] == [1, 2, 4, 5, 5]


def test_invalid_mode_rejected():
    with pytest.raises(ValueError):
        OrderWatch(lambda: None, None, mode="carrier-pigeon")


async def test_falls_back_to_polling_after_repeated_failures():
    feed, rec = FakeFeed(fail_on_subscribe=100), Recorder()
    lookup = FakeLookup([{"id": "o-1", "created_at": 1.0}])
    polling = poller(lookup, rec, interval=0.02)
    watch = OrderWatch(lambda: realtime(feed, lookup, rec), polling,
                       base_delay=0.001, max_delay=0.004, max_attempts=3)
    await watch.start()
    await wait_for(lambda: watch.mode == POLLING)
    # first try plus three reconnects
    assert feed.subscribe_attempts == 4
    assert watch.polling_enabled
    assert watch.status()["mode"] == POLLING

    await wait_for(lambda: polling.last_order_id == "o-1")
    lookup.add("o-2", 2.0)
    await wait_for(lambda: rec.shown == ["o-2"])
    assert watch.set_polling(False) is False
    await watch.stop()


async def test_reconnects_after_transient_failure():
    feed, rec = FakeFeed(fail_on_subscribe=2), Recorder()
    lookup = FakeLookup()
    watch = OrderWatch(lambda: realtime(feed, lookup, rec),
                       poller(lookup, rec),
                       base_delay=0.001, max_delay=0.004, max_attempts=3)
    await watch.start()
    await wait_for(lambda: watch.realtime is not None
                   and watch.realtime.status == SUBSCRIBED)
    assert watch.mode == REALTIME
    feed.push("o-9")
    await wait_for(lambda: rec.shown == ["o-9"])

    # a dropped channel after a good subscription starts the count over
    feed.fail()
    await wait_for(lambda: feed.subscribe_attempts == 4)
    assert watch.attempts == 1
    with pytest.raises(ValueError):
        watch.set_polling(True)
    await watch.stop()
    assert watch.realtime is None
