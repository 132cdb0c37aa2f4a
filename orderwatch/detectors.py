"""
New-order change detectors.

RealtimeDetector follows the insert feed; PollingDetector asks for the
newest order on a timer. Both keep a last-seen order id so an order is
surfaced once, fetch its details, and hand the payload to `on_order`.
Results that arrive after stop() are dropped.

OrderWatch runs the realtime detector, reconnects it with exponential
backoff, and switches to polling after too many failed attempts.
"""
from __future__ import annotations
import asyncio
from contextlib import aclosing
from typing import (
    Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence,
)

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .config import VIBRATION_PATTERN
from .model.changefeed import (
    FeedError, SUBSCRIBED, CLOSED, StatusCallback,
)
from .model.orderdetails import FetchFailure, FetchResult, OrderPayload

logger = structlog.get_logger(__name__)

REALTIME = "realtime"
POLLING = "polling"

Fetch = Callable[[str], Awaitable[FetchResult]]
OnOrder = Callable[[OrderPayload], Awaitable[None]]
Vibrate = Callable[[Sequence[int]], None]


class InsertFeed(Protocol):
    def listen(self, on_status: StatusCallback): ...


class Lookup(Protocol):
    async def latest(self) -> Optional[Dict[str, Any]]: ...

    async def created_after(
        self, created_at: float, order_id: str
    ) -> List[Dict[str, Any]]: ...


async def _reap(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except FeedError as e:
        logger.info("feed_task_ended", status=e.status)
    except Exception as e:
        logger.error("detector_task_failed", error=str(e))


class _Detector:
    def __init__(self, fetch: Fetch, on_order: OnOrder,
                 vibrate: Optional[Vibrate] = None) -> None:
        self.fetch = fetch
        self.on_order = on_order
        self.vibrate = vibrate
        self.last_order_id: Optional[str] = None
        self._stopped = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def _haptics(self) -> None:
        if self.vibrate is not None:
            self.vibrate(VIBRATION_PATTERN)

    async def _surface(self, order_id: str) -> Optional[OrderPayload]:
        stopped = self._stopped
        result = await self.fetch(order_id)
        if stopped.is_set():
            logger.info("result_dropped_after_stop", order_id=order_id)
            return None
        if isinstance(result, FetchFailure):
            logger.warning("order_details_unavailable", order_id=order_id,
                           reason=result.reason)
            return None
        self.last_order_id = order_id
        self._haptics()
        await self.on_order(result)
        return result


# ----------------------------
# Realtime
# ----------------------------
class RealtimeDetector(_Detector):
    def __init__(self, feed: InsertFeed, lookup: Lookup, fetch: Fetch,
                 on_order: OnOrder, vibrate: Optional[Vibrate] = None,
                 settle_seconds: float = 1.0) -> None:
        super().__init__(fetch, on_order, vibrate)
        self.feed = feed
        self.lookup = lookup
        self.settle_seconds = settle_seconds
        self.status: Optional[str] = None
        self.subscribed = asyncio.Event()

    @property
    def finished(self) -> Optional[asyncio.Task]:
        return self._task

    async def start(self) -> None:
        self._stopped.clear()
        try:
            latest = await self.lookup.latest()
        except SQLAlchemyError as e:
            logger.error("baseline_lookup_failed", error=str(e))
            latest = None
        if latest:
            self.last_order_id = latest["id"]
        logger.info("realtime_detector_started",
                    baseline=self.last_order_id)
        self._task = asyncio.create_task(self._run())

    def _on_status(self, status: str) -> None:
        self.status = status
        if status == SUBSCRIBED:
            self.subscribed.set()
            logger.info("feed_status", status=status)
        elif status == CLOSED:
            logger.warning("feed_status", status=status)
        else:
            logger.error("feed_status", status=status)

    async def _run(self) -> None:
        async with aclosing(self.feed.listen(self._on_status)) as events:
            async for order_id in events:
                if self._stopped.is_set():
                    break
                await self.handle_insert(order_id)

    async def handle_insert(self, order_id: str) -> Optional[OrderPayload]:
        if order_id == self.last_order_id:
            logger.info("duplicate_insert_ignored", order_id=order_id)
            return None
        logger.info("new_order_detected", order_id=order_id)
        if self.settle_seconds > 0:
            # let the order's items commit
            await asyncio.sleep(self.settle_seconds)
        if self._stopped.is_set():
            return None
        return await self._surface(order_id)

    async def stop(self) -> None:
        self._stopped.set()
        task, self._task = self._task, None
        await _reap(task)
        logger.info("realtime_detector_stopped")


# ----------------------------
# Polling
# ----------------------------
class PollingDetector(_Detector):
    def __init__(self, lookup: Lookup, fetch: Fetch, on_order: OnOrder,
                 vibrate: Optional[Vibrate] = None, interval: float = 5.0,
                 coalesce: bool = True) -> None:
        super().__init__(fetch, on_order, vibrate)
        self.lookup = lookup
        self.interval = interval
        self.coalesce = coalesce
        self.enabled = False
        self.last_created_at: Optional[float] = None
        self._first_tick = True

    def start(self) -> None:
        self.set_enabled(True)

    def set_enabled(self, enabled: bool) -> None:
        if enabled == self.enabled:
            return
        self.enabled = enabled
        if enabled:
            self._first_tick = True
            self._stopped = asyncio.Event()
            self._task = asyncio.create_task(self._run(self._stopped))
            logger.info("polling_started", interval=self.interval)
        else:
            self._stopped.set()
            task, self._task = self._task, None
            if task is not None and not task.done():
                task.cancel()
            logger.info("polling_stopped")

    def toggle(self) -> bool:
        self.set_enabled(not self.enabled)
        return self.enabled

    async def stop(self) -> None:
        task = self._task
        self.set_enabled(False)
        await _reap(task)

    async def _run(self, stopped: asyncio.Event) -> None:
        while not stopped.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("poll_tick_failed", error=str(e))
            try:
                await asyncio.wait_for(stopped.wait(), self.interval)
            except asyncio.TimeoutError:
                pass

    async def tick(self) -> List[OrderPayload]:
        stopped = self._stopped
        latest = await self.lookup.latest()
        if stopped.is_set():
            return []
        if self._first_tick:
            # adopt what is already there, never notify for history
            self._first_tick = False
            if latest:
                self.last_order_id = latest["id"]
                self.last_created_at = latest["created_at"]
            logger.info("polling_baseline", baseline=self.last_order_id)
            return []
        if not latest or latest["id"] == self.last_order_id:
            return []

        if self.coalesce or self.last_created_at is None:
            candidates = [latest]
        else:
            candidates = await self.lookup.created_after(
                self.last_created_at, self.last_order_id
            ) or [latest]

        shown: List[OrderPayload] = []
        for row in candidates:
            logger.info("new_order_detected", order_id=row["id"])
            payload = await self._surface(row["id"])
            if payload is None:
                # baseline not moved; retried next tick
                break
            self.last_created_at = row["created_at"]
            shown.append(payload)
        return shown


# ----------------------------
# Supervisor
# ----------------------------
class OrderWatch:
    def __init__(
        self,
        make_realtime: Callable[[], RealtimeDetector],
        polling: PollingDetector,
        mode: str = REALTIME,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        max_attempts: int = 5,
    ) -> None:
        if mode not in (REALTIME, POLLING):
            raise ValueError(f"invalid watch mode: {mode}")
        self.make_realtime = make_realtime
        self.polling = polling
        self.mode = mode
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.attempts = 0
        self.realtime: Optional[RealtimeDetector] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def polling_enabled(self) -> bool:
        return self.polling.enabled

    def backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * 2 ** (attempt - 1))

    async def start(self) -> None:
        if self.mode == POLLING:
            self.polling.start()
        else:
            self._task = asyncio.create_task(self._supervise())

    async def _supervise(self) -> None:
        while True:
            detector = self.make_realtime()
            self.realtime = detector
            error: Optional[Exception] = None
            try:
                await detector.start()
                await detector.finished
            except FeedError as e:
                error = e
            except Exception as e:
                logger.error("realtime_detector_crashed", error=str(e))
                error = e
            finally:
                await detector.stop()
            if detector.subscribed.is_set():
                self.attempts = 0
            self.attempts += 1
            if self.attempts > self.max_attempts:
                logger.warning("realtime_given_up_fallback_to_polling",
                               attempts=self.attempts - 1)
                self.realtime = None
                self.mode = POLLING
                self.polling.start()
                return
            delay = self.backoff(self.attempts)
            logger.warning("realtime_reconnecting", attempt=self.attempts,
                           delay=delay,
                           error=str(error) if error else CLOSED)
            await asyncio.sleep(delay)

    def set_polling(self, enabled: bool) -> bool:
        if self.mode != POLLING:
            raise ValueError("polling toggle requires polling mode")
        self.polling.set_enabled(enabled)
        return self.polling.enabled

    def status(self) -> Dict[str, Any]:
        return {
            "mode": self.mode,
            "polling_enabled": self.polling.enabled,
            "realtime_status": self.realtime.status if self.realtime else None,
            "reconnect_attempts": self.attempts,
            "last_order_id": (
                self.realtime.last_order_id if self.realtime
                else self.polling.last_order_id
            ),
        }

    async def stop(self) -> None:
        task, self._task = self._task, None
        await _reap(task)
        if self.realtime is not None:
            await self.realtime.stop()
            self.realtime = None
        await self.polling.stop()
