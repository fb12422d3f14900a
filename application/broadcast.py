from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import suppress
from typing import Callable, List, Optional, Set, Union

from domain.models import LeaderboardChanged, LeaderboardSnapshot

logger = logging.getLogger(__name__)

SnapshotProvider = Callable[[], LeaderboardSnapshot]

# What a subscriber receives: the coalesced board, or one accepted update.
BroadcastMessage = Union[LeaderboardSnapshot, LeaderboardChanged]


class Subscription:
    """
    A subscriber's view of the live leaderboard.

    Iterate with ``async for message in subscription``. Each message is a
    `LeaderboardSnapshot` or a `LeaderboardChanged` event; every flush
    delivers the snapshot first, then the events it covers. Iteration ends
    when the subscription is closed or the broadcaster stops. The queue is
    bounded and drops the oldest message when a slow consumer falls behind.
    """

    def __init__(self, broadcaster: "LeaderboardBroadcaster", maxsize: int) -> None:
        self._broadcaster = broadcaster
        self._queue: "asyncio.Queue[Optional[BroadcastMessage]]" = asyncio.Queue(maxsize=maxsize)
        self._ended = False

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def ended(self) -> bool:
        return self._ended

    def _offer(self, item: Optional[BroadcastMessage]) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(item)

    def _end(self) -> None:
        if not self._ended:
            self._ended = True
            self._offer(None)

    async def get(self) -> Optional[BroadcastMessage]:
        """Next message, or None once the subscription has ended."""

        if self._ended and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> BroadcastMessage:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


class LeaderboardBroadcaster:
    """
    Coalescing fan-out of leaderboard changes.

    `publish` only marks the board dirty and queues the event, so it is safe
    to call from request threads. A timer task on the event loop flushes at
    most once per interval, sending every subscriber one fresh snapshot no
    matter how many publishes happened in between, followed by the queued
    events. Snapshots are read in a worker thread since the provider may
    query a database.

    With `poll_changes` the timer also recomputes the snapshot on quiet
    ticks and sends it when the standings differ from the last one sent,
    which picks up writes made by another process sharing the store.
    """

    def __init__(
        self,
        snapshot_provider: SnapshotProvider,
        interval_ms: int = 1000,
        poll_changes: bool = False,
        queue_size: int = 16,
    ) -> None:
        if interval_ms <= 0:
            raise ValueError("Broadcast interval must be positive.")
        self._snapshot_provider = snapshot_provider
        self._interval = interval_ms / 1000
        self._poll_changes = poll_changes
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._dirty = False
        self._pending_events: List[LeaderboardChanged] = []
        self._last_sent: Optional[LeaderboardSnapshot] = None
        self._subscribers: Set[Subscription] = set()
        self._task: Optional[asyncio.Task] = None
        self.published = 0
        self.flushes = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def pending_events(self) -> List[LeaderboardChanged]:
        with self._lock:
            return list(self._pending_events)

    def publish(self, event: Optional[LeaderboardChanged] = None) -> None:
        with self._lock:
            self._dirty = True
            if event is not None:
                self._pending_events.append(event)
                # Keep only what a subscriber queue could hold anyway.
                del self._pending_events[: -self._queue_size]
            self.published += 1

    async def _read_snapshot(self) -> LeaderboardSnapshot:
        return await asyncio.to_thread(self._snapshot_provider)

    async def subscribe(self) -> Subscription:
        """Register a subscriber and queue the current board for it."""

        snapshot = await self._read_snapshot()
        latest = self._last_sent
        if latest is not None and latest.generated_at > snapshot.generated_at:
            snapshot = latest
        elif latest is None:
            self._last_sent = snapshot

        subscription = Subscription(self, self._queue_size)
        subscription._offer(snapshot)
        self._subscribers.add(subscription)
        logger.info("Leaderboard subscriber added (%d total)", len(self._subscribers))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.discard(subscription)
            logger.info("Leaderboard subscriber removed (%d total)", len(self._subscribers))
        subscription._end()

    async def flush(self) -> bool:
        """Send one snapshot and the queued events if anything changed."""

        with self._lock:
            dirty, self._dirty = self._dirty, False
            events, self._pending_events = self._pending_events, []
        if not dirty and not self._poll_changes:
            return False

        try:
            snapshot = await self._read_snapshot()
        except Exception:
            with self._lock:
                self._dirty = self._dirty or dirty
                self._pending_events[:0] = events
            raise

        if not dirty:
            if self._last_sent is None:
                self._last_sent = snapshot
                return False
            if snapshot.same_standings(self._last_sent):
                return False

        self._last_sent = snapshot
        self.flushes += 1
        for subscription in list(self._subscribers):
            subscription._offer(snapshot)
            for event in events:
                subscription._offer(event)
        logger.debug(
            "Flushed leaderboard and %d events to %d subscribers", len(events), len(self._subscribers)
        )
        return True

    def start(self) -> None:
        """Start the flush timer on the running event loop."""

        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Leaderboard broadcaster started (interval %.3fs)", self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        for subscription in list(self._subscribers):
            self.unsubscribe(subscription)
        logger.info("Leaderboard broadcaster stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.flush()
            except Exception:
                logger.exception("Leaderboard flush failed")
