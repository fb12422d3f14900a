import asyncio
import time
import unittest

from application.broadcast import LeaderboardBroadcaster
from application.services import get_leaderboard
from domain.models import LeaderboardChanged, LeaderboardSnapshot
from infrastructure.memory.leaderboard_repository import InMemoryLeaderboardRepository
from fakes import ManualClock


class LeaderboardBroadcasterTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = ManualClock()
        self.repo = InMemoryLeaderboardRepository(self.clock)
        self.provider_calls = 0

    def _snapshot(self):
        self.provider_calls += 1
        return get_leaderboard(10, self.repo, clock=self.clock)

    def _broadcaster(self, provider=None, **kwargs):
        broadcaster = LeaderboardBroadcaster(provider or self._snapshot, **kwargs)
        self.addAsyncCleanup(broadcaster.stop)
        return broadcaster

    def _score(self, user_id, delta):
        entry = self.repo.get(user_id)
        old = entry.score if entry else 0
        new = self.repo.upsert(user_id, delta)
        return LeaderboardChanged(
            user_id=user_id,
            old_score=old,
            new_score=new,
            score_increment=delta,
            rank=self.repo.rank(user_id),
            occurred_at=self.clock(),
        )

    async def test_subscriber_gets_immediate_snapshot(self):
        self.repo.upsert("alice", 10)
        broadcaster = self._broadcaster()

        subscription = await broadcaster.subscribe()
        snapshot = await asyncio.wait_for(subscription.get(), timeout=1)

        self.assertEqual([e.user_id for e in snapshot.entries], ["alice"])

    async def test_publishes_within_an_interval_coalesce_into_one_snapshot(self):
        broadcaster = self._broadcaster()
        subscription = await broadcaster.subscribe()
        await subscription.get()

        for _ in range(3):
            broadcaster.publish(self._score("alice", 10))

        self.assertTrue(await broadcaster.flush())
        self.assertFalse(await broadcaster.flush())

        snapshot = await subscription.get()
        self.assertIsInstance(snapshot, LeaderboardSnapshot)
        self.assertEqual(snapshot.entries[0].score, 30)
        self.assertEqual(broadcaster.published, 3)
        self.assertEqual(broadcaster.flushes, 1)

    async def test_flush_delivers_each_score_change_after_the_snapshot(self):
        broadcaster = self._broadcaster()
        subscription = await broadcaster.subscribe()
        await subscription.get()

        broadcaster.publish(self._score("alice", 100))
        self.clock.advance(seconds=1)
        broadcaster.publish(self._score("bob", 250))
        self.assertEqual(len(broadcaster.pending_events), 2)

        await broadcaster.flush()

        self.assertEqual(subscription.pending, 3)
        self.assertIsInstance(await subscription.get(), LeaderboardSnapshot)
        first = await subscription.get()
        second = await subscription.get()
        self.assertEqual((first.user_id, first.old_score, first.new_score, first.rank), ("alice", 0, 100, 1))
        self.assertEqual((second.user_id, second.score_increment, second.rank), ("bob", 250, 1))
        self.assertEqual(broadcaster.pending_events, [])

    async def test_flush_without_publish_sends_nothing(self):
        broadcaster = self._broadcaster()
        subscription = await broadcaster.subscribe()
        await subscription.get()
        calls = self.provider_calls

        self.repo.upsert("alice", 10)
        self.assertFalse(await broadcaster.flush())
        self.assertEqual(subscription.pending, 0)
        self.assertEqual(self.provider_calls, calls)

    async def test_failed_snapshot_keeps_changes_for_the_next_flush(self):
        failures = [RuntimeError("store unavailable")]

        def flaky_snapshot():
            if failures:
                raise failures.pop()
            return self._snapshot()

        broadcaster = self._broadcaster()
        subscription = await broadcaster.subscribe()
        await subscription.get()
        broadcaster._snapshot_provider = flaky_snapshot

        broadcaster.publish(self._score("alice", 10))
        with self.assertRaises(RuntimeError):
            await broadcaster.flush()

        self.assertTrue(await broadcaster.flush())
        self.assertEqual(subscription.pending, 2)

    async def test_timer_flushes_published_changes(self):
        broadcaster = self._broadcaster(interval_ms=20)
        broadcaster.start()
        self.assertTrue(broadcaster.running)
        subscription = await broadcaster.subscribe()
        await subscription.get()

        broadcaster.publish(self._score("bob", 5))

        snapshot = await asyncio.wait_for(subscription.get(), timeout=2)
        self.assertEqual([e.user_id for e in snapshot.entries], ["bob"])

    async def test_slow_snapshot_reads_do_not_stall_the_event_loop(self):
        def slow_snapshot():
            time.sleep(0.3)
            return self._snapshot()

        broadcaster = self._broadcaster(provider=slow_snapshot, interval_ms=10)
        broadcaster.start()
        broadcaster.publish(self._score("alice", 10))

        loop = asyncio.get_running_loop()
        subscriber = asyncio.create_task(broadcaster.subscribe())
        longest = 0.0
        deadline = loop.time() + 0.5
        while loop.time() < deadline:
            before = loop.time()
            await asyncio.sleep(0.005)
            longest = max(longest, loop.time() - before)

        self.assertLess(longest, 0.2)
        (await subscriber).close()

    async def test_poll_mode_picks_up_external_writes_once(self):
        broadcaster = self._broadcaster(poll_changes=True)
        subscription = await broadcaster.subscribe()
        await subscription.get()

        self.assertFalse(await broadcaster.flush())
        self.repo.upsert("carol", 40)
        self.assertTrue(await broadcaster.flush())
        self.assertFalse(await broadcaster.flush())

        self.assertEqual(subscription.pending, 1)
        snapshot = await subscription.get()
        self.assertEqual(snapshot.entries[0].user_id, "carol")

    async def test_slow_subscriber_keeps_only_latest_messages(self):
        broadcaster = self._broadcaster(queue_size=2)
        subscription = await broadcaster.subscribe()

        for _ in range(5):
            broadcaster.publish(self._score("alice", 1))
            await broadcaster.flush()

        self.assertEqual(subscription.pending, 2)
        snapshot = await subscription.get()
        event = await subscription.get()
        self.assertEqual(snapshot.entries[0].score, 5)
        self.assertEqual(event.new_score, 5)

    async def test_stop_cancels_timer_and_ends_subscriptions(self):
        broadcaster = self._broadcaster(interval_ms=10)
        broadcaster.start()
        subscription = await broadcaster.subscribe()

        received = []

        async def consume():
            async for message in subscription:
                received.append(message)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0.05)
        await broadcaster.stop()
        await asyncio.wait_for(consumer, timeout=1)

        self.assertFalse(broadcaster.running)
        self.assertEqual(len(received), 1)
        self.assertTrue(subscription.ended)
        self.assertIsNone(await subscription.get())
        self.assertEqual(broadcaster.subscriber_count, 0)

    async def test_closing_a_subscription_unsubscribes_it(self):
        broadcaster = self._broadcaster()
        subscription = await broadcaster.subscribe()
        async with subscription:
            self.assertEqual(broadcaster.subscriber_count, 1)
        self.assertEqual(broadcaster.subscriber_count, 0)
        self.assertTrue(subscription.ended)

    def test_interval_must_be_positive(self):
        with self.assertRaises(ValueError):
            LeaderboardBroadcaster(self._snapshot, interval_ms=0)


if __name__ == "__main__":
    unittest.main()
