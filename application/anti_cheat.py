from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterable, Optional, Sequence

from domain.clock import Clock, system_clock
from domain.errors import RateLimitExceeded, SuspiciousTiming
from domain.models import CompletionProof

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimit:
    """At most `max_actions` accepted actions per sliding `window_ms`."""

    max_actions: int
    window_ms: int

    def __post_init__(self) -> None:
        if self.max_actions <= 0 or self.window_ms <= 0:
            raise ValueError(f"Invalid rate limit {self.max_actions}/{self.window_ms}ms")

    @classmethod
    def parse(cls, text: str) -> "RateLimit":
        """Parse ``"10/60000"`` (max actions / window in milliseconds)."""

        try:
            max_actions, window_ms = text.strip().split("/")
            return cls(max_actions=int(max_actions), window_ms=int(window_ms))
        except ValueError as exc:
            raise ValueError(f"Invalid rate limit {text!r}, expected <max>/<window_ms>") from exc


def _ms(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)


def _evict(window: Deque[datetime], now: datetime, retention_ms: int) -> None:
    while window and _ms(now - window[0]) >= retention_ms:
        window.popleft()


class AntiCheatValidator:
    """
    Stateless timing bounds plus per-user sliding-window rate limits.

    Rate state is one deque of accepted timestamps per user, each guarded
    by its own lock so users never wait on each other.
    """

    def __init__(
        self,
        min_completion_ms: int = 1000,
        max_completion_ms: int = 300000,
        rate_limits: Iterable[RateLimit] = (RateLimit(10, 60000),),
        clock: Clock = system_clock,
    ) -> None:
        if min_completion_ms > max_completion_ms:
            raise ValueError("min_completion_ms must not exceed max_completion_ms")
        self.min_completion_ms = min_completion_ms
        self.max_completion_ms = max_completion_ms
        self.rate_limits = tuple(rate_limits)
        self._clock = clock
        self._windows: Dict[str, Deque[datetime]] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def check_completion_time(
        self,
        elapsed_ms: int,
        min_ms: Optional[int] = None,
        max_ms: Optional[int] = None,
    ) -> None:
        min_ms = self.min_completion_ms if min_ms is None else min_ms
        max_ms = self.max_completion_ms if max_ms is None else max_ms
        if elapsed_ms < min_ms:
            raise SuspiciousTiming(f"Completed in {elapsed_ms}ms, faster than the {min_ms}ms minimum.")
        if elapsed_ms > max_ms:
            raise SuspiciousTiming(f"Completed in {elapsed_ms}ms, slower than the {max_ms}ms maximum.")

    def check_rate(
        self,
        user_id: str,
        window_ms: Optional[int] = None,
        max_actions: Optional[int] = None,
    ) -> None:
        """Check and record one action against a single window."""

        if window_ms is None and max_actions is None and self.rate_limits:
            limit = self.rate_limits[0]
        else:
            default = self.rate_limits[0] if self.rate_limits else RateLimit(10, 60000)
            limit = RateLimit(
                max_actions=default.max_actions if max_actions is None else max_actions,
                window_ms=default.window_ms if window_ms is None else window_ms,
            )
        self.check_rates(user_id, [limit])

    def check_rates(self, user_id: str, limits: Optional[Sequence[RateLimit]] = None) -> None:
        """
        Check every window and record the action once if all of them accept.

        Raises `RateLimitExceeded` carrying the longest wait among the
        violated windows.
        """

        limits = self.rate_limits if limits is None else tuple(limits)
        if not limits:
            return

        now = self._clock()
        retention_ms = max(lim.window_ms for lim in (*limits, *self.rate_limits))
        while True:
            lock = self._lock_for(user_id)
            with lock:
                # `prune_idle` may have retired this lock while we waited for it.
                if self._locks.get(user_id) is not lock:
                    continue
                self._check_window(user_id, limits, now, retention_ms)
                return

    def _check_window(
        self,
        user_id: str,
        limits: Sequence[RateLimit],
        now: datetime,
        retention_ms: int,
    ) -> None:
        window = self._windows.setdefault(user_id, deque())
        _evict(window, now, retention_ms)

        retry_after_ms = 0
        for limit in limits:
            recent = [ts for ts in window if _ms(now - ts) < limit.window_ms]
            if len(recent) + 1 > limit.max_actions:
                # Wait until enough old actions slide out to admit one more.
                freeing = recent[len(recent) - limit.max_actions]
                retry_after_ms = max(retry_after_ms, limit.window_ms - _ms(now - freeing))

        if retry_after_ms:
            logger.debug("Rate limit hit for %s, retry in %dms", user_id, retry_after_ms)
            raise RateLimitExceeded(retry_after_ms)
        window.append(now)

    @property
    def tracked_users(self) -> int:
        with self._registry_lock:
            return len(self._windows)

    def prune_idle(self) -> int:
        """
        Forget users whose every recorded action has left the configured windows.

        Users mid-check are skipped. Returns how many users were dropped.
        """

        if not self.rate_limits:
            return 0
        now = self._clock()
        retention_ms = max(lim.window_ms for lim in self.rate_limits)
        dropped = 0
        with self._registry_lock:
            for user_id in list(self._locks):
                lock = self._locks[user_id]
                if not lock.acquire(blocking=False):
                    continue
                try:
                    window = self._windows.get(user_id)
                    if window is not None:
                        _evict(window, now, retention_ms)
                    if not window:
                        self._windows.pop(user_id, None)
                        del self._locks[user_id]
                        dropped += 1
                finally:
                    lock.release()
        if dropped:
            logger.debug("Dropped rate state for %d idle users", dropped)
        return dropped

    def validate(self, user_id: str, proof: CompletionProof) -> None:
        """Timing first, then rate: the cheap stateless check runs before recording."""

        self.check_completion_time(proof.completion_time_ms)
        self.check_rates(user_id)

    def _lock_for(self, user_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock
