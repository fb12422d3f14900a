from __future__ import annotations

import threading
from dataclasses import replace
from typing import Dict, List, Optional

from domain.clock import Clock, system_clock
from domain.errors import InvalidDelta, NotFound
from domain.models import ScoreEntry
from domain.repositories import LeaderboardRepository


class InMemoryLeaderboardRepository(LeaderboardRepository):
    """
    Process-local `LeaderboardRepository`.

    A single lock guards the map; ordering is recomputed on each query,
    which is fine for the tens-to-thousands of users a single process serves.
    """

    def __init__(self, clock: Clock = system_clock) -> None:
        self._clock = clock
        self._entries: Dict[str, ScoreEntry] = {}
        self._lock = threading.RLock()

    def upsert(self, user_id: str, delta: int) -> int:
        with self._lock:
            entry = self._entries.get(user_id)
            current = entry.score if entry else 0
            new_score = current + delta
            if new_score < 0:
                raise InvalidDelta(f"Delta {delta} would take {user_id} to {new_score}.")

            now = self._clock()
            if entry is None:
                self._entries[user_id] = ScoreEntry(user_id=user_id, score=new_score, updated_at=now, actions=1)
            else:
                entry.actions += 1
                if delta != 0:
                    entry.score = new_score
                    entry.updated_at = now
            return new_score

    def get(self, user_id: str) -> Optional[ScoreEntry]:
        with self._lock:
            entry = self._entries.get(user_id)
            return replace(entry) if entry else None

    def _ordered(self) -> List[ScoreEntry]:
        return sorted(self._entries.values(), key=ScoreEntry.sort_key)

    def top_n(self, n: int) -> List[ScoreEntry]:
        if n <= 0:
            return []
        with self._lock:
            return [replace(e) for e in self._ordered()[:n]]

    def rank(self, user_id: str) -> int:
        with self._lock:
            entry = self._entries.get(user_id)
            if entry is None:
                raise NotFound(f"No leaderboard entry for {user_id}.")
            key = entry.sort_key()
            return 1 + sum(1 for e in self._entries.values() if e.sort_key() < key)
