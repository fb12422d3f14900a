from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from .models import ActionToken, ScoreEntry


class LeaderboardRepository(Protocol):
    """
    Abstraction over score storage.

    Implementations are responsible for:
    - Applying score deltas atomically per user.
    - Ordering entries by descending score, then earliest `updated_at`,
      then `user_id`, so every query is deterministic.
    """

    def upsert(self, user_id: str, delta: int) -> int:
        """
        Add `delta` to the user's score, creating the entry at zero if absent.

        Returns the resulting score. Raises `InvalidDelta` and leaves the
        entry untouched if the result would be negative.
        """

        ...

    def get(self, user_id: str) -> Optional[ScoreEntry]:
        """Return the user's entry, or None if they have never scored."""

        ...

    def top_n(self, n: int) -> List[ScoreEntry]:
        """Return up to `n` entries in leaderboard order; `n <= 0` gives []."""

        ...

    def rank(self, user_id: str) -> int:
        """1-based leaderboard position. Raises `NotFound` without an entry."""

        ...


class ActionTokenRepository(Protocol):
    """
    Persistence for action token records.

    Only the token service talks to this repository; the coordinator never
    mutates tokens directly.
    """

    def add(self, token: ActionToken) -> None:
        ...

    def get(self, token_id: str) -> Optional[ActionToken]:
        ...

    def mark_used(self, token_id: str) -> bool:
        """
        Atomically flip `used` from False to True.

        Returns True only for the single caller that performed the flip.
        """

        ...

    def purge_expired(self, now: datetime) -> int:
        """Delete records that expired before `now`; return how many went."""

        ...
