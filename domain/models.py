from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional


@dataclass
class ScoreEntry:
    """
    A user's standing on the leaderboard.

    `user_id` is an opaque identity owned by the authentication
    collaborator; the scoreboard only references it.
    """

    user_id: str
    score: int
    updated_at: datetime
    actions: int = 0

    def sort_key(self) -> tuple:
        # Highest score first, earliest achiever wins ties.
        return (-self.score, self.updated_at, self.user_id)


@dataclass
class ActionToken:
    """
    Single-use, time-bound proof of intent to perform a scorable action.

    Tokens move from unused to used exactly once, or expire if never
    consumed before `expires_at`.
    """

    id: str
    user_id: str
    action_type: str
    issued_at: datetime
    expires_at: datetime
    used: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at


@dataclass
class IssuedToken:
    """A freshly issued token together with the reference handed to the client."""

    token: ActionToken
    reference: str


@dataclass
class CompletionProof:
    """Evidence submitted with a token when the action is completed."""

    completion_time_ms: int
    checksum: Optional[str] = None


@dataclass
class RankedEntry:
    rank: int
    user_id: str
    score: int
    updated_at: datetime


@dataclass
class LeaderboardSnapshot:
    """Point-in-time view of the top of the leaderboard."""

    entries: List[RankedEntry]
    generated_at: datetime

    @classmethod
    def from_entries(cls, entries: List[ScoreEntry], generated_at: datetime) -> "LeaderboardSnapshot":
        ranked = [
            RankedEntry(rank=i, user_id=e.user_id, score=e.score, updated_at=e.updated_at)
            for i, e in enumerate(entries, 1)
        ]
        return cls(entries=ranked, generated_at=generated_at)

    def same_standings(self, other: Optional["LeaderboardSnapshot"]) -> bool:
        """True when `other` lists the same users, scores and ranks."""

        if other is None:
            return False
        return [(e.rank, e.user_id, e.score) for e in self.entries] == [
            (e.rank, e.user_id, e.score) for e in other.entries
        ]


@dataclass
class LeaderboardChanged:
    """Event published after an accepted score update."""

    user_id: str
    old_score: int
    new_score: int
    score_increment: int
    rank: int
    occurred_at: datetime


@dataclass
class ScoreUpdate:
    user_id: str
    action_type: str
    score_increment: int
    old_score: int
    new_score: int
    rank: int
    previous_rank: Optional[int] = None

    @property
    def rank_change(self) -> int:
        """Positive when the user climbed. New entrants count from below the board."""

        if self.previous_rank is None:
            return 0
        return self.previous_rank - self.rank


@dataclass
class ScoringRules:
    """Maps an action type to the score awarded when it completes."""

    default_increment: int = 100
    per_action: Dict[str, int] = field(default_factory=dict)

    def increment_for(self, action_type: str) -> int:
        return self.per_action.get(action_type, self.default_increment)
