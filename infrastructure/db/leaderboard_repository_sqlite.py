from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from domain.clock import Clock, system_clock
from domain.errors import InvalidDelta, NotFound
from domain.models import ScoreEntry
from domain.repositories import LeaderboardRepository


def to_db_timestamp(value: datetime) -> str:
    # Fixed-width UTC text so lexical order matches chronological order.
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


class SqliteLeaderboardRepository(LeaderboardRepository):
    """
    SQLite-backed implementation of `LeaderboardRepository`.

    This repository owns the `leaderboard_scores` table and maps rows to the
    `ScoreEntry` domain model. It is self-initialising: the table is created
    if needed. Upserts run inside `BEGIN IMMEDIATE` so concurrent writers
    (threads or processes) serialise on the database write lock.
    """

    def __init__(self, db_path: str, clock: Clock = system_clock) -> None:
        self._db_path = db_path
        self._clock = clock
        self._ensure_table()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=10, isolation_level=None)
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_table(self) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS leaderboard_scores (
                    user_id TEXT PRIMARY KEY,
                    score INTEGER NOT NULL DEFAULT 0,
                    actions INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_leaderboard_order
                ON leaderboard_scores (score DESC, updated_at ASC, user_id ASC)
                """
            )

    @staticmethod
    def _to_domain(row: tuple) -> ScoreEntry:
        return ScoreEntry(
            user_id=str(row[0]),
            score=int(row[1]),
            updated_at=from_db_timestamp(row[2]),
            actions=int(row[3]),
        )

    def upsert(self, user_id: str, delta: int) -> int:
        now = to_db_timestamp(self._clock())
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT score FROM leaderboard_scores WHERE user_id = ?", (user_id,)
                ).fetchone()
                current = int(row[0]) if row else 0
                new_score = current + delta
                if new_score < 0:
                    raise InvalidDelta(f"Delta {delta} would take {user_id} to {new_score}.")

                if row is None:
                    conn.execute(
                        """
                        INSERT INTO leaderboard_scores (user_id, score, actions, updated_at)
                        VALUES (?, ?, 1, ?)
                        """,
                        (user_id, new_score, now),
                    )
                elif delta != 0:
                    conn.execute(
                        """
                        UPDATE leaderboard_scores
                        SET score = ?, actions = actions + 1, updated_at = ?
                        WHERE user_id = ?
                        """,
                        (new_score, now, user_id),
                    )
                else:
                    conn.execute(
                        "UPDATE leaderboard_scores SET actions = actions + 1 WHERE user_id = ?",
                        (user_id,),
                    )
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return new_score

    def get(self, user_id: str) -> Optional[ScoreEntry]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT user_id, score, updated_at, actions FROM leaderboard_scores WHERE user_id = ?",
                (user_id,),
            ).fetchone()
            if not row:
                return None
            return self._to_domain(row)

    def top_n(self, n: int) -> List[ScoreEntry]:
        if n <= 0:
            return []
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT user_id, score, updated_at, actions
                FROM leaderboard_scores
                ORDER BY score DESC, updated_at ASC, user_id ASC
                LIMIT ?
                """,
                (n,),
            ).fetchall()
            return [self._to_domain(row) for row in rows]

    def rank(self, user_id: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT score, updated_at FROM leaderboard_scores WHERE user_id = ?", (user_id,)
            ).fetchone()
            if not row:
                raise NotFound(f"No leaderboard entry for {user_id}.")
            score, updated_at = row
            ahead = conn.execute(
                """
                SELECT COUNT(*) FROM leaderboard_scores
                WHERE score > ?
                   OR (score = ? AND updated_at < ?)
                   OR (score = ? AND updated_at = ? AND user_id < ?)
                """,
                (score, score, updated_at, score, updated_at, user_id),
            ).fetchone()
            return int(ahead[0]) + 1
