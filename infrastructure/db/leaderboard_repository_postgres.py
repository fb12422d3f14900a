from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional

import psycopg2

from domain.clock import Clock, system_clock
from domain.errors import InvalidDelta, NotFound
from domain.models import ScoreEntry
from domain.repositories import LeaderboardRepository


class PostgresLeaderboardRepository(LeaderboardRepository):
    """
    Postgres-backed implementation of `LeaderboardRepository`.

    Each upsert locks the user's row with `SELECT ... FOR UPDATE` and checks
    the resulting score before writing, all inside one transaction. Updates
    for different users never contend for the same row lock.
    """

    def __init__(self, dsn: str, clock: Clock = system_clock) -> None:
        self._dsn = dsn
        self._clock = clock
        self._ensure_table()

    @contextmanager
    def _get_connection(self) -> Iterator[psycopg2.extensions.connection]:
        conn = psycopg2.connect(self._dsn)
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_table(self) -> None:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    CREATE TABLE IF NOT EXISTS leaderboard_scores (
                        user_id TEXT PRIMARY KEY,
                        score BIGINT NOT NULL DEFAULT 0,
                        actions INTEGER NOT NULL DEFAULT 0,
                        updated_at TIMESTAMPTZ NOT NULL
                    )
                    """
                )
                cur.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_leaderboard_order
                    ON leaderboard_scores (score DESC, updated_at ASC, user_id ASC)
                    """
                )
                conn.commit()

    @staticmethod
    def _to_domain(row: tuple) -> ScoreEntry:
        return ScoreEntry(
            user_id=str(row[0]),
            score=int(row[1]),
            updated_at=row[2],
            actions=int(row[3]),
        )

    def upsert(self, user_id: str, delta: int) -> int:
        now = self._clock()
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT score FROM leaderboard_scores WHERE user_id = %s FOR UPDATE",
                    (user_id,),
                )
                row = cur.fetchone()
                current = int(row[0]) if row else 0
                new_score = current + delta
                if new_score < 0:
                    conn.rollback()
                    raise InvalidDelta(f"Delta {delta} would take {user_id} to {new_score}.")

                if row is None:
                    # A concurrent first insert for the same user lands in DO UPDATE,
                    # where EXCLUDED.score is the delta and the same rules apply.
                    cur.execute(
                        """
                        INSERT INTO leaderboard_scores (user_id, score, actions, updated_at)
                        VALUES (%s, %s, 1, %s)
                        ON CONFLICT (user_id) DO UPDATE
                        SET score = leaderboard_scores.score + EXCLUDED.score,
                            actions = leaderboard_scores.actions + 1,
                            updated_at = CASE
                                WHEN EXCLUDED.score = 0 THEN leaderboard_scores.updated_at
                                ELSE EXCLUDED.updated_at
                            END
                        WHERE leaderboard_scores.score + EXCLUDED.score >= 0
                        RETURNING score
                        """,
                        (user_id, delta, now),
                    )
                    inserted = cur.fetchone()
                    if inserted is None:
                        conn.rollback()
                        raise InvalidDelta(f"Delta {delta} would take {user_id} below zero.")
                    new_score = int(inserted[0])
                elif delta != 0:
                    cur.execute(
                        """
                        UPDATE leaderboard_scores
                        SET score = %s, actions = actions + 1, updated_at = %s
                        WHERE user_id = %s
                        """,
                        (new_score, now, user_id),
                    )
                else:
                    cur.execute(
                        "UPDATE leaderboard_scores SET actions = actions + 1 WHERE user_id = %s",
                        (user_id,),
                    )
                conn.commit()
                return new_score

    def get(self, user_id: str) -> Optional[ScoreEntry]:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT user_id, score, updated_at, actions
                    FROM leaderboard_scores WHERE user_id = %s
                    """,
                    (user_id,),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return self._to_domain(row)

    def top_n(self, n: int) -> List[ScoreEntry]:
        if n <= 0:
            return []
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT user_id, score, updated_at, actions
                    FROM leaderboard_scores
                    ORDER BY score DESC, updated_at ASC, user_id ASC
                    LIMIT %s
                    """,
                    (n,),
                )
                return [self._to_domain(row) for row in cur.fetchall()]

    def rank(self, user_id: str) -> int:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT score, updated_at FROM leaderboard_scores WHERE user_id = %s",
                    (user_id,),
                )
                row = cur.fetchone()
                if not row:
                    raise NotFound(f"No leaderboard entry for {user_id}.")
                score, updated_at = row
                cur.execute(
                    """
                    SELECT COUNT(*) FROM leaderboard_scores
                    WHERE score > %s
                       OR (score = %s AND (updated_at, user_id) < (%s, %s))
                    """,
                    (score, score, updated_at, user_id),
                )
                return int(cur.fetchone()[0]) + 1
