from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from domain.models import ActionToken
from domain.repositories import ActionTokenRepository
from infrastructure.db.leaderboard_repository_sqlite import from_db_timestamp, to_db_timestamp


class SqliteActionTokenRepository(ActionTokenRepository):
    """
    SQLite-backed implementation of `ActionTokenRepository`.

    Manages the `action_tokens` table. Consumption is a conditional
    `UPDATE ... WHERE used = 0`, so only one connection can ever flip a
    token to used.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._ensure_table()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path, timeout=10)
        try:
            yield conn
        finally:
            conn.close()

    def _ensure_table(self) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS action_tokens (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    action_type TEXT NOT NULL,
                    issued_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    used INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_action_tokens_expires ON action_tokens (expires_at)"
            )
            conn.commit()

    @staticmethod
    def _to_domain(row: tuple) -> ActionToken:
        return ActionToken(
            id=str(row[0]),
            user_id=str(row[1]),
            action_type=row[2],
            issued_at=from_db_timestamp(row[3]),
            expires_at=from_db_timestamp(row[4]),
            used=bool(row[5]),
        )

    def add(self, token: ActionToken) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO action_tokens (id, user_id, action_type, issued_at, expires_at, used)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    token.id,
                    token.user_id,
                    token.action_type,
                    to_db_timestamp(token.issued_at),
                    to_db_timestamp(token.expires_at),
                    int(token.used),
                ),
            )
            conn.commit()

    def get(self, token_id: str) -> Optional[ActionToken]:
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, action_type, issued_at, expires_at, used
                FROM action_tokens WHERE id = ?
                """,
                (token_id,),
            ).fetchone()
            if not row:
                return None
            return self._to_domain(row)

    def mark_used(self, token_id: str) -> bool:
        with self._get_connection() as conn:
            cur = conn.execute(
                "UPDATE action_tokens SET used = 1 WHERE id = ? AND used = 0", (token_id,)
            )
            conn.commit()
            return cur.rowcount == 1

    def purge_expired(self, now: datetime) -> int:
        with self._get_connection() as conn:
            cur = conn.execute(
                "DELETE FROM action_tokens WHERE expires_at < ?", (to_db_timestamp(now),)
            )
            conn.commit()
            return cur.rowcount
