from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

import psycopg2

from domain.models import ActionToken
from domain.repositories import ActionTokenRepository


class PostgresActionTokenRepository(ActionTokenRepository):
    """
    Postgres-backed implementation of `ActionTokenRepository`.

    Uses a dedicated `action_tokens` table; `mark_used` relies on the row
    lock taken by a conditional UPDATE so concurrent consumers of the same
    token see exactly one affected row between them.
    """

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn
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
                    CREATE TABLE IF NOT EXISTS action_tokens (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        action_type TEXT NOT NULL,
                        issued_at TIMESTAMPTZ NOT NULL,
                        expires_at TIMESTAMPTZ NOT NULL,
                        used BOOLEAN NOT NULL DEFAULT FALSE
                    )
                    """
                )
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS idx_action_tokens_expires ON action_tokens (expires_at)"
                )
                conn.commit()

    def add(self, token: ActionToken) -> None:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO action_tokens (id, user_id, action_type, issued_at, expires_at, used)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.action_type,
                        token.issued_at,
                        token.expires_at,
                        token.used,
                    ),
                )
                conn.commit()

    def get(self, token_id: str) -> Optional[ActionToken]:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, user_id, action_type, issued_at, expires_at, used
                    FROM action_tokens WHERE id = %s
                    """,
                    (token_id,),
                )
                row = cur.fetchone()
                if not row:
                    return None
                return ActionToken(
                    id=str(row[0]),
                    user_id=str(row[1]),
                    action_type=row[2],
                    issued_at=row[3],
                    expires_at=row[4],
                    used=bool(row[5]),
                )

    def mark_used(self, token_id: str) -> bool:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE action_tokens SET used = TRUE WHERE id = %s AND used = FALSE",
                    (token_id,),
                )
                conn.commit()
                return cur.rowcount == 1

    def purge_expired(self, now: datetime) -> int:
        with self._get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM action_tokens WHERE expires_at < %s", (now,))
                conn.commit()
                return cur.rowcount
