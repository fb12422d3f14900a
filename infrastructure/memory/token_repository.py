from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional

from domain.models import ActionToken
from domain.repositories import ActionTokenRepository


class InMemoryActionTokenRepository(ActionTokenRepository):
    """Process-local token store; `mark_used` is a locked compare-and-set."""

    def __init__(self) -> None:
        self._tokens: Dict[str, ActionToken] = {}
        self._lock = threading.Lock()

    def add(self, token: ActionToken) -> None:
        with self._lock:
            self._tokens[token.id] = replace(token)

    def get(self, token_id: str) -> Optional[ActionToken]:
        with self._lock:
            token = self._tokens.get(token_id)
            return replace(token) if token else None

    def mark_used(self, token_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(token_id)
            if token is None or token.used:
                return False
            token.used = True
            return True

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [tid for tid, t in self._tokens.items() if t.is_expired(now)]
            for tid in expired:
                del self._tokens[tid]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)
