from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    """Current time as an aware UTC datetime."""

    return datetime.now(timezone.utc)
