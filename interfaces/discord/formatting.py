from __future__ import annotations

from typing import Optional

from application.services import UserStanding
from domain.models import LeaderboardSnapshot

MEDALS = {1: "🥇", 2: "🥈", 3: "🥉"}

# Discord rejects messages longer than this.
MAX_MESSAGE_LENGTH = 2000


def format_leaderboard(snapshot: LeaderboardSnapshot, title: str = "Leaderboard") -> str:
    """
    Render a snapshot as a Discord message.

    Format:
      **Leaderboard**
      🥇 alice - 1200
      #4 dave - 700
    """

    if not snapshot.entries:
        return f"**{title}**\nNo scores yet."

    lines = [f"**{title}**"]
    length = len(lines[0])
    for entry in snapshot.entries:
        marker = MEDALS.get(entry.rank, f"#{entry.rank}")
        line = f"{marker} {entry.user_id} - {entry.score}"
        if length + len(line) + 1 > MAX_MESSAGE_LENGTH:
            break
        lines.append(line)
        length += len(line) + 1
    return "\n".join(lines)


def format_standing(standing: UserStanding) -> str:
    if standing.rank is None:
        return f"{standing.user_id} has not scored yet."
    return (
        f"{standing.user_id} is #{standing.rank} with {standing.score} points "
        f"({standing.actions} actions)."
    )


def parse_limit(raw: Optional[str], default: int, max_limit: int) -> int:
    if raw is None or raw == "":
        return default
    try:
        limit = int(raw)
    except ValueError:
        raise ValueError(f"Invalid leaderboard size: {raw}")
    if limit <= 0:
        raise ValueError(f"Invalid leaderboard size: {raw}")
    return min(limit, max_limit)
