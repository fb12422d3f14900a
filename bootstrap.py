from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Tuple

from application.anti_cheat import AntiCheatValidator
from application.broadcast import LeaderboardBroadcaster
from application.services import get_leaderboard
from application.tokens import ActionTokenService
from config import ScoreboardSettings
from domain.clock import Clock, system_clock
from domain.models import ScoringRules
from domain.repositories import ActionTokenRepository, LeaderboardRepository

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )


@dataclass
class Scoreboard:
    """Everything an interface needs to serve the scoreboard, wired once."""

    settings: ScoreboardSettings
    leaderboard_repo: LeaderboardRepository
    token_service: ActionTokenService
    validator: AntiCheatValidator
    broadcaster: LeaderboardBroadcaster
    scoring: ScoringRules
    clock: Clock


def build_repositories(
    settings: ScoreboardSettings,
    clock: Clock = system_clock,
) -> Tuple[LeaderboardRepository, ActionTokenRepository]:
    if settings.storage_backend == "sqlite":
        from infrastructure.db.leaderboard_repository_sqlite import SqliteLeaderboardRepository
        from infrastructure.db.token_repository_sqlite import SqliteActionTokenRepository

        return (
            SqliteLeaderboardRepository(settings.db_path, clock),
            SqliteActionTokenRepository(settings.db_path),
        )

    if settings.storage_backend == "postgres":
        from infrastructure.db.leaderboard_repository_postgres import PostgresLeaderboardRepository
        from infrastructure.db.token_repository_postgres import PostgresActionTokenRepository

        return (
            PostgresLeaderboardRepository(settings.postgres_dsn, clock),
            PostgresActionTokenRepository(settings.postgres_dsn),
        )

    from infrastructure.memory.leaderboard_repository import InMemoryLeaderboardRepository
    from infrastructure.memory.token_repository import InMemoryActionTokenRepository

    return InMemoryLeaderboardRepository(clock), InMemoryActionTokenRepository()


def build_scoreboard(
    settings: ScoreboardSettings,
    clock: Clock = system_clock,
    poll_changes: bool = False,
) -> Scoreboard:
    leaderboard_repo, token_repo = build_repositories(settings, clock)

    token_service = ActionTokenService(
        token_repo,
        secret=settings.action_token_secret,
        default_ttl=timedelta(milliseconds=settings.action_token_ttl_ms),
        clock=clock,
    )
    validator = AntiCheatValidator(
        min_completion_ms=settings.min_completion_ms,
        max_completion_ms=settings.max_completion_ms,
        rate_limits=settings.rate_limits,
        clock=clock,
    )
    broadcaster = LeaderboardBroadcaster(
        lambda: get_leaderboard(
            settings.broadcast_top_n,
            leaderboard_repo,
            max_limit=settings.broadcast_top_n,
            clock=clock,
        ),
        interval_ms=settings.broadcast_interval_ms,
        poll_changes=poll_changes,
    )
    scoring = ScoringRules(
        default_increment=settings.default_score_increment,
        per_action=dict(settings.action_scores),
    )
    return Scoreboard(
        settings=settings,
        leaderboard_repo=leaderboard_repo,
        token_service=token_service,
        validator=validator,
        broadcaster=broadcaster,
        scoring=scoring,
        clock=clock,
    )
