from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from application.anti_cheat import RateLimit

STORAGE_BACKENDS = ("memory", "sqlite", "postgres")


def _parse_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def parse_rate_limits(text: str) -> Tuple[RateLimit, ...]:
    """``"10/60000,100/3600000"`` -> two windows."""

    return tuple(RateLimit.parse(part) for part in text.split(",") if part.strip())


def parse_action_scores(text: str) -> Dict[str, int]:
    """``"COMPLETE_LEVEL=100,BOSS=250"`` -> per-action increments."""

    scores: Dict[str, int] = {}
    for part in text.split(","):
        if not part.strip():
            continue
        name, sep, value = part.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"Invalid action score {part!r}, expected <ACTION>=<points>")
        points = int(value)
        if points < 0:
            raise ValueError(f"Action score for {name.strip()} must not be negative")
        scores[name.strip()] = points
    return scores


@dataclass
class ScoreboardSettings:
    """
    Runtime configuration, read from the environment.

    Entry points load `.env` with python-dotenv before calling `from_env`,
    so local development can keep secrets out of the shell.
    """

    auth_secret: str = "dev-auth-secret"
    action_token_secret: str = "dev-action-token-secret"
    action_token_ttl_ms: int = 5 * 60 * 1000
    min_completion_ms: int = 1000
    max_completion_ms: int = 300000
    rate_limits: Tuple[RateLimit, ...] = (RateLimit(10, 60000),)
    default_score_increment: int = 100
    action_scores: Dict[str, int] = field(default_factory=dict)
    broadcast_interval_ms: int = 1000
    broadcast_top_n: int = 10
    leaderboard_default_limit: int = 10
    leaderboard_max_limit: int = 100
    token_purge_interval_ms: int = 60000
    storage_backend: str = "memory"
    db_path: str = "scoreboard.db"
    postgres_dsn: str = ""
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"
    discord_token: Optional[str] = None
    discord_feed_channel_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.storage_backend not in STORAGE_BACKENDS:
            raise ValueError(
                f"STORAGE_BACKEND must be one of {', '.join(STORAGE_BACKENDS)}, got {self.storage_backend!r}"
            )
        if self.storage_backend == "postgres" and not self.postgres_dsn:
            raise ValueError("POSTGRES_DSN is required when STORAGE_BACKEND=postgres")
        if self.min_completion_ms > self.max_completion_ms:
            raise ValueError("MIN_COMPLETION_MS must not exceed MAX_COMPLETION_MS")
        if self.action_token_ttl_ms <= 0:
            raise ValueError("ACTION_TOKEN_TTL_MS must be positive")
        if self.default_score_increment < 0:
            raise ValueError("DEFAULT_SCORE_INCREMENT must not be negative")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ScoreboardSettings":
        env = os.environ if env is None else env
        defaults = cls()
        feed_channel = env.get("DISCORD_FEED_CHANNEL_ID", "").strip()
        return cls(
            auth_secret=env.get("AUTH_SECRET", defaults.auth_secret),
            action_token_secret=env.get("ACTION_TOKEN_SECRET", defaults.action_token_secret),
            action_token_ttl_ms=_parse_int(env, "ACTION_TOKEN_TTL_MS", defaults.action_token_ttl_ms),
            min_completion_ms=_parse_int(env, "MIN_COMPLETION_MS", defaults.min_completion_ms),
            max_completion_ms=_parse_int(env, "MAX_COMPLETION_MS", defaults.max_completion_ms),
            rate_limits=parse_rate_limits(env["RATE_LIMITS"]) if env.get("RATE_LIMITS") else defaults.rate_limits,
            default_score_increment=_parse_int(
                env, "DEFAULT_SCORE_INCREMENT", defaults.default_score_increment
            ),
            action_scores=parse_action_scores(env.get("ACTION_SCORES", "")),
            broadcast_interval_ms=_parse_int(env, "BROADCAST_INTERVAL_MS", defaults.broadcast_interval_ms),
            broadcast_top_n=_parse_int(env, "BROADCAST_TOP_N", defaults.broadcast_top_n),
            leaderboard_default_limit=_parse_int(
                env, "LEADERBOARD_DEFAULT_LIMIT", defaults.leaderboard_default_limit
            ),
            leaderboard_max_limit=_parse_int(env, "LEADERBOARD_MAX_LIMIT", defaults.leaderboard_max_limit),
            token_purge_interval_ms=_parse_int(
                env, "TOKEN_PURGE_INTERVAL_MS", defaults.token_purge_interval_ms
            ),
            storage_backend=env.get("STORAGE_BACKEND", defaults.storage_backend).strip().lower(),
            db_path=env.get("DB_PATH", defaults.db_path),
            postgres_dsn=env.get("POSTGRES_DSN", defaults.postgres_dsn),
            host=env.get("HOST", defaults.host),
            port=_parse_int(env, "PORT", defaults.port),
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
            discord_token=env.get("DISCORD_TOKEN") or None,
            discord_feed_channel_id=int(feed_channel) if feed_channel else None,
        )
