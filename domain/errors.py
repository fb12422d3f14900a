from __future__ import annotations

from typing import Optional


class ScoreboardError(Exception):
    """
    Base class for every rejection raised by the scoreboard core.

    Each subclass carries a stable `code` so interfaces can tell apart
    "request a fresh token" from "try again later" without parsing messages.
    """

    code = "SCOREBOARD_ERROR"
    default_message = "Scoreboard operation failed."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class TokenError(ScoreboardError):
    """Any failure to consume an action token. The client must request a new one."""

    code = "TOKEN_ERROR"


class TokenInvalid(TokenError):
    code = "TOKEN_INVALID"
    default_message = "Invalid action token."


class TokenNotFound(TokenError):
    code = "TOKEN_NOT_FOUND"
    default_message = "Action token not found."


class TokenExpired(TokenError):
    code = "TOKEN_EXPIRED"
    default_message = "Action token expired."


class TokenAlreadyUsed(TokenError):
    code = "TOKEN_ALREADY_USED"
    default_message = "Action token already used."


class TokenUserMismatch(TokenError):
    code = "TOKEN_USER_MISMATCH"
    default_message = "Action token was issued to a different user."


class SuspiciousTiming(ScoreboardError):
    code = "SUSPICIOUS_TIMING"
    default_message = "Suspicious completion time."


class RateLimitExceeded(ScoreboardError):
    code = "RATE_LIMIT_EXCEEDED"
    default_message = "Rate limit exceeded."

    def __init__(self, retry_after_ms: int, message: Optional[str] = None) -> None:
        super().__init__(message)
        self.retry_after_ms = max(1, int(retry_after_ms))


class InvalidDelta(ScoreboardError):
    code = "INVALID_DELTA"
    default_message = "Score delta would make the score negative."


class NotFound(ScoreboardError):
    code = "NOT_FOUND"
    default_message = "User has no leaderboard entry."
