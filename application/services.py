from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from application.anti_cheat import AntiCheatValidator
from application.broadcast import LeaderboardBroadcaster
from application.tokens import ActionTokenService
from domain.clock import Clock, system_clock
from domain.errors import InvalidDelta, NotFound, RateLimitExceeded, ScoreboardError
from domain.models import (
    CompletionProof,
    IssuedToken,
    LeaderboardChanged,
    LeaderboardSnapshot,
    ScoreEntry,
    ScoreUpdate,
    ScoringRules,
)
from domain.repositories import LeaderboardRepository

logger = logging.getLogger(__name__)


@dataclass
class ActionTokenResult:
    """Result of requesting an action token."""

    success: bool
    issued: Optional[IssuedToken] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class CompleteActionResult:
    """
    Result of completing an action.

    On failure `error_code` names the rejection (one of the
    `ScoreboardError.code` values) so callers can choose between asking the
    user to wait (`retry_after_ms` is set) and requesting a fresh token.
    """

    success: bool
    update: Optional[ScoreUpdate] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_after_ms: Optional[int] = None

    @classmethod
    def from_error(cls, error: ScoreboardError) -> "CompleteActionResult":
        return cls(
            success=False,
            error_code=error.code,
            error_message=error.message,
            retry_after_ms=error.retry_after_ms if isinstance(error, RateLimitExceeded) else None,
        )


@dataclass
class UserStanding:
    user_id: str
    score: int
    rank: Optional[int]
    actions: int


def request_action_token(
    user_id: str,
    action_type: str,
    token_service: ActionTokenService,
    ttl: Optional[timedelta] = None,
) -> ActionTokenResult:
    """Issue a single-use token binding `user_id` to `action_type`."""

    action_type = (action_type or "").strip()
    if not action_type:
        return ActionTokenResult(
            success=False,
            error_code="INVALID_ACTION_TYPE",
            error_message="Action type is required.",
        )

    issued = token_service.issue(user_id, action_type, ttl)
    return ActionTokenResult(success=True, issued=issued)


def complete_action(
    user_id: str,
    token_reference: str,
    proof: CompletionProof,
    token_service: ActionTokenService,
    validator: AntiCheatValidator,
    leaderboard_repo: LeaderboardRepository,
    broadcaster: Optional[LeaderboardBroadcaster] = None,
    scoring: Optional[ScoringRules] = None,
    score_increment: Optional[int] = None,
    clock: Clock = system_clock,
) -> CompleteActionResult:
    """
    Turn a completed action into a score update.

    Order is fixed:
    - Spend the token. Nothing is mutated if it is rejected.
    - Run the anti-cheat checks. A rejection leaves the token spent; tokens
      are proof of intent, not proof of success, and are never refunded.
    - Apply the increment, read the new rank, publish the change.
    """

    try:
        token = token_service.consume(token_reference, user_id)
    except ScoreboardError as exc:
        logger.warning("Rejected completion by %s: %s", user_id, exc.code)
        return CompleteActionResult.from_error(exc)

    try:
        validator.validate(user_id, proof)
    except ScoreboardError as exc:
        logger.warning(
            "Rejected completion by %s with spent token %s: %s", user_id, token.id, exc.code
        )
        return CompleteActionResult.from_error(exc)

    if score_increment is None:
        score_increment = (scoring or ScoringRules()).increment_for(token.action_type)

    try:
        previous_rank: Optional[int] = leaderboard_repo.rank(user_id)
    except NotFound:
        previous_rank = None

    try:
        new_score = leaderboard_repo.upsert(user_id, score_increment)
    except InvalidDelta as exc:
        logger.error("Score update for %s failed: %s", user_id, exc.message)
        return CompleteActionResult.from_error(exc)

    rank = leaderboard_repo.rank(user_id)
    update = ScoreUpdate(
        user_id=user_id,
        action_type=token.action_type,
        score_increment=score_increment,
        old_score=new_score - score_increment,
        new_score=new_score,
        rank=rank,
        previous_rank=previous_rank,
    )

    if broadcaster is not None:
        broadcaster.publish(
            LeaderboardChanged(
                user_id=user_id,
                old_score=update.old_score,
                new_score=new_score,
                score_increment=score_increment,
                rank=rank,
                occurred_at=clock(),
            )
        )

    logger.info(
        "Accepted %s for %s: +%d -> %d (rank %d)",
        token.action_type,
        user_id,
        score_increment,
        new_score,
        rank,
    )
    return CompleteActionResult(success=True, update=update)


def get_leaderboard(
    limit: int,
    leaderboard_repo: LeaderboardRepository,
    max_limit: int = 100,
    clock: Clock = system_clock,
) -> LeaderboardSnapshot:
    """Top `limit` entries, capped at `max_limit`; `limit <= 0` gives an empty board."""

    entries = leaderboard_repo.top_n(min(limit, max_limit))
    return LeaderboardSnapshot.from_entries(entries, generated_at=clock())


def get_user_standing(user_id: str, leaderboard_repo: LeaderboardRepository) -> UserStanding:
    entry: Optional[ScoreEntry] = leaderboard_repo.get(user_id)
    if entry is None:
        return UserStanding(user_id=user_id, score=0, rank=None, actions=0)

    try:
        rank: Optional[int] = leaderboard_repo.rank(user_id)
    except NotFound:
        rank = None
    return UserStanding(user_id=user_id, score=entry.score, rank=rank, actions=entry.actions)
