from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from application.services import UserStanding
from domain.models import IssuedToken, LeaderboardChanged, LeaderboardSnapshot, ScoreUpdate


class ActionRequestBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_type: str = Field(default="COMPLETE_LEVEL", alias="actionType", min_length=1, max_length=64)


class ProofBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    completion_time: int = Field(alias="completionTime")
    checksum: Optional[str] = Field(default=None, max_length=256)


class ActionCompleteBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action_token: str = Field(alias="actionToken", min_length=1)
    # Accepted for compatibility with older clients; the id is read from the token.
    action_id: Optional[str] = Field(default=None, alias="actionId")
    proof: ProofBody


def format_timestamp(value: datetime) -> str:
    return value.isoformat()


def issued_token_payload(issued: IssuedToken) -> Dict[str, Any]:
    return {
        "actionToken": issued.reference,
        "actionId": issued.token.id,
        "actionType": issued.token.action_type,
        "expiresAt": format_timestamp(issued.token.expires_at),
    }


def score_update_payload(update: ScoreUpdate) -> Dict[str, Any]:
    return {
        "scoreIncrement": update.score_increment,
        "oldScore": update.old_score,
        "newScore": update.new_score,
        "rank": update.rank,
        "rankChange": update.rank_change,
        "message": "Score updated successfully",
    }


def score_change_payload(event: LeaderboardChanged) -> Dict[str, Any]:
    return {
        "userId": event.user_id,
        "oldScore": event.old_score,
        "newScore": event.new_score,
        "increment": event.score_increment,
        "newRank": event.rank,
        "occurredAt": format_timestamp(event.occurred_at),
    }


def snapshot_payload(snapshot: LeaderboardSnapshot) -> Dict[str, Any]:
    return {
        "leaderboard": [
            {
                "rank": entry.rank,
                "userId": entry.user_id,
                "score": entry.score,
                "updatedAt": format_timestamp(entry.updated_at),
            }
            for entry in snapshot.entries
        ],
        "lastUpdated": format_timestamp(snapshot.generated_at),
    }


def standing_payload(standing: UserStanding) -> Dict[str, Any]:
    return {
        "userId": standing.user_id,
        "score": standing.score,
        "rank": standing.rank,
        "totalActions": standing.actions,
    }


def error_payload(code: str, message: str, retry_after_s: Optional[int] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "error": {"code": code, "message": message}}
    if retry_after_s is not None:
        body["retryAfter"] = retry_after_s
    return body
