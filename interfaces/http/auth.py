from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

ACCESS_TOKEN_ALGORITHM = "HS256"


class AuthenticationError(Exception):
    """The caller's bearer token could not be verified."""


class AccessTokenVerifier:
    """
    Verifies bearer access tokens issued by the login service.

    The scoreboard only needs the caller's identity: `sub`, or `userId` for
    tokens minted by the older demo login.
    """

    def __init__(self, secret: str, algorithm: str = ACCESS_TOKEN_ALGORITHM) -> None:
        self._secret = secret
        self._algorithm = algorithm

    def verify(self, token: str) -> str:
        try:
            claims = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise AuthenticationError("Access token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthenticationError(f"Invalid access token: {exc}") from exc

        user_id = claims.get("sub") or claims.get("userId")
        if not user_id:
            raise AuthenticationError("Access token has no subject")
        return str(user_id)


def create_access_token(
    user_id: str,
    secret: str,
    ttl: timedelta = timedelta(hours=1),
    username: Optional[str] = None,
) -> str:
    """Mint an access token. Used by local tooling and tests, not by the API."""

    now = datetime.now(timezone.utc)
    claims = {"sub": user_id, "iat": now, "exp": now + ttl}
    if username:
        claims["username"] = username
    return jwt.encode(claims, secret, algorithm=ACCESS_TOKEN_ALGORITHM)
