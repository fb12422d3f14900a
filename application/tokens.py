from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Optional

import jwt

from domain.clock import Clock, system_clock
from domain.errors import (
    TokenAlreadyUsed,
    TokenExpired,
    TokenInvalid,
    TokenNotFound,
    TokenUserMismatch,
)
from domain.models import ActionToken, IssuedToken
from domain.repositories import ActionTokenRepository

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"


class ActionTokenService:
    """
    Issues and consumes single-use action tokens.

    The reference handed to clients is an HS256 JWT whose claims bind the
    token id, user and action type, so a client cannot alter them without
    the signature check failing. The stored record stays authoritative for
    expiry and the used flag.
    """

    def __init__(
        self,
        repo: ActionTokenRepository,
        secret: str,
        default_ttl: timedelta = timedelta(minutes=5),
        clock: Clock = system_clock,
    ) -> None:
        if not secret:
            raise ValueError("Action token secret must not be empty.")
        self._repo = repo
        self._secret = secret
        self._default_ttl = default_ttl
        self._clock = clock

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    def issue(self, user_id: str, action_type: str, ttl: Optional[timedelta] = None) -> IssuedToken:
        ttl = self._default_ttl if ttl is None else ttl
        if ttl <= timedelta(0):
            raise ValueError("Token ttl must be positive.")

        now = self._clock()
        token = ActionToken(
            id=secrets.token_hex(16),
            user_id=user_id,
            action_type=action_type,
            issued_at=now,
            expires_at=now + ttl,
        )
        self._repo.add(token)

        reference = jwt.encode(
            {
                "jti": token.id,
                "sub": user_id,
                "act": action_type,
                "iat": int(token.issued_at.timestamp()),
                "exp": int(token.expires_at.timestamp()),
                "nonce": secrets.token_hex(8),
            },
            self._secret,
            algorithm=TOKEN_ALGORITHM,
        )
        logger.info("Issued action token %s (%s) for %s", token.id, action_type, user_id)
        return IssuedToken(token=token, reference=reference)

    def _decode(self, reference: str) -> dict:
        try:
            return jwt.decode(
                reference,
                self._secret,
                algorithms=[TOKEN_ALGORITHM],
                # Expiry is judged against the stored record and our clock.
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["jti", "sub", "act"],
                },
            )
        except jwt.InvalidTokenError as exc:
            raise TokenInvalid(f"Invalid action token: {exc}") from exc

    def consume(self, reference: str, expected_user_id: str) -> ActionToken:
        """
        Validate and spend a token. Returns the spent record.

        Raises `TokenInvalid`, `TokenNotFound`, `TokenExpired`,
        `TokenAlreadyUsed` or `TokenUserMismatch`; a failed call never
        marks the token used.
        """

        if not reference:
            raise TokenInvalid("Missing action token.")
        claims = self._decode(reference)
        now = self._clock()
        token = self._repo.get(str(claims["jti"]))
        if token is None:
            # Purged records are gone, but the signed expiry still says why.
            exp = claims.get("exp")
            if isinstance(exp, (int, float)) and now.timestamp() > exp:
                raise TokenExpired()
            raise TokenNotFound()
        if token.is_expired(now):
            raise TokenExpired()
        if token.used:
            raise TokenAlreadyUsed()
        if token.user_id != expected_user_id:
            raise TokenUserMismatch()
        if claims["sub"] != token.user_id or claims["act"] != token.action_type:
            raise TokenInvalid("Action token claims do not match the issued token.")

        if not self._repo.mark_used(token.id):
            raise TokenAlreadyUsed()
        token.used = True
        return token

    def purge_expired(self) -> int:
        removed = self._repo.purge_expired(self._clock())
        if removed:
            logger.debug("Purged %d expired action tokens", removed)
        return removed
