"""
Access token minting and decoding (PyJWT, HS256).

One policy only: a single access token valid for JWT_EXPIRY_DAYS.
``/api/auth/refresh`` re-signs a new one from a token that is still valid;
there is no separate refresh token.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt

from agroai.config import JWT_ALGORITHM, JWT_EXPIRY_DAYS, JWT_SECRET
from agroai.errors import InvalidToken, TokenExpired
from agroai.models import User

TOKEN_TYPE = "access"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenIssuer:
    def __init__(
        self,
        secret: str = JWT_SECRET,
        algorithm: str = JWT_ALGORITHM,
        ttl: timedelta = timedelta(days=JWT_EXPIRY_DAYS),
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._ttl = ttl
        self._clock = clock

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def issue(self, user: User) -> str:
        """Sign a token for the user with minimal identity claims."""
        now = self._clock()
        payload = {
            "sub": user.id,
            "phone": user.phone_number,
            "district": user.district.value if user.district else None,
            "type": TOKEN_TYPE,
            "iat": now,
            "exp": now + self._ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> dict:
        """Verify signature and expiry; return the claims."""
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["sub", "exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpired() from None
        except jwt.PyJWTError:
            raise InvalidToken() from None

        if payload.get("type") != TOKEN_TYPE or not payload.get("sub"):
            raise InvalidToken()
        return payload


# ── Singleton instance ────────────────────────────────────────────────────
token_issuer = TokenIssuer()
