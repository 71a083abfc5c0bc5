"""
Session issuance: turns a verified phone number into a user and a token.

Registration creates the user (district is mandatory); login loads the
existing user and updates its verification and login stats. Every step
is recorded in the user's activity log.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from agroai import db
from agroai.errors import DistrictRequired
from agroai.models import District, Language, User
from agroai.services.sms import mask_phone
from agroai.services.tokens import TokenIssuer, token_issuer

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Session:
    user: User
    token: str
    is_new_user: bool


class SessionService:
    def __init__(
        self,
        tokens: TokenIssuer = token_issuer,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.tokens = tokens
        self._clock = clock

    async def resolve_identity(
        self,
        phone_number: str,
        *,
        district: District | None = None,
        language: Language | None = None,
    ) -> tuple[User, bool]:
        """Create the user on first verification, otherwise record a login."""
        now = self._clock()
        existing = await db.get_user_by_phone(phone_number)

        if existing is None:
            if district is None:
                raise DistrictRequired()
            user, created = await db.create_verified_user(
                phone_number, district, language or Language.EN, now
            )
            if created:
                logger.info("Registered new user %s (%s)", user.id, mask_phone(phone_number))
                return user, True
            existing = user

        user = await db.record_login(existing.id, now, language=language, district=district)
        return user, False  # type: ignore[return-value]

    async def start(
        self,
        phone_number: str,
        *,
        district: District | None = None,
        language: Language | None = None,
    ) -> Session:
        user, is_new = await self.resolve_identity(
            phone_number, district=district, language=language
        )
        await db.add_activity(
            user.id,
            "user_registered" if is_new else "user_login",
            {
                "language": language.value if language else None,
                "district": district.value if district else None,
                "method": "otp",
            },
            now=self._clock(),
        )
        return Session(user=user, token=self.tokens.issue(user), is_new_user=is_new)

    async def refresh(self, user: User) -> str:
        """Re-sign a token for an already authenticated user."""
        await db.add_activity(user.id, "token_refreshed", now=self._clock())
        return self.tokens.issue(user)

    async def end(self, user: User) -> None:
        """Record a logout. Issued tokens stay valid until they expire."""
        await db.add_activity(user.id, "user_logout", now=self._clock())
        logger.info("User %s logged out", user.id)


# ── Singleton instance ────────────────────────────────────────────────────
session_service = SessionService()
