"""
One-time password issuance and verification.

Issuing a code replaces every unused code of the phone, so at most one
code is valid per phone at any time. Verification is a small state
machine:

    Pending ──found, attempts < max──▶ Matched         (code consumed, session started)
        │
        ├──found, attempts >= max────▶ TooManyAttempts  (all codes dropped)
        │
        └──not found──▶ count a failed attempt on the phone's unused codes
                           ├─ ceiling reached ─▶ TooManyAttempts
                           └─ otherwise ───────▶ InvalidOrExpiredCode

"Not found" covers a wrong code, an expired code and a used code alike so
the caller never learns which one it was.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from agroai import db
from agroai.config import JWT_SECRET, OTP_LENGTH, OTP_MAX_ATTEMPTS, OTP_TTL_SECONDS
from agroai.errors import (
    AlreadyRegistered,
    DispatchFailed,
    DistrictRequired,
    InvalidOrExpiredCode,
    NotRegistered,
    TooManyAttempts,
)
from agroai.models import District, Language, OtpPurpose
from agroai.services.sessions import Session, SessionService, session_service
from agroai.services.sms import SmsDispatchError, SmsSender, mask_phone, sms_sender

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_otp_code(length: int = OTP_LENGTH) -> str:
    """Uniform random numeric code, left-zero-padded to *length* digits."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


@dataclass
class IssuedOtp:
    code: str
    purpose: OtpPurpose
    expires_at: datetime
    ttl_seconds: int


class OtpService:
    def __init__(
        self,
        sender: SmsSender = sms_sender,
        sessions: SessionService = session_service,
        *,
        clock: Callable[[], datetime] = _utcnow,
        ttl_seconds: int = OTP_TTL_SECONDS,
        max_attempts: int = OTP_MAX_ATTEMPTS,
        code_length: int = OTP_LENGTH,
        secret: str = JWT_SECRET,
    ) -> None:
        self.sender = sender
        self.sessions = sessions
        self.ttl_seconds = ttl_seconds
        self.max_attempts = max_attempts
        self.code_length = code_length
        self._clock = clock
        self._secret = secret.encode()

    def hash_code(self, phone_number: str, code: str) -> str:
        return hmac.new(self._secret, f"{phone_number}:{code}".encode(), hashlib.sha256).hexdigest()

    # ── Issue ──────────────────────────────────────────────────────────

    async def issue(self, phone_number: str, purpose: OtpPurpose) -> IssuedOtp:
        """
        Create a fresh code for the phone and send it by SMS.

        If the SMS cannot be sent the new code is deleted again, so a retry
        starts from a clean slate.
        """
        user = await db.get_user_by_phone(phone_number)
        if purpose is OtpPurpose.REGISTRATION and user is not None and user.is_phone_verified:
            raise AlreadyRegistered()
        if purpose is not OtpPurpose.REGISTRATION and user is None:
            raise NotRegistered()

        code = generate_otp_code(self.code_length)
        record = await db.put_otp(
            phone_number,
            purpose,
            self.hash_code(phone_number, code),
            now=self._clock(),
            ttl_seconds=self.ttl_seconds,
        )

        try:
            await self.sender.send_otp(phone_number, code, purpose.value, self.ttl_seconds)
        except SmsDispatchError:
            await db.delete_otp(record.id)
            logger.warning("OTP dispatch failed for %s, code rolled back", mask_phone(phone_number))
            raise DispatchFailed() from None

        logger.info("Issued %s OTP for %s", purpose.value, mask_phone(phone_number))
        return IssuedOtp(
            code=code,
            purpose=purpose,
            expires_at=record.expires_at,
            ttl_seconds=self.ttl_seconds,
        )

    # ── Verify ─────────────────────────────────────────────────────────

    async def verify(
        self,
        phone_number: str,
        code: str,
        *,
        district: District | None = None,
        language: Language | None = None,
    ) -> Session:
        """Check the code and start a session for its owner."""
        record = await db.find_valid_otp(
            phone_number, self.hash_code(phone_number, code), now=self._clock()
        )

        if record is None:
            if await db.record_failed_attempt(phone_number, self.max_attempts, now=self._clock()):
                await db.invalidate_otps(phone_number)
                logger.warning("OTP attempt ceiling reached for %s", mask_phone(phone_number))
                raise TooManyAttempts()
            raise InvalidOrExpiredCode()

        # Registration extras are checked before the code is consumed so the
        # client can resubmit the same code with a district.
        if district is None and await db.get_user_by_phone(phone_number) is None:
            raise DistrictRequired()

        if not await db.mark_otp_used(record.id):
            raise InvalidOrExpiredCode()

        return await self.sessions.start(phone_number, district=district, language=language)


# ── Singleton instance ────────────────────────────────────────────────────
otp_service = OtpService()
