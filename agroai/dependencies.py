import logging
from typing import Annotated

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from agroai import db
from agroai.errors import AuthenticationError, MissingToken, UserNotFound
from agroai.models import User
from agroai.services.otp import OtpService, otp_service
from agroai.services.sessions import SessionService, session_service
from agroai.services.tokens import TokenIssuer, token_issuer

logger = logging.getLogger(__name__)


# ── Services ───────────────────────────────────────────────────────────────


def get_otp_service() -> OtpService:
    return otp_service


def get_session_service() -> SessionService:
    return session_service


def get_token_issuer() -> TokenIssuer:
    return token_issuer


# ── Bearer token ───────────────────────────────────────────────────────────

_bearer = HTTPBearer(auto_error=False, description="Access token from /api/auth/verify-otp")

BearerCredentials = Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)]


async def get_current_user(
    credentials: BearerCredentials,
    tokens: Annotated[TokenIssuer, Depends(get_token_issuer)],
) -> User:
    if credentials is None or not credentials.credentials:
        raise MissingToken()

    payload = tokens.decode(credentials.credentials)

    user = await db.get_user(payload["sub"])
    if user is None:
        logger.info("Token subject %s no longer exists", payload["sub"])
        raise UserNotFound()
    return user


async def get_optional_user(
    credentials: BearerCredentials,
    tokens: Annotated[TokenIssuer, Depends(get_token_issuer)],
) -> User | None:
    """Like ``get_current_user`` but anonymous instead of 401."""
    try:
        return await get_current_user(credentials, tokens)
    except AuthenticationError:
        return None


CurrentUser = Annotated[User, Depends(get_current_user)]
OptionalUser = Annotated[User | None, Depends(get_optional_user)]
