"""
Authentication endpoints – SMS OTP flow with bearer JWT tokens.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from agroai.config import otp_echo_enabled
from agroai.dependencies import CurrentUser, get_otp_service, get_session_service
from agroai.models import (
    AuthResponse,
    AuthUser,
    MessageResponse,
    ProfileResponse,
    SendOtpRequest,
    SendOtpResponse,
    TokenResponse,
    UserInfo,
    VerifyOtpRequest,
)
from agroai.rate_limit import Limiter, RateLimitPolicy, client_ip, phone_or_ip_key
from agroai.services.otp import OtpService
from agroai.services.sessions import SessionService

router = APIRouter(prefix="/api/auth", tags=["auth"])

Otp = Annotated[OtpService, Depends(get_otp_service)]
Sessions = Annotated[SessionService, Depends(get_session_service)]


@router.post(
    "/send-otp",
    response_model=SendOtpResponse,
    response_model_exclude_none=True,
    operation_id="sendOtp",
    summary="Send a one-time password by SMS",
)
async def send_otp(
    request: Request, body: SendOtpRequest, otp: Otp, limiter: Limiter
) -> SendOtpResponse:
    """
    Generate a code for the phone number and send it by SMS.
    Any earlier unused code for the phone stops working.
    In dev mode (no Twilio configured), the SMS is printed to the console.
    """
    await limiter.admit(RateLimitPolicy.OTP_REQUEST, phone_or_ip_key(request, body.phone_number))

    issued = await otp.issue(body.phone_number, body.purpose)

    return SendOtpResponse(
        message="OTP sent successfully",
        expires_in_seconds=issued.ttl_seconds,
        otp_code=issued.code if otp_echo_enabled() else None,
    )


@router.post(
    "/verify-otp",
    response_model=AuthResponse,
    operation_id="verifyOtp",
    summary="Verify an OTP and receive an access token",
)
async def verify_otp(
    request: Request, body: VerifyOtpRequest, otp: Otp, limiter: Limiter
) -> AuthResponse:
    """
    Check the code. New phone numbers are registered (district required),
    known ones are logged in. Only failed attempts count against the
    auth rate limit.
    """
    key = f"ip:{client_ip(request)}"
    await limiter.admit(RateLimitPolicy.AUTH, key)

    session = await otp.verify(
        body.phone_number,
        body.otp_code,
        district=body.district,
        language=body.language,
    )
    await limiter.record_success(RateLimitPolicy.AUTH, key)

    return AuthResponse(
        message="Registration successful" if session.is_new_user else "Login successful",
        token=session.token,
        user=AuthUser(
            **UserInfo.from_user(session.user).model_dump(),
            is_new_user=session.is_new_user,
        ),
    )


@router.get(
    "/profile",
    response_model=ProfileResponse,
    operation_id="getProfile",
    summary="Get the authenticated user's profile",
)
async def get_profile(current_user: CurrentUser) -> ProfileResponse:
    return ProfileResponse(user=UserInfo.from_user(current_user))


@router.post(
    "/refresh",
    response_model=TokenResponse,
    operation_id="refreshToken",
    summary="Exchange a valid token for a freshly signed one",
)
async def refresh_token(current_user: CurrentUser, sessions: Sessions) -> TokenResponse:
    token = await sessions.refresh(current_user)
    return TokenResponse(message="Token refreshed", token=token)


@router.post(
    "/logout",
    response_model=MessageResponse,
    operation_id="logout",
    summary="Record a logout",
)
async def logout(current_user: CurrentUser, sessions: Sessions) -> MessageResponse:
    """Tokens are stateless; the client discards its copy."""
    await sessions.end(current_user)
    return MessageResponse(message="Logged out successfully")
