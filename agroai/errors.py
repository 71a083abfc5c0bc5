"""
Error taxonomy for the auth service.

Every failure the API reports is an ``AppError`` subclass carrying an HTTP
status, a machine-readable ``error`` code and a human message. The
handlers registered by ``install_error_handlers`` turn them into JSON:

    {"error": "too_many_attempts", "message": "...", "retry_after": 120}

Unexpected exceptions are logged in full and rendered as a generic 500.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

# Shared by every 401 so clients cannot tell which check failed.
AUTH_FAILED_MESSAGE = "Authentication required. Please log in again."


class AppError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "internal_error"
    message: str = "Something went wrong. Please try again later."

    def __init__(self, message: str | None = None, *, retry_after: int | None = None) -> None:
        self.message = message or self.message
        self.retry_after = retry_after
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body: dict = {"error": self.code, "message": self.message}
        if self.retry_after is not None:
            body["retry_after"] = self.retry_after
        return body


# ── Validation ─────────────────────────────────────────────────────────────


class ValidationError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"
    message = "Validation failed. Please check your input data."


class DistrictRequired(ValidationError):
    code = "district_required"
    message = "District is required for new user registration."


# ── Registration state ─────────────────────────────────────────────────────


class AlreadyRegistered(AppError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_registered"
    message = "This phone number is already registered. Please login instead."


class NotRegistered(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_registered"
    message = "This phone number is not registered. Please register first."


# ── OTP ────────────────────────────────────────────────────────────────────


class InvalidOrExpiredCode(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "invalid_otp"
    message = "OTP is invalid, expired, or already used."


class TooManyAttempts(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "too_many_attempts"
    message = "Too many attempts. Please request a new OTP."


class DispatchFailed(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "dispatch_failed"
    message = "Could not send SMS. Please try again."


# ── Throttling ─────────────────────────────────────────────────────────────


class RateLimited(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "rate_limited"
    message = "Rate limit exceeded. Please try again later."


# ── Authorization ──────────────────────────────────────────────────────────


class AuthenticationError(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED
    message = AUTH_FAILED_MESSAGE


class MissingToken(AuthenticationError):
    code = "missing_token"


class InvalidToken(AuthenticationError):
    code = "invalid_token"


class TokenExpired(AuthenticationError):
    code = "token_expired"


class UserNotFound(AuthenticationError):
    code = "user_not_found"


# ── Handlers ───────────────────────────────────────────────────────────────


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    headers = None
    if exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(part) for part in err["loc"] if part != "body"),
            "message": err["msg"],
        }
        for err in exc.errors()
    ]
    body = ValidationError().to_dict()
    body["details"] = details
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=body)


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=AppError().to_dict(),
    )


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
