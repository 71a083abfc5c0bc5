"""
Application configuration from environment variables.

All settings have sensible defaults for local development.
A .env file in the project root is loaded automatically (if present).
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env file before reading any env vars
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

# ── Environment ───────────────────────────────────────────────────────────

APP_VERSION = "0.1.0"

ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "info")

# ── Paths ─────────────────────────────────────────────────────────────────

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"

# SQLite database file
DB_PATH: str = os.getenv("DB_PATH", str(DATA_DIR / "agroai.db"))

# ── JWT ───────────────────────────────────────────────────────────────────

JWT_SECRET: str = os.getenv("JWT_SECRET", "dev-secret-change-me-in-production")
JWT_ALGORITHM: str = "HS256"
JWT_EXPIRY_DAYS: int = int(os.getenv("JWT_EXPIRY_DAYS", "30"))

# ── OTP ───────────────────────────────────────────────────────────────────

OTP_LENGTH: int = int(os.getenv("OTP_LENGTH", "6"))
OTP_TTL_SECONDS: int = int(os.getenv("OTP_TTL_SECONDS", "600"))
OTP_MAX_ATTEMPTS: int = int(os.getenv("OTP_MAX_ATTEMPTS", "3"))

# Seconds between sweeps of expired/used OTP rows.
OTP_SWEEP_INTERVAL: float = float(os.getenv("OTP_SWEEP_INTERVAL", "300"))

# Echo the code in the send-otp response. Ignored in production.
_OTP_ECHO_CODE: bool = os.getenv("OTP_ECHO_CODE", "false").lower() == "true"


def otp_echo_enabled() -> bool:
    """True when send-otp may return the plain code to the caller."""
    return _OTP_ECHO_CODE and ENVIRONMENT != "production"


# ── SMS (Twilio) ──────────────────────────────────────────────────────────

TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "")
TWILIO_PHONE_NUMBER: str = os.getenv("TWILIO_PHONE_NUMBER", "")
TWILIO_API_BASE: str = os.getenv("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01")

SMS_COUNTRY_CODE: str = os.getenv("SMS_COUNTRY_CODE", "+91")
SMS_TIMEOUT_SECONDS: float = float(os.getenv("SMS_TIMEOUT_SECONDS", "10"))

# Set to "false" to force console-only mode even when Twilio credentials are present.
_SMS_ENABLED_OVERRIDE: str = os.getenv("SMS_ENABLED", "auto")


def sms_enabled() -> bool:
    """True when SMS should actually be sent through Twilio.

    Controlled by SMS_ENABLED env var:
      • "auto" (default): send if credentials are configured
      • "true":  always send (will fail if credentials are missing)
      • "false": never send, log to console instead
    """
    if _SMS_ENABLED_OVERRIDE.lower() == "false":
        return False
    if _SMS_ENABLED_OVERRIDE.lower() == "true":
        return True
    return bool(TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER)


# ── Rate limiting ─────────────────────────────────────────────────────────

RATE_LIMIT_ENABLED: bool = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"

# "async+memory://" keeps counters in-process; use "async+redis://host:6379"
# when running more than one instance.
RATE_LIMIT_STORAGE_URI: str = os.getenv("RATE_LIMIT_STORAGE_URI", "async+memory://")

# Take the client IP from X-Forwarded-For (only behind a trusted proxy).
TRUST_PROXY: bool = os.getenv("TRUST_PROXY", "false").lower() == "true"


def rate_limit_override(policy: str) -> str | None:
    """Per-policy limit string from RATE_LIMIT_<POLICY>, e.g. "3/hour"."""
    return os.getenv(f"RATE_LIMIT_{policy.upper()}") or None
