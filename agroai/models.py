"""Pydantic models for the AgroAI auth API."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from agroai.config import OTP_LENGTH

PHONE_PATTERN = r"^[0-9]{10}$"


class OtpPurpose(str, Enum):
    """Why a one-time code was requested."""
    REGISTRATION = "registration"
    LOGIN = "login"
    PASSWORD_RESET = "password_reset"


class Language(str, Enum):
    EN = "en"
    HI = "hi"
    PA = "pa"


class District(str, Enum):
    """Districts of Punjab served by the advisory."""
    AMRITSAR = "Amritsar"
    BARNALA = "Barnala"
    BATHINDA = "Bathinda"
    FARIDKOT = "Faridkot"
    FATEHGARH_SAHIB = "Fatehgarh Sahib"
    FAZILKA = "Fazilka"
    FEROZEPUR = "Ferozepur"
    GURDASPUR = "Gurdaspur"
    HOSHIARPUR = "Hoshiarpur"
    JALANDHAR = "Jalandhar"
    KAPURTHALA = "Kapurthala"
    LUDHIANA = "Ludhiana"
    MANSA = "Mansa"
    MOGA = "Moga"
    MUKTSAR = "Muktsar"
    PATHANKOT = "Pathankot"
    PATIALA = "Patiala"
    RUPNAGAR = "Rupnagar"
    SAS_NAGAR = "Sahibzada Ajit Singh Nagar"
    SANGRUR = "Sangrur"
    SBS_NAGAR = "Shaheed Bhagat Singh Nagar"
    TARN_TARAN = "Tarn Taran"


# ── Stored records ─────────────────────────────────────────────────────────


@dataclass
class OtpRecord:
    """A stored one-time code. Only the HMAC of the code is kept."""
    id: str
    phone_number: str
    code_hash: str
    purpose: OtpPurpose
    attempts: int
    used: bool
    created_at: datetime
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at


class User(BaseModel):
    """A registered farmer."""
    id: str = Field(..., description="Stable user identifier")
    phone_number: str = Field(..., description="10-digit phone number")
    is_phone_verified: bool = Field(default=False, description="Set after a successful OTP check")
    language: Language = Field(default=Language.EN, description="Preferred UI language")
    district: Optional[District] = Field(None, description="Home district")
    profile: Dict[str, Any] = Field(default_factory=dict, description="Free-form profile fields")
    login_count: int = Field(default=0, description="Successful logins")
    last_login: Optional[datetime] = Field(None, description="Last successful login")
    created_at: datetime = Field(..., description="Registration time")
    updated_at: datetime = Field(..., description="Last modification time")


# ── Requests ───────────────────────────────────────────────────────────────


class SendOtpRequest(BaseModel):
    """Body of POST /api/auth/send-otp."""
    model_config = ConfigDict(extra="forbid")

    phone_number: str = Field(..., pattern=PHONE_PATTERN, description="10-digit phone number")
    purpose: OtpPurpose = Field(default=OtpPurpose.REGISTRATION, description="Why the code is needed")


class VerifyOtpRequest(BaseModel):
    """Body of POST /api/auth/verify-otp."""
    model_config = ConfigDict(extra="forbid")

    phone_number: str = Field(..., pattern=PHONE_PATTERN, description="10-digit phone number")
    otp_code: str = Field(..., description="Code received by SMS")
    district: Optional[District] = Field(None, description="Required when registering")
    language: Optional[Language] = Field(None, description="Preferred UI language")

    @field_validator("otp_code")
    @classmethod
    def _check_code_shape(cls, value: str) -> str:
        if len(value) != OTP_LENGTH or not value.isdigit():
            raise ValueError(f"OTP must be exactly {OTP_LENGTH} digits")
        return value


# ── Responses ──────────────────────────────────────────────────────────────


class MessageResponse(BaseModel):
    message: str


class SendOtpResponse(BaseModel):
    message: str = Field(..., description="Human readable status")
    expires_in_seconds: int = Field(..., description="Seconds until the code expires")
    otp_code: Optional[str] = Field(None, description="Only returned in development with OTP_ECHO_CODE")


class UserInfo(BaseModel):
    id: str
    phone_number: str
    language: Language
    district: Optional[District] = None
    is_phone_verified: bool
    profile: Dict[str, Any] = Field(default_factory=dict)
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserInfo":
        return cls(
            id=user.id,
            phone_number=user.phone_number,
            language=user.language,
            district=user.district,
            is_phone_verified=user.is_phone_verified,
            profile=user.profile,
            last_login=user.last_login,
            created_at=user.created_at,
        )


class AuthUser(UserInfo):
    is_new_user: bool = Field(..., description="True when this verification registered the user")


class AuthResponse(BaseModel):
    message: str
    token: str
    user: AuthUser


class ProfileResponse(BaseModel):
    user: UserInfo


class TokenResponse(BaseModel):
    message: str
    token: str


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime
