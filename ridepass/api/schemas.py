from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ridepass.storage.models import Identity, Purpose, Role

# Stable error codes clients can branch on
_VALID_ERROR_CODES = frozenset({
    "invalid_input",
    "rate_limited",
    "code_expired",
    "code_invalid",
    "already_registered",
    "not_verified",
    "user_suspended",
    "user_inactive",
    "token_invalid",
    "invalid_credentials",
    "user_not_found",
    "not_found",
    "conflict",
    "store_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable machine-readable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def _clean_identifier(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("identifier must be a string")
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("identifier is required")
    return cleaned


def _clean_code(value: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned.isdigit() or len(cleaned) != 6:
        raise ValueError("code must be 6 digits")
    return cleaned


class RegisterRequest(BaseModel):
    identifier: str = Field(..., max_length=254, description="Phone number or email")
    password: str = Field(..., min_length=8, max_length=128)
    role: Role = Role.RIDER
    email: Optional[str] = Field(default=None, max_length=254)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("identifier")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        return _clean_identifier(value)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value).strip().lower() or None


class CodeRequest(BaseModel):
    identifier: str = Field(..., max_length=254)
    purpose: Purpose = Purpose.REGISTRATION
    role: Optional[Role] = None

    @field_validator("identifier")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        return _clean_identifier(value)


class VerifyCodeRequest(BaseModel):
    identifier: str = Field(..., max_length=254)
    purpose: Purpose = Purpose.REGISTRATION
    code: str = Field(..., max_length=16)

    @field_validator("identifier")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        return _clean_identifier(value)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _clean_code(value)


class LoginRequest(BaseModel):
    identifier: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("identifier")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        return _clean_identifier(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=4096)


class PasswordResetRequest(BaseModel):
    identifier: str = Field(..., max_length=254)

    @field_validator("identifier")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        return _clean_identifier(value)


class PasswordResetCodeCheck(BaseModel):
    identifier: str = Field(..., max_length=254)
    code: str = Field(..., max_length=16)

    @field_validator("identifier")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        return _clean_identifier(value)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _clean_code(value)


class PasswordResetConfirm(PasswordResetCodeCheck):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("password must be at least 8 characters")
        if len(value) > 128:
            raise ValueError("password must be at most 128 characters")
        return value


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int


class IdentityResponse(BaseModel):
    id: str
    identifier: str
    role: Role
    status: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls(
            id=identity.id,
            identifier=identity.canonical_identifier,
            role=identity.role,
            status=identity.status.value,
            email=identity.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
            last_login_at=identity.last_login_at,
            created_at=identity.created_at,
        )


class CodeIssuedResponse(BaseModel):
    purpose: Purpose
    expires_in: int
    message: str = "verification code sent"


class RegisterResponse(BaseModel):
    identity: IdentityResponse
    code: CodeIssuedResponse


class AuthResponse(BaseModel):
    identity: IdentityResponse
    tokens: TokenResponse
    activated: bool = False


class MessageResponse(BaseModel):
    message: str
