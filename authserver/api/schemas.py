from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authserver.logging import get_correlation_id
from authserver.service.accounts import validate_password_strength


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_request",
    "invalid_grant",
    "invalid_token",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    """API envelope format shared by every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class EmailBody(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_body_email(cls, value: str) -> str:
        return _validate_email(value)


# registration
class UserRegisterRequest(EmailBody):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    password: str

    @field_validator("first_name", "last_name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _normalize_unicode(value).strip()

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    verified: bool = False


class ClientRegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)


class ClientRegisterResponse(BaseModel):
    client_id: str
    client_secret: str
    name: str
    public_key: str


class ClientProfileResponse(BaseModel):
    name: str
    public_key: str


class UserProfileResponse(BaseModel):
    id: str
    name: str
    email: str
    first_name: str
    last_name: str
    verified: bool


# authorization code grant
class LoginRequest(EmailBody):
    password: str = Field(..., min_length=1, max_length=128)
    client_id: str = Field(..., min_length=1, max_length=64)
    code_challenge: Optional[str] = Field(default=None, max_length=128)
    code_challenge_method: Optional[str] = Field(default="S256", max_length=8)


class LoginResponse(BaseModel):
    code: str


class TokenRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=256)
    code_verifier: Optional[str] = Field(default=None, max_length=256)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class AccessTokenResponse(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: int


# verification and password reset
class VerificationResponse(BaseModel):
    verified: bool
    already_verified: bool = False


class PasswordResetConfirm(EmailBody):
    code: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return validate_password_strength(value)
