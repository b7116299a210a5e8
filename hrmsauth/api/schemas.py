from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from hrmsauth.storage.models import Action, ResolvedProfile

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

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


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class CamelModel(BaseModel):
    """Accepts camelCase or snake_case keys; dumps camelCase with ``by_alias=True``."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -- requests ---------------------------------------------------------------


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)
    device_info: Optional[str] = Field(default=None, max_length=256)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(CamelModel):
    refresh_token: str = Field(..., max_length=4096)


class ForgotPasswordRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=1024)


class ChangePasswordRequest(CamelModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=1024)
    new_password: str = Field(..., min_length=1, max_length=1024)


class VerifyEmailRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=256)


class CustomPermissionRequest(CamelModel):
    permission_id: str = Field(..., min_length=1, max_length=128)
    allowed_actions: List[Action] = Field(default_factory=list)
    is_revoked: bool = False


# -- responses --------------------------------------------------------------


class ProfileResponse(CamelModel):
    id: str
    staff_id: str
    display_name: str
    designation: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    is_active: bool
    last_login: Optional[datetime] = None

    @classmethod
    def from_profile(cls, profile: ResolvedProfile) -> "ProfileResponse":
        return cls(
            id=profile.id,
            staff_id=profile.staff_id,
            display_name=profile.display_name,
            designation=profile.designation,
            roles=profile.role_names,
            is_active=profile.is_active,
            last_login=profile.last_login,
        )


class LoginResponse(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime
    profile: ProfileResponse


class RefreshResponse(CamelModel):
    access_token: str
    token_type: str = "bearer"
    access_expires_at: datetime


class MeResponse(CamelModel):
    user_id: str
    email: str
    is_email_verified: bool
    profile: ProfileResponse
    permissions: Dict[str, List[str]] = Field(default_factory=dict)


class PermissionsResponse(CamelModel):
    profile_id: str
    permissions: Dict[str, List[str]] = Field(default_factory=dict)


class MessageResponse(CamelModel):
    message: str


def ok(model: BaseModel) -> Envelope:
    return Envelope(status="ok", data=model.model_dump(mode="json", by_alias=True))
