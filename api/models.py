"""
API request and response models for the auth service REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Wire format: request and response bodies use camelCase keys (fullName,
refreshToken, ...) because that is what the web client sends. Python code uses
snake_case; the alias generator bridges the two.

Every response is wrapped in the same envelope:
    {"success": bool, "message": str, "data": {...}?}
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from auth.models import LoginEvent, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
FULL_NAME_PATTERN = re.compile(r"^[a-zA-Z\s'-]+$")


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


def _normalize_email(value: str) -> str:
    email = str(value).strip().lower()
    if len(email) > 100:
        raise ValueError("Email must not exceed 100 characters")
    if not EMAIL_PATTERN.match(email):
        raise ValueError("Please provide a valid email address")
    domain = email.split("@", 1)[1]
    if ".." in domain or domain.startswith(".") or domain.endswith("."):
        raise ValueError("Invalid email domain format")
    return email


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_CamelModel):
    """Body of POST /auth/register.

    Password strength is checked in the route against the configured policy
    (auth.tokens.check_password_strength) so the rules live in one place.
    """

    full_name: str = Field(max_length=200)
    email: str = Field(max_length=254)
    password: str = Field(min_length=1, max_length=128)
    profile_image_url: Optional[str] = Field(default=None, max_length=500)

    @field_validator("full_name")
    @classmethod
    def validate_full_name(cls, v: str) -> str:
        name = v.strip()
        if not (2 <= len(name) <= 50):
            raise ValueError("Full name must be between 2 and 50 characters")
        if not FULL_NAME_PATTERN.match(name):
            raise ValueError("Full name can only contain letters, spaces, hyphens, and apostrophes")
        return name

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _normalize_email(v)

    @field_validator("profile_image_url")
    @classmethod
    def validate_profile_image_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not re.match(r"^https?://.+", v):
            raise ValueError("Profile image must be a valid URL with http or https protocol")
        return v


class LoginRequest(_CamelModel):
    email: str = Field(max_length=254)
    password: str = Field(min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return _normalize_email(v)


class RefreshRequest(_CamelModel):
    # Optional at the schema level: a missing token is an authentication
    # failure (401), not a malformed payload (400).
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ChangePasswordRequest(_CamelModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


class DeleteAccountRequest(_CamelModel):
    password: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserPublic(_CamelModel):
    """What the client may see of a credential record. No hashes, no counters."""

    model_config = ConfigDict(frozen=True)

    id: str
    full_name: str
    email: str
    role: str
    status: str
    profile_image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserPublic":
        return cls(
            id=user.id,
            full_name=user.full_name,
            email=user.email,
            role=user.role,
            status=user.status,
            profile_image_url=user.profile_image_url,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class LoginEventPublic(_CamelModel):
    model_config = ConfigDict(frozen=True)

    timestamp: Optional[datetime]
    ip: str
    user_agent: str
    success: bool
    device_fingerprint: str

    @classmethod
    def from_event(cls, event: LoginEvent) -> "LoginEventPublic":
        return cls(
            timestamp=event.timestamp,
            ip=event.ip,
            user_agent=event.user_agent,
            success=event.success,
            device_fingerprint=event.device_fingerprint,
        )


class ApiResponse(BaseModel):
    """Success envelope for every endpoint."""

    success: bool = True
    message: str = ""
    data: Optional[dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Failure envelope returned on 4xx/5xx responses.

    errors lists per-field problems for validation failures; data carries
    machine-readable extras such as lockTimeRemaining on 423.
    """

    success: bool = False
    message: str
    data: Optional[dict[str, Any]] = None
    errors: Optional[list[dict[str, str]]] = None


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
