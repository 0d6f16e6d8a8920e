"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores own persistence,
policies and routes do the work.

Timestamps are timezone-aware UTC datetimes in memory. The store converts
them to fixed-width ISO-8601 strings on the way to the database and back.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

ROLES = ("user", "admin", "super-admin", "moderator")
STATUSES = ("active", "suspended", "deleted")


@dataclass
class User:
    """The credential record: one user's persisted authentication state.

    Refresh-token descriptors, login history and password history belong to
    the record conceptually but live in their own tables; UserStore exposes
    them through dedicated methods so the common lookups stay cheap.

    email is always stored lower-cased. status is a soft-delete flag --
    deleted accounts keep their row.
    """

    full_name: str
    email: str
    hashed_password: str
    role: str = "user"
    status: str = "active"
    id: str | None = None
    login_attempts: int = 0
    lock_until: datetime | None = None
    profile_image_url: str | None = None
    created_at: datetime | None = None
    last_login: datetime | None = None
    last_login_ip: str | None = None
    last_active_at: datetime | None = None
    password_changed_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass
class RefreshTokenRecord:
    """A refresh token the server has issued and still remembers.

    A presented refresh token is honoured only while its descriptor exists,
    is_revoked is False, expires_at is in the future, and token_hash matches
    the SHA-256 of the presented string.
    """

    user_id: str
    jti: str
    token_hash: str
    expires_at: datetime
    device_info: str = ""
    created_at: datetime | None = None
    last_used: datetime | None = None
    is_revoked: bool = False
    id: int | None = None


@dataclass
class LoginEvent:
    """One entry in a user's login history ring buffer."""

    user_id: str
    ip: str
    success: bool
    user_agent: str = ""
    device_fingerprint: str = ""
    timestamp: datetime | None = None
    id: int | None = None


@dataclass(frozen=True)
class Identity:
    """Verified caller identity attached to a request by the session dependency.

    Frozen: downstream handlers read it, they never mutate it. access_token and
    expires_at are carried so logout-style handlers can blacklist the exact
    token that authenticated the request.
    """

    id: str
    email: str
    role: str
    token_id: str
    full_name: str
    access_token: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    expires_in: int  # access token lifetime in seconds
