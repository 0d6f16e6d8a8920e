"""
auth/tokens.py -- JWT issuance/verification and password hashing.

Security design decisions:
  JWT: python-jose with HS256. Access tokens and refresh tokens are signed
       with two different secrets and carry a "type" claim ("access" or
       "refresh"). A token of one type is never accepted where the other is
       expected [T1]. Every token carries a random jti used for revocation
       lookups, plus iss/aud claims that are checked on decode.

  Expiry: checked here rather than by python-jose so the boundary is exact
       and testable -- a token presented at or after its exp instant is
       expired [T2]. jose's own check would still admit a token at exp.

  Passwords: bcrypt used directly (no passlib wrapper) at the configured cost
       factor. The _DUMMY_HASH constant enables timing equalization in
       authenticate() so response time does not reveal whether an email is
       registered [T3].

  Refresh tokens are stored server-side only as SHA-256 hashes (hash_token).

  Secrets: sourced from core.config.get_settings(). Settings refuses to start
       without both secrets, so this module never falls back to a default.

Layer rule: no imports from api/. Import from core/ is allowed -- core/ is the
kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import logging
import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import JWTError, jwt

from auth.errors import AuthenticationError, ValidationError
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("expense_tracker.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

ACCESS = "access"
REFRESH = "refresh"

_MAX_PASSWORD_LENGTH = 128
_SPECIAL_CHARS = re.compile(r"[@$!%*?&]")


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes, and bcrypt 4.1+ raises on
    longer input, so the encoded password is cut to 72 bytes before hashing
    and before every check.
    """
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8")[:72], salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash. Never raises."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Timing equalization dummy hash [T3]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("expense_tracker_timing_dummy")


def authenticate(store: UserStore, email: str, password: str) -> tuple[User | None, bool]:
    """Look up a user by email and check the password with equalized timing.

    Returns (user, password_ok). user is None for unknown or soft-deleted
    emails; bcrypt still runs against _DUMMY_HASH in that case so the response
    time does not leak account existence [T3]. Status and lockout checks are
    the caller's job -- they need the user even when the password is wrong.
    """
    user = store.get_by_email(email)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        return None, False
    return user, verify_password(password, user.hashed_password)


def check_password_strength(password: str, field: str = "password") -> None:
    """Enforce the password policy. Raises ValidationError listing what is missing."""
    min_length = _settings.password_min_length
    if not (min_length <= len(password) <= _MAX_PASSWORD_LENGTH):
        raise ValidationError.for_field(
            field, f"Password must be between {min_length} and {_MAX_PASSWORD_LENGTH} characters"
        )
    missing = []
    if not re.search(r"[a-z]", password):
        missing.append("one lowercase letter")
    if not re.search(r"[A-Z]", password):
        missing.append("one uppercase letter")
    if not re.search(r"\d", password):
        missing.append("one number")
    if _settings.password_require_special and not _SPECIAL_CHARS.search(password):
        missing.append("one special character (@$!%*?&)")
    if missing:
        raise ValidationError.for_field(field, f"Password must contain: {', '.join(missing)}")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _secret_for(token_type: str) -> str:
    return _settings.jwt_secret if token_type == ACCESS else _settings.jwt_refresh_secret


def _encode(claims: dict[str, Any], token_type: str) -> str:
    return jwt.encode(claims, _secret_for(token_type), algorithm=_ALGORITHM)


def _base_claims(user: User, token_type: str, lifetime: timedelta, now: datetime | None) -> dict[str, Any]:
    issued = int((now or datetime.now(timezone.utc)).timestamp())
    return {
        "sub": user.id,
        "email": user.email,
        "type": token_type,
        "jti": uuid.uuid4().hex,
        "iat": issued,
        "exp": issued + int(lifetime.total_seconds()),
        "iss": _settings.jwt_issuer,
        "aud": _settings.jwt_audience,
    }


def access_token_lifetime() -> timedelta:
    return timedelta(minutes=_settings.access_token_expire_minutes)


def refresh_token_lifetime() -> timedelta:
    return timedelta(days=_settings.refresh_token_expire_days)


def issue_access_token(
    user: User, now: datetime | None = None, lifetime: timedelta | None = None
) -> tuple[str, dict[str, Any]]:
    """Mint a signed access token. Returns (token, claims).

    Claims: sub, email, role, type="access", jti, iat, exp, iss, aud.
    """
    claims = _base_claims(user, ACCESS, lifetime or access_token_lifetime(), now)
    claims["role"] = user.role or "user"
    return _encode(claims, ACCESS), claims


def issue_refresh_token(
    user: User, now: datetime | None = None, lifetime: timedelta | None = None
) -> tuple[str, dict[str, Any]]:
    """Mint a signed refresh token. Returns (token, claims).

    The caller persists claims["jti"], hash_token(token) and claims["exp"] as
    a RefreshTokenRecord -- a refresh token without a live descriptor is
    rejected even when its signature verifies.
    """
    claims = _base_claims(user, REFRESH, lifetime or refresh_token_lifetime(), now)
    return _encode(claims, REFRESH), claims


def decode_token(token: str, expected_type: str, now: datetime | None = None) -> dict[str, Any]:
    """Verify a token of the expected type and return its claims.

    Check order: well-formed -> type discriminator -> signature/iss/aud ->
    expiry. The type is read from the unverified payload first so a
    refresh token presented as an access token (or vice versa) reports
    "Invalid token type" instead of a signature failure; either way it is
    rejected before any claim is trusted [T1].

    Raises AuthenticationError with one of:
      "Invalid token", "Invalid token type", "Token expired".
    """
    try:
        unverified = jwt.get_unverified_claims(token)
    except JWTError:
        raise AuthenticationError("Invalid token") from None
    if unverified.get("type") != expected_type:
        raise AuthenticationError("Invalid token type")

    try:
        claims = jwt.decode(
            token,
            _secret_for(expected_type),
            algorithms=[_ALGORITHM],
            audience=_settings.jwt_audience,
            issuer=_settings.jwt_issuer,
            options={"verify_exp": False},
        )
    except JWTError as exc:
        logger.debug("Token verification failed: %s", exc)
        raise AuthenticationError("Invalid token") from None

    exp = claims.get("exp")
    if not isinstance(exp, int) or not claims.get("sub") or not claims.get("jti"):
        raise AuthenticationError("Invalid token")
    current = int((now or datetime.now(timezone.utc)).timestamp())
    if current >= exp:  # [T2] the expiry instant itself is already expired
        raise AuthenticationError("Token expired")
    return claims


def expiry_of(claims: dict[str, Any]) -> datetime:
    return datetime.fromtimestamp(claims["exp"], tz=timezone.utc)


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a raw token string."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
