"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

get_current_identity() is the session middleware. It walks one request
through a fixed sequence of checks and stops at the first failure:

  no token         -> 401 "Access token required"
  bad signature    -> 401 "Invalid token"
  expired          -> 401 "Token expired"
  wrong type       -> 401 "Invalid token type"
  blacklisted      -> 401 "Token revoked"
  subject missing  -> 401 "User no longer exists" (token is blacklisted too)
  not active       -> 401 "Account deactivated"
  locked           -> 423 "Account temporarily locked, retry in N minutes"

Expiry is checked before the blacklist, so a token blacklisted after its
natural expiry is simply reported as expired.

On success the verified Identity is returned and also stored on
request.state.identity so the access log and the 500 handler can name the
subject.

require_role() wraps get_current_identity() and raises 403 for other roles.

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because it is part of the dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import Depends, Request

from auth.errors import AccountLockedError, AuthenticationError, AuthorizationError
from auth.lockout import LockoutPolicy
from auth.models import Identity
from auth.revocation import RevocationRegistry
from auth.store import UserStore
from auth.tokens import ACCESS, decode_token, expiry_of

logger = logging.getLogger("expense_tracker.auth")


def extract_bearer_token(request: Request) -> str | None:
    """Return the token from "Authorization: Bearer <token>", or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_identity(request: Request) -> Identity:
    """Admit the request or raise the AuthError for the first failed check.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    store: UserStore = request.app.state.user_store
    registry: RevocationRegistry = request.app.state.revocation
    lockout: LockoutPolicy = request.app.state.lockout

    token = extract_bearer_token(request)
    if token is None:
        raise AuthenticationError("Access token required")

    claims = decode_token(token, ACCESS)

    if registry.is_blacklisted(token):
        raise AuthenticationError("Token revoked")

    user = store.get_by_id(claims["sub"])
    if user is None:
        registry.blacklist(token, expiry_of(claims))
        logger.warning(
            "Token presented for unknown subject: sub=%s ip=%s",
            claims["sub"],
            request.client.host if request.client else "unknown",
        )
        raise AuthenticationError("User no longer exists")

    if not user.is_active:
        raise AuthenticationError("Account deactivated")

    if lockout.is_locked(user):
        raise AccountLockedError(lockout.minutes_remaining(user))

    identity = Identity(
        id=user.id,
        email=claims.get("email", user.email),
        role=claims.get("role", "user"),
        token_id=claims["jti"],
        full_name=user.full_name,
        access_token=token,
        expires_at=expiry_of(claims),
    )
    request.state.identity = identity
    return identity


def require_role(*roles: str):
    """Build a dependency that admits only identities holding one of roles."""

    def _check(identity: Identity = Depends(get_current_identity)) -> Identity:
        if identity.role not in roles:
            raise AuthorizationError(f"Access denied. Required role(s): {', '.join(roles)}")
        return identity

    return _check


require_admin = require_role("admin", "super-admin")
