"""
auth/sessions.py -- Token-pair issuance and refresh rotation.

issue_session() is the tail of every successful register/login: mint an
access + refresh pair and persist the refresh descriptor. rotate_refresh()
is the refresh-token endpoint: the presented refresh token is revoked as part
of minting its replacement, so replaying it afterwards fails.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime

from auth.errors import AuthenticationError
from auth.models import RefreshTokenRecord, TokenPair, User
from auth.revocation import RevocationRegistry
from auth.store import UserStore, utcnow
from auth.tokens import (
    REFRESH,
    access_token_lifetime,
    decode_token,
    expiry_of,
    hash_token,
    issue_access_token,
    issue_refresh_token,
)

logger = logging.getLogger("expense_tracker.auth")


def device_fingerprint(ip: str, user_agent: str) -> str:
    """Short stable identifier for an (address, user agent) pair. Not a secret."""
    return hashlib.md5(f"{ip}:{user_agent}".encode("utf-8"), usedforsecurity=False).hexdigest()[:16]


def issue_session(
    store: UserStore, user: User, ip: str, user_agent: str, now: datetime | None = None
) -> TokenPair:
    """Mint an access/refresh pair for user and remember the refresh token."""
    now = now or utcnow()
    access_token, access_claims = issue_access_token(user, now=now)
    refresh_token, refresh_claims = issue_refresh_token(user, now=now)
    refresh_expires_at = expiry_of(refresh_claims)

    store.add_refresh_token(
        RefreshTokenRecord(
            user_id=user.id,
            jti=refresh_claims["jti"],
            token_hash=hash_token(refresh_token),
            expires_at=refresh_expires_at,
            device_info=f"{user_agent} - {ip}",
            created_at=now,
        )
    )
    return TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        access_expires_at=expiry_of(access_claims),
        refresh_expires_at=refresh_expires_at,
        expires_in=int(access_token_lifetime().total_seconds()),
    )


def rotate_refresh(
    store: UserStore,
    registry: RevocationRegistry,
    raw_refresh: str,
    ip: str,
    user_agent: str,
    now: datetime | None = None,
) -> tuple[TokenPair, User]:
    """Exchange a live refresh token for a new pair, revoking the old one.

    Raises AuthenticationError when the token does not verify, its owner is
    gone or inactive, or its descriptor is missing, revoked, expired, or
    belongs to a different token string. Callers must re-authenticate from
    scratch on any of these.
    """
    now = now or utcnow()
    claims = decode_token(raw_refresh, REFRESH, now=now)

    user = store.get_by_id(claims["sub"])
    if user is None or not user.is_active:
        logger.info("Refresh rejected, owner missing or inactive: sub=%s ip=%s", claims["sub"], ip)
        raise AuthenticationError("User no longer exists or account is inactive")

    if not registry.is_refresh_active(claims["jti"], user, raw_refresh, now=now):
        logger.warning("Refresh token not active (revoked, expired, or replayed): user_id=%s ip=%s", user.id, ip)
        raise AuthenticationError("Refresh token revoked or expired")

    # The conditional UPDATE is the gate: of two concurrent rotations of the
    # same token only one flips is_revoked, the other is a replay.
    if not registry.revoke_refresh(user.id, claims["jti"]):
        logger.warning("Refresh token already rotated (concurrent replay): user_id=%s ip=%s", user.id, ip)
        raise AuthenticationError("Refresh token revoked or expired")

    pair = issue_session(store, user, ip, user_agent, now=now)
    logger.info("Refresh token rotated: user_id=%s ip=%s", user.id, ip)
    return pair, user
