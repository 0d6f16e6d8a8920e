"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes (mounted under /api/v1):
  POST   /auth/register              -- create account; returns token pair
  POST   /auth/login                 -- password login; returns token pair
  POST   /auth/refresh-token         -- rotate refresh token; returns new pair
  GET    /auth/getUser               -- current user profile (requires auth)
  POST   /auth/logout                -- blacklist this access token (requires auth)
  POST   /auth/logout-all            -- revoke every refresh token (requires auth)
  POST   /auth/change-password       -- new password; revokes all sessions (requires auth)
  GET    /auth/login-history         -- recent login attempts (requires auth)
  DELETE /auth/account               -- soft-delete own account (requires auth)
  POST   /auth/users/{id}/unlock     -- clear a lockout (admin only)

Security:
  [R1] register/login/refresh-token carry AUTH_RATE_LIMIT per IP on top of
       the global default.
  [R2] authenticate() equalizes timing for unknown emails -- use it, never
       inline get_by_email() + verify_password().
  [R3] Cache-Control: no-store on every response that carries tokens.
  [R4] Unknown email and wrong password share the "Invalid credentials"
       prefix so account existence is not revealed by the message.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import (
    ApiResponse,
    ChangePasswordRequest,
    DeleteAccountRequest,
    LoginEventPublic,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    UserPublic,
)
from auth.dependencies import get_current_identity, require_admin
from auth.errors import (
    AccountLockedError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from auth.lockout import LockoutPolicy
from auth.models import Identity, LoginEvent, TokenPair, User
from auth.revocation import RevocationRegistry
from auth.sessions import device_fingerprint, issue_session, rotate_refresh
from auth.store import UserStore
from auth.tokens import (
    REFRESH,
    authenticate,
    check_password_strength,
    decode_token,
    hash_password,
    verify_password,
)

logger = logging.getLogger("expense_tracker.auth")

# Auth policy:
# - POST   /auth/register, /auth/login, /auth/refresh-token: public, rate-limited [R1]
# - everything else: requires a valid access token (get_current_identity)
# - POST   /auth/users/{id}/unlock: requires admin or super-admin (require_admin)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _user_agent(request: Request) -> str:
    return request.headers.get("User-Agent", "Unknown")


def _login_event(user: User, request: Request, success: bool) -> LoginEvent:
    ip, ua = _client_ip(request), _user_agent(request)
    return LoginEvent(
        user_id=user.id,
        ip=ip,
        user_agent=ua,
        success=success,
        device_fingerprint=device_fingerprint(ip, ua),
    )


def _user_payload(user: User) -> dict[str, Any]:
    return UserPublic.from_user(user).model_dump(by_alias=True, mode="json")


def _respond(
    message: str, data: dict[str, Any] | None = None, status_code: int = 200, no_store: bool = False
) -> JSONResponse:
    resp = JSONResponse(
        status_code=status_code,
        content=ApiResponse(message=message, data=data).model_dump(
            mode="json", exclude={"data"} if data is None else None
        ),
    )
    if no_store:
        resp.headers["Cache-Control"] = "no-store"  # [R3]
    return resp


def _token_response(message: str, user: User, pair: TokenPair, status_code: int = 200) -> JSONResponse:
    return _respond(
        message,
        {
            "user": _user_payload(user),
            "accessToken": pair.access_token,
            "refreshToken": pair.refresh_token,
            "expiresIn": pair.expires_in,
        },
        status_code=status_code,
        no_store=True,
    )


def _load_self(store: UserStore, identity: Identity) -> User:
    user = store.get_by_id(identity.id)
    if user is None:
        # The session dependency already checked this; the row vanished since.
        raise AuthenticationError("User no longer exists")
    return user


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_RATE_LIMIT)  # [R1] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and sign the new user in."""
    store: UserStore = request.app.state.user_store
    ip = _client_ip(request)

    check_password_strength(body.password)

    if store.email_exists(body.email):
        logger.warning("Registration attempt with existing email: email=%s ip=%s", body.email, ip)
        raise ConflictError("An account with this email already exists")

    try:
        user_id = store.create_user(
            User(
                full_name=body.full_name,
                email=body.email,
                hashed_password=hash_password(body.password),
                profile_image_url=body.profile_image_url,
            )
        )
    except IntegrityError as exc:
        # A concurrent request registered the same email between the check and the insert.
        raise ConflictError("An account with this email already exists") from exc

    user = store.get_by_id(user_id)
    store.record_login(_login_event(user, request, success=True))
    pair = issue_session(store, user, ip, _user_agent(request))
    logger.info("User registered: user_id=%s ip=%s", user.id, ip)
    return _token_response("Account created successfully", store.get_by_id(user_id), pair, status_code=201)


@limiter.limit(AUTH_RATE_LIMIT)  # [R1]
@router.post("/auth/login")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and return a token pair.

    Order of checks: credentials lookup [R2] -> account status -> lockout ->
    password. A locked account is refused even when the password is right.
    """
    store: UserStore = request.app.state.user_store
    lockout: LockoutPolicy = request.app.state.lockout
    ip = _client_ip(request)

    user, password_ok = authenticate(store, body.email, body.password)
    if user is None:
        logger.info("Login attempt for unknown email: email=%s ip=%s", body.email, ip)
        raise AuthenticationError("Invalid credentials")  # [R4]

    if not user.is_active:
        store.record_login(_login_event(user, request, success=False))
        raise AuthorizationError(
            "Account suspended. Contact support."
            if user.status == "suspended"
            else "Account inactive. Contact support."
        )

    if lockout.is_locked(user):
        store.record_login(_login_event(user, request, success=False))
        raise AccountLockedError(lockout.minutes_remaining(user))

    if not password_ok:
        store.record_login(_login_event(user, request, success=False))
        updated = lockout.record_failure(user)
        logger.info(
            "Login failed, bad password: user_id=%s attempts=%d ip=%s", user.id, updated.login_attempts, ip
        )
        if lockout.is_locked(updated):
            raise AuthenticationError("Invalid credentials. Account will be temporarily locked.")
        raise AuthenticationError(
            f"Invalid credentials. {lockout.attempts_remaining(updated)} attempts remaining."
        )

    lockout.record_success(user)
    store.record_login(_login_event(user, request, success=True))
    pair = issue_session(store, user, ip, _user_agent(request))
    logger.info("User logged in: user_id=%s ip=%s", user.id, ip)
    return _token_response("Login successful", store.get_by_id(user.id), pair)


@limiter.limit(AUTH_RATE_LIMIT)  # [R1]
@router.post("/auth/refresh-token")
def refresh_token(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is revoked.

    Any failure is a 401 and the client must log in again; there is no
    partial success.
    """
    if not body.refresh_token:
        raise AuthenticationError("Refresh token required")

    pair, user = rotate_refresh(
        request.app.state.user_store,
        request.app.state.revocation,
        body.refresh_token,
        _client_ip(request),
        _user_agent(request),
    )
    return _respond(
        "Token refreshed successfully",
        {
            "accessToken": pair.access_token,
            "refreshToken": pair.refresh_token,
            "expiresIn": pair.expires_in,
            "user": _user_payload(user),
        },
        no_store=True,
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/getUser")
def get_user(request: Request, identity: Identity = Depends(get_current_identity)) -> JSONResponse:
    """Return the caller's profile plus account and session statistics."""
    store: UserStore = request.app.state.user_store
    user = _load_self(store, identity)
    store.touch_last_active(user.id)

    now = datetime.now(timezone.utc)
    profile_stats = {
        "accountAgeDays": (now - user.created_at).days if user.created_at else None,
        "lastLoginDaysAgo": (now - user.last_login).days if user.last_login else None,
        "loginHistoryCount": len(store.get_login_history(user.id)),
    }
    security_info = {
        "lastPasswordChange": user.password_changed_at.isoformat() if user.password_changed_at else None,
        "activeTokens": store.count_active_refresh_tokens(user.id, now),
    }
    return _respond(
        "User retrieved",
        {"user": _user_payload(user), "profileStats": profile_stats, "securityInfo": security_info},
    )


@router.post("/auth/logout")
def logout(
    request: Request,
    body: LogoutRequest | None = None,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    """Blacklist the access token that authenticated this request.

    If the body names a refresh token belonging to the caller, that session's
    refresh token is revoked too. Other sessions stay valid.
    """
    registry: RevocationRegistry = request.app.state.revocation
    registry.blacklist(identity.access_token, identity.expires_at)

    if body is not None and body.refresh_token:
        try:
            claims = decode_token(body.refresh_token, REFRESH)
        except AuthenticationError as exc:
            # Logout still succeeds; the refresh token is unusable anyway.
            logger.debug("Ignoring invalid refresh token on logout: %s", exc.message)
        else:
            if claims["sub"] == identity.id:
                registry.revoke_refresh(identity.id, claims["jti"])

    logger.info("User logged out: user_id=%s ip=%s", identity.id, _client_ip(request))
    return _respond("Logged out successfully", {"logoutTime": datetime.now(timezone.utc).isoformat()})


@router.post("/auth/logout-all")
def logout_all(request: Request, identity: Identity = Depends(get_current_identity)) -> JSONResponse:
    """Revoke every refresh token the caller holds and blacklist this access token."""
    registry: RevocationRegistry = request.app.state.revocation
    revoked = registry.revoke_all_refresh(identity.id)
    registry.blacklist(identity.access_token, identity.expires_at)
    logger.info(
        "User logged out from all devices: user_id=%s revoked=%d ip=%s", identity.id, revoked, _client_ip(request)
    )
    return _respond(
        "Logged out from all devices successfully",
        {"logoutTime": datetime.now(timezone.utc).isoformat(), "devicesAffected": revoked},
    )


@router.post("/auth/change-password")
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    """Replace the caller's password and end every session.

    Rejects a new password equal to the current one or any of the last five.
    """
    store: UserStore = request.app.state.user_store
    registry: RevocationRegistry = request.app.state.revocation
    user = _load_self(store, identity)

    if not verify_password(body.current_password, user.hashed_password):
        raise ValidationError.for_field("currentPassword", "Current password is incorrect")

    check_password_strength(body.new_password, field="newPassword")

    previous = [user.hashed_password, *store.get_password_history(user.id)]
    if any(verify_password(body.new_password, h) for h in previous):
        raise ConflictError("Cannot reuse a previous password")

    store.update_password(user.id, hash_password(body.new_password))
    registry.revoke_all_refresh(user.id)
    registry.blacklist(identity.access_token, identity.expires_at)

    logger.info("Password changed: user_id=%s ip=%s", user.id, _client_ip(request))
    return _respond(
        "Password changed successfully. Please login again with your new password.",
        {"logoutRequired": True},
    )


@router.get("/auth/login-history")
def login_history(request: Request, identity: Identity = Depends(get_current_identity)) -> JSONResponse:
    """Return the caller's most recent login attempts, newest first."""
    store: UserStore = request.app.state.user_store
    events = store.get_login_history(identity.id)
    return _respond(
        "Login history retrieved",
        {"history": [LoginEventPublic.from_event(e).model_dump(by_alias=True, mode="json") for e in events]},
    )


@router.delete("/auth/account")
def delete_account(
    request: Request,
    body: DeleteAccountRequest,
    identity: Identity = Depends(get_current_identity),
) -> JSONResponse:
    """Soft-delete the caller's account after re-checking the password.

    The record keeps its row with status "deleted"; every token stops working.
    """
    store: UserStore = request.app.state.user_store
    registry: RevocationRegistry = request.app.state.revocation
    user = _load_self(store, identity)

    if not verify_password(body.password, user.hashed_password):
        raise ValidationError.for_field("password", "Password is incorrect")

    store.soft_delete(user.id)
    registry.revoke_all_refresh(user.id)
    registry.blacklist(identity.access_token, identity.expires_at)
    logger.info("Account soft-deleted: user_id=%s ip=%s", user.id, _client_ip(request))
    return _respond("Account deleted successfully")


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.post("/auth/users/{user_id}/unlock")
def unlock_user(
    request: Request,
    user_id: str,
    identity: Identity = Depends(require_admin),
) -> JSONResponse:
    """Clear the failure counter and lock of another account. Admin only."""
    store: UserStore = request.app.state.user_store
    lockout: LockoutPolicy = request.app.state.lockout

    target = store.get_by_id(user_id)
    if target is None:
        raise NotFoundError("User not found")

    lockout.record_success(target)
    logger.info("Account unlocked: user_id=%s by admin_id=%s", target.id, identity.id)
    return _respond("Account unlocked", {"user": _user_payload(store.get_by_id(user_id))})
