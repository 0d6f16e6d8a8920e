"""
auth/errors.py -- Exception taxonomy for the authentication service.

Every failure the auth layer can report is one of these classes. The API
layer registers a single exception handler for AuthError and renders the
status code and message into the standard {success, message, data?} envelope,
so auth code never builds HTTP responses itself.

Layer rule: no imports from api/. auth/ raises, api/ renders.
"""

from __future__ import annotations

from typing import Any


class AuthError(Exception):
    """Base class. status_code and message are what the client sees."""

    status_code: int = 400
    default_message: str = "Request failed."

    def __init__(
        self,
        message: str | None = None,
        *,
        data: dict[str, Any] | None = None,
        errors: list[dict[str, str]] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.data = data
        self.errors = errors
        self.headers = headers
        super().__init__(self.message)


class AuthenticationError(AuthError):
    """Missing, invalid, expired, or revoked credentials."""

    status_code = 401
    default_message = "Authentication required."

    def __init__(self, message: str | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("headers", {"WWW-Authenticate": "Bearer"})
        super().__init__(message, **kwargs)


class AuthorizationError(AuthError):
    """Authenticated, but not allowed (role or account status)."""

    status_code = 403
    default_message = "Access denied."


class AccountLockedError(AuthError):
    """Lockout window is active. Carries the remaining wait in minutes."""

    status_code = 423

    def __init__(self, minutes_remaining: int) -> None:
        self.minutes_remaining = minutes_remaining
        super().__init__(
            f"Account temporarily locked, retry in {minutes_remaining} minutes.",
            data={"lockTimeRemaining": minutes_remaining},
        )


class ValidationError(AuthError):
    """Malformed payload or a value that fails a policy check."""

    status_code = 400
    default_message = "Validation failed"

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(message, errors=[{"field": field, "message": message}])


class ConflictError(AuthError):
    """Duplicate email, or a password that was used before."""

    status_code = 409
    default_message = "Resource already exists."


class NotFoundError(AuthError):
    status_code = 404
    default_message = "Not found."
