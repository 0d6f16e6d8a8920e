"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used to refuse startup when a signing
      secret is missing, too short, or shared between token types.

Security notes:
  [S1] There is no fallback signing secret, not even in debug mode. A missing
       JWT_SECRET or JWT_REFRESH_SECRET is a hard startup failure.

  [S2] Secrets shorter than 32 chars are rejected. HS256 signing relies on
       key entropy -- a short key weakens every token issued with it.

  [S3] Access and refresh tokens must be signed with different keys so a
       leaked access key cannot mint refresh tokens.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("expense_tracker.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'expense_auth.db'}"

_MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Everything except the two signing secrets has a default. The secrets have
    an empty-string sentinel so the model_validator can produce a readable
    error instead of pydantic's generic "field required".
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    log_level: str = "INFO"
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    jwt_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_issuer: str = "expense-tracker"
    jwt_audience: str = "expense-tracker-users"
    access_token_expire_minutes: int = Field(default=60, gt=0)
    refresh_token_expire_days: int = Field(default=7, gt=0)

    # ------------------------------------------------------------------
    # Credentials and lockout
    # ------------------------------------------------------------------

    max_login_attempts: int = Field(default=5, ge=1, le=50)
    lockout_minutes: int = Field(default=30, gt=0)
    # bcrypt accepts 4..31. Tests drop to 4 for speed.
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)
    password_min_length: int = Field(default=8, ge=1, le=128)
    password_require_special: bool = False

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    blacklist_max_entries: int = Field(default=10_000, ge=2)
    revocation_backend: Literal["memory", "database"] = "memory"
    sweep_interval_seconds: int = Field(default=3600, gt=0)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    auth_rate_limit: str = "10/minute"
    api_rate_limit: str = "100/minute"
    cors_origins: list[str] = ["http://localhost:3000"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Reject log levels the logging module does not know."""
        level = str(v).upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return level

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Refuse to start without two strong, distinct signing secrets [S1][S2][S3]."""
        for name in ("jwt_secret", "jwt_refresh_secret"):
            value = getattr(self, name)
            if not value:
                raise ValueError(
                    f"{name.upper()} is required. "
                    "Set it in your environment or .env file; there is no default."
                )
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError(f"{name.upper()} must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must be different.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
