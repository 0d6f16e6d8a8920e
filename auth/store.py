"""
auth/store.py -- SQLAlchemy Core persistence layer for credential records.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user,
_row_to_refresh_token and _row_to_login_event are the mappers. Route, policy
and dependency code never touches SQL directly, and never mutates a record by
assigning fields -- every change goes through a method here.

Tables:
  users              one row per credential record (soft-deleted, never removed)
  refresh_tokens     issued refresh-token descriptors, 5 most recent per user
  login_history      ring buffer of login attempts, 50 most recent per user
  password_history   previous password hashes, 5 most recent per user

Security:
  All queries use bound parameters. No f-strings in SQL.
  Refresh tokens are stored as SHA-256 hashes only -- the raw token never
  touches the database.

Atomicity:
  increment_login_attempts() is a single UPDATE whose SET clause is computed
  from the pre-update row, so two concurrent failed logins both count.

Timestamps are stored as fixed-width UTC ISO-8601 strings, which compare
correctly as text in every backend SQLAlchemy supports.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    and_,
    case,
    create_engine,
    event,
    func,
    null,
    or_,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import ROLES, STATUSES, LoginEvent, RefreshTokenRecord, User

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'expense_auth.db'}"

MAX_REFRESH_TOKENS = 5
MAX_LOGIN_HISTORY = 50
MAX_PASSWORD_HISTORY = 5
# Sanity ceiling on the failure counter; retry storms cannot grow it further.
LOGIN_ATTEMPTS_CEILING = 50

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(32), primary_key=True),
    Column("full_name", String(50), nullable=False),
    Column("email", String(100), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("role", String(20), nullable=False, server_default="user"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("login_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32), index=True),
    Column("profile_image_url", String(500)),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
    Column("last_login_ip", String(45)),
    Column("last_active_at", String(32)),
    Column("password_changed_at", String(32)),
    Column("deleted_at", String(32)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("jti", String(32), nullable=False, unique=True),
    Column("token_hash", String(64), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("device_info", String(200)),
    Column("last_used", String(32)),
    Column("is_revoked", Integer, nullable=False, server_default="0"),
)

_login_history = Table(
    "login_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("timestamp", String(32), nullable=False),
    Column("ip", String(45), nullable=False),
    Column("user_agent", String(500)),
    Column("success", Integer, nullable=False),
    Column("device_fingerprint", String(16)),
)

_password_history = Table(
    "password_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("password_hash", Text, nullable=False),
    Column("changed_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    """Render a datetime as fixed-width UTC ISO-8601 (microsecond precision)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _check_choice(field: str, value: str, allowed: tuple[str, ...]) -> None:
    if value not in allowed:
        raise ValueError(f"Unknown {field} {value!r}; expected one of {', '.join(allowed)}")


def create_store_engine(db_url: str) -> Engine:
    """Build an Engine with the SQLite tweaks the auth tables rely on."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    return engine


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for credential records and their satellite tables.

    Usage:
        store = UserStore("sqlite:///:memory:")
        uid = store.create_user(User(full_name="Alice", email="alice@example.com",
                                     hashed_password=hash_password("Passw0rd!")))
        user = store.get_by_email("ALICE@example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = create_store_engine(db_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new credential record and return its opaque ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists
        (including soft-deleted records, which keep their email), and
        ValueError for a role or status outside ROLES / STATUSES.
        """
        _check_choice("role", user.role, ROLES)
        _check_choice("status", user.status, STATUSES)
        user_id = uuid.uuid4().hex
        now = to_iso(utcnow())
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    full_name=user.full_name,
                    email=user.email.strip().lower(),
                    hashed_password=user.hashed_password,
                    role=user.role,
                    status=user.status,
                    login_attempts=0,
                    profile_image_url=user.profile_image_url,
                    created_at=now,
                    last_active_at=now,
                    password_changed_at=now,
                )
            )
            conn.commit()
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a record by primary key, soft-deleted ones included."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup that skips soft-deleted records."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(
                    (_users.c.email == email.strip().lower()) & (_users.c.status != "deleted")
                )
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def email_exists(self, email: str) -> bool:
        """True if any record, soft-deleted or not, holds this email."""
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.email == email.strip().lower())
            ).scalar()
        return (count or 0) > 0

    def set_status(self, user_id: str, status: str) -> bool:
        _check_choice("status", status, STATUSES)
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(status=status))
            conn.commit()
        return result.rowcount > 0

    def soft_delete(self, user_id: str) -> bool:
        """Flag the record as deleted. The row stays for audit purposes."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(status="deleted", deleted_at=to_iso(utcnow()))
            )
            conn.commit()
        return result.rowcount > 0

    def touch_last_active(self, user_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_active_at=to_iso(utcnow())))
            conn.commit()

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def increment_login_attempts(
        self, user_id: str, max_attempts: int, lock_until: datetime, now: datetime
    ) -> User | None:
        """Apply one failed-login transition atomically and return the new state.

        Transition, evaluated against the pre-update row:
          - lock expired (lock_until <= now): attempts = 1, lock cleared
          - otherwise: attempts = min(attempts + 1, LOGIN_ATTEMPTS_CEILING), and
            if not already locked and attempts + 1 >= max_attempts,
            lock_until = the supplied lock_until
        """
        now_iso = to_iso(now)
        lock_expired = and_(_users.c.lock_until.is_not(None), _users.c.lock_until <= now_iso)
        incremented = _users.c.login_attempts + 1
        with self.engine.connect() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(
                    login_attempts=case(
                        (lock_expired, 1),
                        (incremented > LOGIN_ATTEMPTS_CEILING, LOGIN_ATTEMPTS_CEILING),
                        else_=incremented,
                    ),
                    lock_until=case(
                        (lock_expired, null()),
                        (
                            and_(_users.c.lock_until.is_(None), incremented >= max_attempts),
                            to_iso(lock_until),
                        ),
                        else_=_users.c.lock_until,
                    ),
                )
            )
            conn.commit()
        return self.get_by_id(user_id)

    def reset_login_attempts(self, user_id: str) -> None:
        """Clear both the failure counter and the lock, unconditionally."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(login_attempts=0, lock_until=None))
            conn.commit()

    # ------------------------------------------------------------------
    # Login history (ring buffer)
    # ------------------------------------------------------------------

    def record_login(self, event: LoginEvent) -> None:
        """Append a login attempt and trim history to the newest MAX_LOGIN_HISTORY.

        A successful attempt also stamps last_login / last_login_ip /
        last_active_at on the user row.
        """
        stamp = to_iso(event.timestamp or utcnow())
        with self.engine.connect() as conn:
            conn.execute(
                _login_history.insert().values(
                    user_id=event.user_id,
                    timestamp=stamp,
                    ip=event.ip,
                    user_agent=(event.user_agent or "")[:500],
                    success=1 if event.success else 0,
                    device_fingerprint=event.device_fingerprint,
                )
            )
            newest = (
                select(_login_history.c.id)
                .where(_login_history.c.user_id == event.user_id)
                .order_by(_login_history.c.id.desc())
                .limit(MAX_LOGIN_HISTORY)
            )
            conn.execute(
                _login_history.delete().where(
                    (_login_history.c.user_id == event.user_id) & _login_history.c.id.not_in(newest)
                )
            )
            if event.success:
                conn.execute(
                    _users.update()
                    .where(_users.c.id == event.user_id)
                    .values(last_login=stamp, last_login_ip=event.ip, last_active_at=stamp)
                )
            conn.commit()

    def get_login_history(self, user_id: str, limit: int = MAX_LOGIN_HISTORY) -> list[LoginEvent]:
        """Return login attempts newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _login_history.select()
                .where(_login_history.c.user_id == user_id)
                .order_by(_login_history.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_login_event(r) for r in rows]

    # ------------------------------------------------------------------
    # Refresh-token descriptors
    # ------------------------------------------------------------------

    def add_refresh_token(self, record: RefreshTokenRecord) -> None:
        """Append a descriptor, keeping only the MAX_REFRESH_TOKENS most recent.

        Older descriptors are dropped silently; their refresh tokens stop
        working at the next refresh attempt.
        """
        now = to_iso(utcnow())
        with self.engine.connect() as conn:
            conn.execute(
                _refresh_tokens.insert().values(
                    user_id=record.user_id,
                    jti=record.jti,
                    token_hash=record.token_hash,
                    created_at=to_iso(record.created_at) or now,
                    expires_at=to_iso(record.expires_at),
                    device_info=(record.device_info or "")[:200],
                    last_used=now,
                    is_revoked=1 if record.is_revoked else 0,
                )
            )
            newest = (
                select(_refresh_tokens.c.id)
                .where(_refresh_tokens.c.user_id == record.user_id)
                .order_by(_refresh_tokens.c.id.desc())
                .limit(MAX_REFRESH_TOKENS)
            )
            conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.user_id == record.user_id) & _refresh_tokens.c.id.not_in(newest)
                )
            )
            conn.commit()

    def get_refresh_token(self, user_id: str, jti: str) -> RefreshTokenRecord | None:
        """Fetch one descriptor, scoped to its owner so a jti cannot cross users."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _refresh_tokens.select().where(
                    (_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.jti == jti)
                )
            ).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def list_refresh_tokens(self, user_id: str) -> list[RefreshTokenRecord]:
        """Return all descriptors for a user, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.id.desc())
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def count_active_refresh_tokens(self, user_id: str, now: datetime | None = None) -> int:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_refresh_tokens)
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.is_revoked == 0)
                    & (_refresh_tokens.c.expires_at > to_iso(now or utcnow()))
                )
            ).scalar()
        return count or 0

    def revoke_refresh_token(self, user_id: str, jti: str) -> bool:
        """Mark one descriptor revoked. Returns False if the user does not own it."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.user_id == user_id)
                    & (_refresh_tokens.c.jti == jti)
                    & (_refresh_tokens.c.is_revoked == 0)
                )
                .values(is_revoked=1)
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_refresh_tokens(self, user_id: str) -> int:
        """Mark every descriptor of a user revoked. Returns how many changed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.is_revoked == 0))
                .values(is_revoked=1)
            )
            conn.commit()
        return result.rowcount

    def prune_refresh_tokens(self, now: datetime | None = None) -> int:
        """Delete descriptors that are expired or revoked. Returns rows removed."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    or_(
                        _refresh_tokens.c.expires_at <= to_iso(now or utcnow()),
                        _refresh_tokens.c.is_revoked == 1,
                    )
                )
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def update_password(self, user_id: str, new_hash: str) -> bool:
        """Replace the password hash, pushing the previous one onto the history.

        History keeps the MAX_PASSWORD_HISTORY most recent previous hashes.
        """
        now = to_iso(utcnow())
        with self.engine.connect() as conn:
            current = conn.execute(
                select(_users.c.hashed_password).where(_users.c.id == user_id)
            ).scalar()
            if current is None:
                return False
            conn.execute(
                _password_history.insert().values(user_id=user_id, password_hash=current, changed_at=now)
            )
            newest = (
                select(_password_history.c.id)
                .where(_password_history.c.user_id == user_id)
                .order_by(_password_history.c.id.desc())
                .limit(MAX_PASSWORD_HISTORY)
            )
            conn.execute(
                _password_history.delete().where(
                    (_password_history.c.user_id == user_id) & _password_history.c.id.not_in(newest)
                )
            )
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(hashed_password=new_hash, password_changed_at=now)
            )
            conn.commit()
        return True

    def get_password_history(self, user_id: str) -> list[str]:
        """Return previous password hashes, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_password_history.c.password_hash)
                .where(_password_history.c.user_id == user_id)
                .order_by(_password_history.c.id.desc())
            ).fetchall()
        return [r[0] for r in rows]

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        full_name=row.full_name,
        email=row.email,
        hashed_password=row.hashed_password,
        role=row.role,
        status=row.status,
        login_attempts=row.login_attempts or 0,
        lock_until=from_iso(row.lock_until),
        profile_image_url=row.profile_image_url,
        created_at=from_iso(row.created_at),
        last_login=from_iso(row.last_login),
        last_login_ip=row.last_login_ip,
        last_active_at=from_iso(row.last_active_at),
        password_changed_at=from_iso(row.password_changed_at),
        deleted_at=from_iso(row.deleted_at),
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        user_id=row.user_id,
        jti=row.jti,
        token_hash=row.token_hash,
        created_at=from_iso(row.created_at),
        expires_at=from_iso(row.expires_at),
        device_info=row.device_info or "",
        last_used=from_iso(row.last_used),
        is_revoked=bool(row.is_revoked),
    )


def _row_to_login_event(row) -> LoginEvent:
    return LoginEvent(
        id=row.id,
        user_id=row.user_id,
        timestamp=from_iso(row.timestamp),
        ip=row.ip,
        user_agent=row.user_agent or "",
        success=bool(row.success),
        device_fingerprint=row.device_fingerprint or "",
    )
