"""
auth/revocation.py -- Access-token blacklist and refresh-token revocation.

Two kinds of revocation with different homes:

  Access tokens are not persisted anywhere, so revoking one means remembering
  its raw string until it would have expired anyway. That memory is a
  RevocationCache: put / contains / evict_expired.

    InMemoryRevocationCache  -- process-local, bounded. Past the high-water
        mark the oldest half is evicted. Acceptable only because access tokens
        are short-lived; it does not survive a restart and is not shared
        between instances.
    DatabaseRevocationCache  -- a revoked_tokens table keyed by token SHA-256
        with per-entry expiry. Every instance pointed at the same database
        sees the same blacklist.

  Refresh tokens already have a descriptor in the owner's credential record,
  so revoking one flips is_revoked on that descriptor via UserStore.

RevocationRegistry puts both behind one object, which the session dependency
and the auth routes share through app.state.revocation.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac
import logging
import threading
from collections import OrderedDict
from datetime import datetime
from typing import Protocol

from sqlalchemy import Column, MetaData, String, Table, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import User
from auth.store import UserStore, to_iso, utcnow
from auth.tokens import hash_token

logger = logging.getLogger("expense_tracker.auth")

DEFAULT_MAX_ENTRIES = 10_000


class RevocationCache(Protocol):
    def put(self, token: str, expires_at: datetime) -> None: ...

    def contains(self, token: str) -> bool: ...

    def evict_expired(self, now: datetime | None = None) -> int: ...

    def __len__(self) -> int: ...


class InMemoryRevocationCache:
    """Bounded insertion-ordered blacklist keyed by the raw token string.

    Guarded by a lock because sync route handlers run on FastAPI's threadpool.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.max_entries = max_entries
        self._entries: OrderedDict[str, datetime] = OrderedDict()
        self._lock = threading.Lock()

    def put(self, token: str, expires_at: datetime) -> None:
        with self._lock:
            self._entries[token] = expires_at
            self._entries.move_to_end(token)
            if len(self._entries) > self.max_entries:
                # Keep the newest max_entries // 2, drop the rest.
                for _ in range(len(self._entries) - self.max_entries // 2):
                    self._entries.popitem(last=False)

    def contains(self, token: str) -> bool:
        with self._lock:
            return token in self._entries

    def evict_expired(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self._lock:
            expired = [t for t, exp in self._entries.items() if exp <= now]
            for token in expired:
                del self._entries[token]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


_revocation_metadata = MetaData()

_revoked_tokens = Table(
    "revoked_tokens",
    _revocation_metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("expires_at", String(32), nullable=False, index=True),
    Column("revoked_at", String(32), nullable=False),
)


class DatabaseRevocationCache:
    """Blacklist stored in the credential database, keyed by SHA-256 of the token.

    Shares the UserStore engine so no extra connection pool is opened.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        _revocation_metadata.create_all(self.engine)

    def put(self, token: str, expires_at: datetime) -> None:
        try:
            with self.engine.connect() as conn:
                conn.execute(
                    _revoked_tokens.insert().values(
                        token_hash=hash_token(token),
                        expires_at=to_iso(expires_at),
                        revoked_at=to_iso(utcnow()),
                    )
                )
                conn.commit()
        except IntegrityError:
            # Already blacklisted by a concurrent request.
            logger.debug("Token already present in revoked_tokens")

    def contains(self, token: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_revoked_tokens.c.token_hash).where(_revoked_tokens.c.token_hash == hash_token(token))
            ).fetchone()
        return row is not None

    def evict_expired(self, now: datetime | None = None) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _revoked_tokens.delete().where(_revoked_tokens.c.expires_at <= to_iso(now or utcnow()))
            )
            conn.commit()
        return result.rowcount

    def __len__(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_revoked_tokens)).scalar() or 0


class RevocationRegistry:
    """Single entry point for every revocation question the service asks."""

    def __init__(self, cache: RevocationCache, store: UserStore) -> None:
        self.cache = cache
        self.store = store

    # -- access tokens ----------------------------------------------------

    def blacklist(self, access_token: str, expires_at: datetime) -> None:
        self.cache.put(access_token, expires_at)

    def is_blacklisted(self, access_token: str) -> bool:
        return self.cache.contains(access_token)

    # -- refresh tokens ---------------------------------------------------

    def revoke_refresh(self, user_id: str, jti: str) -> bool:
        return self.store.revoke_refresh_token(user_id, jti)

    def revoke_all_refresh(self, user_id: str) -> int:
        return self.store.revoke_all_refresh_tokens(user_id)

    def is_refresh_active(self, jti: str, owner: User, raw_token: str, now: datetime | None = None) -> bool:
        """True iff the owner holds an unrevoked, unexpired descriptor for this exact token."""
        record = self.store.get_refresh_token(owner.id, jti)
        if record is None or record.is_revoked:
            return False
        if record.expires_at <= (now or utcnow()):
            return False
        return hmac.compare_digest(record.token_hash, hash_token(raw_token))

    # -- maintenance ------------------------------------------------------

    def sweep(self, now: datetime | None = None) -> tuple[int, int]:
        """Evict expired blacklist entries and prune dead refresh descriptors.

        Returns (blacklist_evicted, refresh_pruned).
        """
        now = now or utcnow()
        evicted = self.cache.evict_expired(now)
        pruned = self.store.prune_refresh_tokens(now)
        return evicted, pruned


def build_registry(store: UserStore, backend: str, max_entries: int = DEFAULT_MAX_ENTRIES) -> RevocationRegistry:
    """Pick the blacklist implementation named by REVOCATION_BACKEND."""
    if backend == "database":
        cache: RevocationCache = DatabaseRevocationCache(store.engine)
    else:
        cache = InMemoryRevocationCache(max_entries=max_entries)
    return RevocationRegistry(cache, store)
