"""
auth/lockout.py -- Account-lockout policy.

Counts failed password checks per credential record and suspends login for a
wall-clock window once the count reaches max_attempts. The transition itself
runs inside UserStore.increment_login_attempts() as one UPDATE; this class
decides the parameters and answers the read-side questions.

The lock is wall-clock based. The first failure after the window lapses
resets the counter to 1 instead of continuing from the stale count, so the
counter never grows across lock cycles.

clock is an attribute so tests can move time forward without sleeping.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from datetime import datetime, timedelta

from auth.models import User
from auth.store import UserStore, utcnow

logger = logging.getLogger("expense_tracker.auth")


class LockoutPolicy:
    def __init__(
        self,
        store: UserStore,
        max_attempts: int = 5,
        lockout_minutes: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_duration = timedelta(minutes=lockout_minutes)
        self.clock = clock

    def is_locked(self, user: User, now: datetime | None = None) -> bool:
        return user.lock_until is not None and user.lock_until > (now or self.clock())

    def minutes_remaining(self, user: User, now: datetime | None = None) -> int:
        """Whole minutes until the lock lifts, rounded up. 0 when not locked."""
        if not self.is_locked(user, now):
            return 0
        seconds = (user.lock_until - (now or self.clock())).total_seconds()
        return max(1, math.ceil(seconds / 60))

    def attempts_remaining(self, user: User) -> int:
        return max(0, self.max_attempts - user.login_attempts)

    def record_failure(self, user: User, now: datetime | None = None) -> User:
        """Count one failed password check and return the updated record."""
        now = now or self.clock()
        updated = self.store.increment_login_attempts(
            user.id,
            max_attempts=self.max_attempts,
            lock_until=now + self.lockout_duration,
            now=now,
        )
        if updated is None:
            return user
        if self.is_locked(updated, now) and not self.is_locked(user, now):
            logger.warning(
                "Account locked after %d failed attempts: user_id=%s until=%s",
                updated.login_attempts,
                updated.id,
                updated.lock_until.isoformat(),
            )
        return updated

    def record_success(self, user: User) -> None:
        self.store.reset_login_attempts(user.id)
