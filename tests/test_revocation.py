"""Unit tests for auth/revocation.py and auth/sessions.py.

Covers:
- InMemoryRevocationCache: membership, bounded size keeps newest half, expiry eviction
- DatabaseRevocationCache: membership by hash, duplicate puts, expiry eviction
- RevocationRegistry.is_refresh_active(): revoked, expired, foreign and mismatched tokens
- issue_session() / rotate_refresh(): descriptor persisted, old token dead after rotation
- rotate_refresh(): two concurrent rotations of one token yield exactly one new pair
- sweep(): clears both the blacklist and dead refresh descriptors
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import AuthenticationError
from auth.models import User
from auth.revocation import DatabaseRevocationCache, InMemoryRevocationCache, RevocationRegistry, build_registry
from auth.sessions import device_fingerprint, issue_session, rotate_refresh
from auth.store import UserStore, utcnow
from auth.tokens import REFRESH, decode_token, hash_password, issue_refresh_token

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def alice(store) -> User:
    uid = store.create_user(
        User(full_name="Alice", email="alice@example.com", hashed_password=hash_password("Passw0rd!"))
    )
    return store.get_by_id(uid)


# ---------------------------------------------------------------------------
# Blacklist caches
# ---------------------------------------------------------------------------


class TestInMemoryRevocationCache:
    def test_put_and_contains(self) -> None:
        cache = InMemoryRevocationCache(max_entries=10)
        cache.put("tok-a", T0 + timedelta(hours=1))
        assert cache.contains("tok-a")
        assert not cache.contains("tok-b")

    def test_overflow_keeps_newest_half(self) -> None:
        cache = InMemoryRevocationCache(max_entries=10)
        for i in range(11):
            cache.put(f"tok-{i}", T0 + timedelta(hours=1))
        assert len(cache) == 5
        assert cache.contains("tok-10")
        assert cache.contains("tok-6")
        assert not cache.contains("tok-5")

    def test_evict_expired(self) -> None:
        cache = InMemoryRevocationCache()
        cache.put("old", T0)
        cache.put("new", T0 + timedelta(hours=2))
        assert cache.evict_expired(T0 + timedelta(hours=1)) == 1
        assert not cache.contains("old")
        assert cache.contains("new")


class TestDatabaseRevocationCache:
    def test_put_contains_and_duplicate(self, store) -> None:
        cache = DatabaseRevocationCache(store.engine)
        cache.put("tok-a", T0 + timedelta(hours=1))
        cache.put("tok-a", T0 + timedelta(hours=1))
        assert cache.contains("tok-a")
        assert not cache.contains("tok-b")
        assert len(cache) == 1

    def test_evict_expired(self, store) -> None:
        cache = DatabaseRevocationCache(store.engine)
        cache.put("old", T0)
        cache.put("new", T0 + timedelta(hours=2))
        assert cache.evict_expired(T0 + timedelta(hours=1)) == 1
        assert not cache.contains("old")
        assert cache.contains("new")

    def test_build_registry_picks_backend(self, store) -> None:
        assert isinstance(build_registry(store, "database").cache, DatabaseRevocationCache)
        assert isinstance(build_registry(store, "memory", max_entries=50).cache, InMemoryRevocationCache)


# ---------------------------------------------------------------------------
# Refresh descriptors and rotation
# ---------------------------------------------------------------------------


class TestRefreshLifecycle:
    def test_issue_session_persists_descriptor(self, store, alice: User) -> None:
        pair = issue_session(store, alice, "10.0.0.1", "pytest-agent")
        records = store.list_refresh_tokens(alice.id)
        assert len(records) == 1
        assert records[0].device_info == "pytest-agent - 10.0.0.1"
        assert records[0].jti == decode_token(pair.refresh_token, REFRESH)["jti"]
        assert pair.expires_in == 3600

    def test_rotate_revokes_presented_token(self, store, registry: RevocationRegistry, alice: User) -> None:
        pair = issue_session(store, alice, "10.0.0.1", "ua")
        new_pair, user = rotate_refresh(store, registry, pair.refresh_token, "10.0.0.1", "ua")
        assert user.id == alice.id
        assert new_pair.refresh_token != pair.refresh_token

        with pytest.raises(AuthenticationError) as exc_info:
            rotate_refresh(store, registry, pair.refresh_token, "10.0.0.1", "ua")
        assert exc_info.value.message == "Refresh token revoked or expired"

    def test_concurrent_rotation_of_one_token_succeeds_once(self, tmp_path, alice: User) -> None:
        # File-backed so two threads get real connections and SQLite's busy wait.
        store = UserStore(db_url=f"sqlite:///{tmp_path / 'auth.db'}")
        try:
            uid = store.create_user(
                User(full_name="Alice", email="alice@example.com", hashed_password=alice.hashed_password)
            )
            owner = store.get_by_id(uid)
            registry = RevocationRegistry(InMemoryRevocationCache(max_entries=100), store)
            pair = issue_session(store, owner, "10.0.0.1", "ua")

            # Both threads pass the descriptor check before either revokes.
            barrier = threading.Barrier(2, timeout=5)
            check = registry.is_refresh_active

            def check_then_wait(*args, **kwargs):
                active = check(*args, **kwargs)
                barrier.wait()
                return active

            registry.is_refresh_active = check_then_wait
            outcomes: list[str] = []

            def rotate() -> None:
                try:
                    rotate_refresh(store, registry, pair.refresh_token, "10.0.0.1", "ua")
                    outcomes.append("ok")
                except AuthenticationError:
                    outcomes.append("rejected")

            threads = [threading.Thread(target=rotate) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=10)

            assert sorted(outcomes) == ["ok", "rejected"]
            assert store.count_active_refresh_tokens(owner.id, utcnow()) == 1
        finally:
            store.close()

    def test_signed_token_without_descriptor_is_rejected(self, store, registry, alice: User) -> None:
        token, _ = issue_refresh_token(alice)
        with pytest.raises(AuthenticationError):
            rotate_refresh(store, registry, token, "10.0.0.1", "ua")

    def test_is_refresh_active_checks_owner_and_hash(self, store, registry, alice: User) -> None:
        bob_id = store.create_user(User(full_name="Bob", email="bob@example.com", hashed_password="x"))
        bob = store.get_by_id(bob_id)
        pair = issue_session(store, alice, "10.0.0.1", "ua")
        jti = decode_token(pair.refresh_token, REFRESH)["jti"]

        assert registry.is_refresh_active(jti, alice, pair.refresh_token)
        assert not registry.is_refresh_active(jti, bob, pair.refresh_token)
        assert not registry.is_refresh_active(jti, alice, pair.refresh_token + "x")
        assert not registry.is_refresh_active(jti, alice, pair.refresh_token, now=utcnow() + timedelta(days=8))

    def test_revoke_all(self, store, registry, alice: User) -> None:
        for _ in range(3):
            issue_session(store, alice, "10.0.0.1", "ua")
        assert registry.revoke_all_refresh(alice.id) == 3
        assert store.count_active_refresh_tokens(alice.id) == 0

    def test_sweep_clears_blacklist_and_dead_descriptors(self, store, registry, alice: User) -> None:
        now = utcnow()
        registry.blacklist("expired-access", now - timedelta(minutes=1))
        registry.blacklist("live-access", now + timedelta(minutes=30))
        live = issue_session(store, alice, "10.0.0.1", "ua")
        dead = issue_session(store, alice, "10.0.0.1", "ua")
        registry.revoke_refresh(alice.id, decode_token(dead.refresh_token, REFRESH)["jti"])

        evicted, pruned = registry.sweep(now)
        assert (evicted, pruned) == (1, 1)
        assert registry.is_blacklisted("live-access")
        assert not registry.is_blacklisted("expired-access")
        remaining = store.list_refresh_tokens(alice.id)
        assert [r.jti for r in remaining] == [decode_token(live.refresh_token, REFRESH)["jti"]]


def test_device_fingerprint_is_short_and_stable() -> None:
    fp = device_fingerprint("10.0.0.1", "ua")
    assert fp == device_fingerprint("10.0.0.1", "ua")
    assert fp != device_fingerprint("10.0.0.2", "ua")
    assert len(fp) == 16
