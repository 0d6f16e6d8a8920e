"""
tests/conftest.py -- Shared test fixtures for the auth service tests.

This module provides:
  - make_store(): creates an isolated in-memory credential DB
  - _patch_lifespan(): wires test components into app.state, bypassing real startup
  - store / registry / lockout: unit-level fixtures over a fresh DB
  - client: TestClient over the real app with a fresh DB per test
  - register_user(): helper that registers through the HTTP surface

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The signing secrets must be set before any auth/core import because
get_settings() refuses to build Settings without them.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any auth/core import -- get_settings() is cached on first call.
os.environ.setdefault("JWT_SECRET", "test-access-secret-0123456789abcdef0123")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-0123456789abcdef012")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver"]')
os.environ.setdefault("REVOCATION_BACKEND", "memory")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.lockout import LockoutPolicy
from auth.revocation import InMemoryRevocationCache, RevocationRegistry
from auth.store import UserStore

PASSWORD = "Passw0rd!"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_store() -> UserStore:
    """Create a UserStore over a uniquely named shared-memory SQLite DB."""
    name = f"test_auth_{uuid.uuid4().hex}"
    return UserStore(db_url=f"sqlite:///file:{name}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(user_store: UserStore, registry: RevocationRegistry, lockout: LockoutPolicy):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.revocation = registry
        app.state.lockout = lockout
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    user_store = make_store()
    yield user_store
    user_store.close()


@pytest.fixture
def registry(store: UserStore) -> RevocationRegistry:
    return RevocationRegistry(InMemoryRevocationCache(max_entries=100), store)


@pytest.fixture
def lockout(store: UserStore) -> LockoutPolicy:
    return LockoutPolicy(store, max_attempts=5, lockout_minutes=30)


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def client(
    store: UserStore, registry: RevocationRegistry, lockout: LockoutPolicy
) -> Generator[TestClient, None, None]:
    """TestClient over the real app, wired to this test's fresh components.

    Tests that need to move time reach the lockout policy through
    client.app.state.lockout and replace its clock.
    """
    app.router.lifespan_context = _patch_lifespan(store, registry, lockout)
    with TestClient(app, raise_server_exceptions=True) as test_client:
        yield test_client


def register_user(
    client: TestClient,
    email: str = "alice@example.com",
    password: str = PASSWORD,
    full_name: str = "Alice Example",
) -> dict:
    """Register through POST /auth/register and return the response data."""
    resp = client.post(
        "/api/v1/auth/register",
        json={"fullName": full_name, "email": email, "password": password},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
