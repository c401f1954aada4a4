"""
tests/conftest.py -- Shared test fixtures for Gruff tests.

This module provides:
  - FakeClock: a settable clock for KV/session expiry tests
  - clock, kv, sessions: unit-level fixtures on an in-memory KV store
  - _patch_lifespan(): wires test collaborators into app.state, bypassing
    real startup
  - api_client: TestClient plus the id of a pre-created admin account
    (admin@example.com / adminpass123)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the user store because TestClient runs sync route handlers in a thread
pool. Plain :memory: DBs are per-connection and would present a blank schema
to each worker thread.

DEBUG must be set before any api/core import so get_settings() auto-generates
JWT_SECRET in dev mode rather than raising ValueError. The login rate limit is
raised so the suite's repeated logins never trip it.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.hashing import hash_password
from auth.models import User
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import TokenConfig
from kv.store import MemoryKV

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters-long"
ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "adminpass123"


class FakeClock:
    """Callable clock returning a settable epoch-seconds value."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv(clock: FakeClock) -> MemoryKV:
    return MemoryKV(clock=clock)


@pytest.fixture
def sessions(kv: MemoryKV, clock: FakeClock) -> SessionStore:
    return SessionStore(kv, refresh_ttl=3600, clock=clock)


# ---------------------------------------------------------------------------
# App fixtures
# ---------------------------------------------------------------------------


def _make_user_store() -> UserStore:
    """Create an isolated named shared-memory SQLite user store."""
    return UserStore(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(user_store: UserStore, kv: MemoryKV, secret: str | None = TEST_SECRET):
    """Return an async context manager that replaces the real lifespan.

    Wires test collaborators into app.state so routes see isolated stores
    and a known signing secret.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.jwt_secret = secret
        app.state.access_cookie_name = "gruff_access_token"
        app.state.token_config = TokenConfig(access_ttl=900, refresh_ttl=3600)
        app.state.kv = kv
        app.state.session_store = SessionStore(kv, refresh_ttl=3600)
        app.state.user_store = user_store
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str], None, None]:
    """Yield (client, admin_user_id) for API integration tests.

    The admin account is created directly in the store before the client
    starts; tests log in through the API to get tokens.
    """
    user_store = _make_user_store()
    admin_id = user_store.create_user(
        User(email=ADMIN_EMAIL, password_hash=hash_password(ADMIN_PASSWORD), is_admin=True)
    )
    kv = MemoryKV()

    app.router.lifespan_context = _patch_lifespan(user_store, kv)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, admin_id

    user_store.close()


@pytest.fixture
def empty_api_client() -> Generator[TestClient, None, None]:
    """TestClient over a user store with no accounts (fresh install)."""
    user_store = _make_user_store()
    app.router.lifespan_context = _patch_lifespan(user_store, MemoryKV())

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    user_store.close()


@pytest.fixture
def unconfigured_client() -> Generator[TestClient, None, None]:
    """TestClient whose app.state carries no signing secret."""
    user_store = _make_user_store()
    app.router.lifespan_context = _patch_lifespan(user_store, MemoryKV(), secret=None)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    user_store.close()
