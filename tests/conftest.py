"""
tests/conftest.py -- Shared test fixtures for the auth scaffold.

This module provides:
  - FakeClock: a controllable clock injected into AuthService / TokenCodec
  - store / service / exchanger fixtures for unit tests (plain :memory: SQLite)
  - _patch_lifespan(): wires a test service into app.state, bypassing real startup
  - api_client: TestClient plus pre-created admin / user accounts and tokens

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
for the TestClient because it runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: Set env before any auth/core import so get_settings() can
# auto-generate SECRET_KEY and the rate limiter never trips during a run.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.exchange import MiniProgramExchanger
from auth.lockout import LockoutPolicy
from auth.models import AccountStatus, Role
from auth.passwords import PasswordHasher
from auth.service import AuthService
from auth.store import AccountStore
from auth.tokens import TokenCodec

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
TEST_ISSUER = "backend-api-scaffold"
TEST_AUDIENCE = "scaffold-client"

# Work factor 4 is the bcrypt minimum; keeps the suite fast.
FAST_HASHER = PasswordHasher(rounds=4)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_exchanger(session: MagicMock | None = None) -> MiniProgramExchanger:
    return MiniProgramExchanger(
        app_id="wx-test-app",
        app_secret="wx-test-secret",
        login_url="https://provider.test/sns/jscode2session",
        timeout=5,
        session=session or MagicMock(),
    )


def provider_reply(session: MagicMock, payload: dict) -> None:
    """Make the mocked session answer the next GET with payload."""
    response = MagicMock()
    response.raise_for_status.return_value = None
    response.json.return_value = payload
    session.get.return_value = response


def make_service(store, clock, exchanger=None, lockout: LockoutPolicy | None = None) -> AuthService:
    return AuthService(
        repository=store,
        hasher=FAST_HASHER,
        codec=TokenCodec(TEST_SECRET, issuer=TEST_ISSUER, audience=TEST_AUDIENCE, clock=clock),
        lockout=lockout or LockoutPolicy(),
        exchanger=exchanger,
        clock=clock,
    )


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def provider_session() -> MagicMock:
    return MagicMock()


@pytest.fixture
def exchanger(provider_session: MagicMock) -> MiniProgramExchanger:
    return make_exchanger(provider_session)


@pytest.fixture
def service(store: AccountStore, clock: FakeClock, exchanger: MiniProgramExchanger) -> AuthService:
    return make_service(store, clock, exchanger)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _make_test_store(db_suffix: str) -> AccountStore:
    """Create an isolated named shared-memory store for one test module."""
    return AccountStore(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(store: AccountStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = store
        app.state.auth_service = service
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[dict, None, None]:
    """Yield a dict with the client and pre-created accounts for API tests.

    Keys:
      client        -- TestClient against the real app with a patched lifespan
      session       -- MagicMock standing in for the provider HTTP session
      admin_id / admin_token           -- role admin, password "adminpass123"
      user_id / user_token             -- role user, username "apiuser", password "userpass123"
      super_id / super_token           -- role super_admin
    """
    store = _make_test_store(uuid.uuid4().hex[:8])
    session = MagicMock()
    service = make_service(store, FakeClock(), make_exchanger(session))

    admin = store.create(
        {
            "username": "apiadmin",
            "password_hash": FAST_HASHER.hash("adminpass123"),
            "role": Role.ADMIN,
            "status": AccountStatus.ACTIVE,
        }
    )
    user = store.create(
        {
            "username": "apiuser",
            "email": "apiuser@example.com",
            "password_hash": FAST_HASHER.hash("userpass123"),
            "role": Role.USER,
            "status": AccountStatus.ACTIVE,
        }
    )
    root = store.create(
        {
            "username": "apiroot",
            "password_hash": FAST_HASHER.hash("rootpass123"),
            "role": Role.SUPER_ADMIN,
            "status": AccountStatus.ACTIVE,
        }
    )

    app.router.lifespan_context = _patch_lifespan(store, service)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield {
            "client": client,
            "session": session,
            "admin_id": admin.id,
            "admin_token": service.codec.issue_pair(admin).access_token,
            "user_id": user.id,
            "user_token": service.codec.issue_pair(user).access_token,
            "super_id": root.id,
            "super_token": service.codec.issue_pair(root).access_token,
        }

    store.close()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
