"""
tests/conftest.py -- Shared test fixtures for Estate Auth.

This module provides:
  - _make_test_engine(): isolated named shared-memory SQLite engine per module
  - _seed(): test users, roles and permissions
  - _patch_lifespan(): wires test stores + gateway into app.state, bypassing real startup
  - api_client: TestClient with seeded accounts for API integration tests
  - harness: AuthGateway over the in-memory stores, with a controllable clock

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because route handlers call the stores from worker threads. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY and PASSWORD_PEPPER in dev mode rather than raising.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate secrets in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth import passwords
from auth.gateway import AuthGateway
from auth.memory import MemoryAuditStore, MemorySessionStore, MemoryUserStore
from auth.models import SecurityConfig, User
from auth.passwords import hash_password
from auth.permissions import AUDIT_LOGS_READ, SECURITY_CONFIG_READ, SECURITY_CONFIG_UPDATE
from auth.security_config import load_security_config
from auth.store import AuditStore, SecurityConfigStore, SessionStore, UserStore, open_engine
from core.config import get_settings

# Low bcrypt cost keeps the suite fast. Verification cost follows the stored hash.
passwords.BCRYPT_ROUNDS = 4

ADMIN = ("testadmin", "testpass123")
ALICE = ("alice", "Secret123!")
CAROL = ("carol", "carolpass123")
DAVE = ("dave", "davepass123")


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_engine(db_suffix: str):
    """Create an isolated named shared-memory SQLite engine.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. the module name).
    """
    return open_engine(f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true")


def _seed(users: UserStore, pepper: str) -> dict[str, str]:
    """Create the test accounts. Only testadmin holds any role.

    Returns a username -> user id map.
    """
    ids: dict[str, str] = {}
    for username, password in (ADMIN, ALICE, CAROL, DAVE):
        ids[username] = users.create_user(
            User(
                username=username,
                email=f"{username}@example.com",
                password_hash=hash_password(password, pepper),
            )
        )
    admin_role = users.create_role("admin", "Security administrators")
    for name in (SECURITY_CONFIG_READ, SECURITY_CONFIG_UPDATE, AUDIT_LOGS_READ):
        resource, action = name.split(":")
        perm = users.create_permission(name, resource, action)
        users.grant_permission(admin_role.id, perm.id)
    users.assign_role(ids[ADMIN[0]], admin_role.id)
    return ids


def _patch_lifespan(engine):
    """Return an async context manager that replaces the real lifespan.

    Wires test stores into app.state exactly as api.main.lifespan does, but
    against the test engine instead of DATABASE_URL.
    """
    settings = get_settings()

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.engine = engine
        app.state.user_store = UserStore(engine)
        app.state.session_store = SessionStore(engine)
        app.state.audit_store = AuditStore(engine)
        app.state.config_store = SecurityConfigStore(engine)
        app.state.gateway = AuthGateway(
            app.state.user_store,
            app.state.session_store,
            app.state.audit_store,
            secret_key=settings.secret_key,
            pepper=settings.password_pepper,
            config=load_security_config(settings, app.state.config_store),
            mfa_issuer=settings.mfa_issuer,
        )
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# API fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> None:
    """Rate-limit counters are process-wide; give every test a fresh window."""
    limiter.reset()


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, dict[str, str]], None, None]:
    """Yield (client, user_ids) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory database.
    """
    engine = _make_test_engine(request.module.__name__.rsplit(".", 1)[-1])
    ids = _seed(UserStore(engine), get_settings().password_pepper)

    app.router.lifespan_context = _patch_lifespan(engine)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, ids

    engine.dispose()


def login(client: TestClient, username: str, password: str, device: str | None = "device-1"):
    headers = {"X-Device-Fingerprint": device} if device else {}
    return client.post("/api/v1/auth/login", json={"username": username, "password": password}, headers=headers)


def auth_headers(access_token: str, device: str | None = "device-1") -> dict[str, str]:
    headers = {"Authorization": f"Bearer {access_token}"}
    if device:
        headers["X-Device-Fingerprint"] = device
    return headers


# ---------------------------------------------------------------------------
# Gateway fixtures -- in-memory stores, no HTTP
# ---------------------------------------------------------------------------

PEPPER = "pep"
SECRET = "test-secret-key-that-is-at-least-32-characters"


class FakeClock:
    """Settable clock injected into AuthGateway for lockout and expiry tests."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


@dataclass
class GatewayHarness:
    gateway: AuthGateway
    users: MemoryUserStore
    sessions: MemorySessionStore
    audit: MemoryAuditStore
    clock: FakeClock
    alice_id: str


def default_config(**overrides) -> SecurityConfig:
    values = dict(
        access_token_ttl=timedelta(minutes=15),
        refresh_token_ttl=timedelta(days=7),
        max_failed_attempts=5,
        lockout_duration=timedelta(minutes=15),
        rotate_refresh_tokens=True,
    )
    values.update(overrides)
    return SecurityConfig(**values)


def make_harness(config: SecurityConfig | None = None) -> GatewayHarness:
    users, sessions, audit = MemoryUserStore(), MemorySessionStore(), MemoryAuditStore()
    alice_id = users.create_user(
        User(username="alice", email="alice@example.com", password_hash=hash_password("Secret123!", PEPPER))
    )
    clock = FakeClock()
    gateway = AuthGateway(
        users,
        sessions,
        audit,
        secret_key=SECRET,
        pepper=PEPPER,
        config=config or default_config(),
        clock=clock,
    )
    return GatewayHarness(gateway, users, sessions, audit, clock, alice_id)


@pytest.fixture
def harness() -> GatewayHarness:
    return make_harness()
