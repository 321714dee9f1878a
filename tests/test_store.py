"""
tests/test_store.py -- Unit tests for the SQLAlchemy repositories.

Each test gets a fresh in-memory SQLite engine. Tests run on one thread, so
plain sqlite:///:memory: is enough here (contrast conftest.py).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError

from auth.errors import StoreUnavailable
from auth.models import AuditEvent, Session, User
from auth.store import AuditStore, SecurityConfigStore, SessionStore, UserStore, open_engine

NOW = datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def engine():
    engine = open_engine("sqlite:///:memory:")
    yield engine
    engine.dispose()


@pytest.fixture
def users(engine) -> UserStore:
    return UserStore(engine)


@pytest.fixture
def sessions(engine) -> SessionStore:
    return SessionStore(engine)


def _make_session(user_id: str, jti: str, **overrides) -> Session:
    values = dict(
        user_id=user_id,
        token_jti=jti,
        refresh_token_hash="a" * 64,
        device_id="laptop",
        expires_at=NOW + timedelta(days=7),
        location_data={"ip": "203.0.113.7", "country": "NL", "extra": [1, 2]},
        user_agent="pytest",
        device_metadata={"os": "linux"},
        created_at=NOW,
    )
    values.update(overrides)
    return Session(**values)


class TestUserStore:
    def test_create_and_lookup(self, users: UserStore) -> None:
        uid = users.create_user(User(username="alice", email="alice@example.com", password_hash="h"))
        by_name = users.get_by_username("alice")
        by_id = users.get_by_id(uid)
        assert by_name is not None and by_id is not None
        assert by_name.id == by_id.id == uid
        assert by_name.failed_attempts == 0
        assert by_name.locked_until is None
        assert by_name.mfa_enabled is False
        assert by_name.created_at is not None and by_name.created_at.tzinfo is not None

    def test_unknown_user_is_none(self, users: UserStore) -> None:
        assert users.get_by_username("ghost") is None
        assert users.get_by_id("missing") is None

    def test_duplicate_username(self, users: UserStore) -> None:
        users.create_user(User(username="alice", email="a@example.com", password_hash="h"))
        with pytest.raises(IntegrityError):
            users.create_user(User(username="alice", email="b@example.com", password_hash="h"))

    def test_failed_attempts_compare_and_swap(self, users: UserStore) -> None:
        uid = users.create_user(User(username="alice", email="a@example.com", password_hash="h"))
        lock = NOW + timedelta(minutes=15)
        assert users.update_failed_attempts(uid, 1, None, expected_attempts=0) is True
        assert users.update_failed_attempts(uid, 1, None, expected_attempts=0) is False
        assert users.update_failed_attempts(uid, 2, lock, expected_attempts=1) is True
        user = users.get_by_id(uid)
        assert user.failed_attempts == 2
        assert user.locked_until == lock

    def test_unconditional_reset(self, users: UserStore) -> None:
        uid = users.create_user(User(username="alice", email="a@example.com", password_hash="h", failed_attempts=4))
        assert users.update_failed_attempts(uid, 0, None) is True
        assert users.get_by_id(uid).failed_attempts == 0

    def test_mfa_secret(self, users: UserStore) -> None:
        uid = users.create_user(User(username="alice", email="a@example.com", password_hash="h"))
        users.update_mfa_secret(uid, "JBSWY3DPEHPK3PXP")
        assert users.get_by_id(uid).mfa_enabled is True

    def test_permissions_distinct_across_roles(self, users: UserStore) -> None:
        uid = users.create_user(User(username="alice", email="a@example.com", password_hash="h"))
        assert users.get_permissions(uid) == []
        p1 = users.create_permission("audit_logs:read", "audit_logs", "read")
        p2 = users.create_permission("security_config:read", "security_config", "read")
        r1, r2 = users.create_role("auditor"), users.create_role("viewer")
        users.grant_permission(r1.id, p1.id)
        users.grant_permission(r1.id, p2.id)
        users.grant_permission(r2.id, p1.id)
        users.assign_role(uid, r1.id)
        users.assign_role(uid, r2.id)
        assert sorted(p.name for p in users.get_permissions(uid)) == ["audit_logs:read", "security_config:read"]
        assert users.get_role("auditor") == r1
        assert users.get_permission("audit_logs:read") == p1


class TestSessionStore:
    def test_round_trip_keeps_metadata_blobs(self, sessions: SessionStore) -> None:
        sessions.create(_make_session("u1", "jti-1"))
        stored = sessions.get_by_jti("jti-1")
        assert stored is not None
        assert stored.location_data == {"ip": "203.0.113.7", "country": "NL", "extra": [1, 2]}
        assert stored.metadata.ip == "203.0.113.7"
        assert stored.metadata.os == "linux"
        assert stored.metadata.city is None
        assert stored.expires_at == NOW + timedelta(days=7)
        assert stored.is_active(NOW)

    def test_duplicate_jti(self, sessions: SessionStore) -> None:
        sessions.create(_make_session("u1", "jti-1"))
        with pytest.raises(IntegrityError):
            sessions.create(_make_session("u1", "jti-1"))

    def test_revoke_is_idempotent_and_visible(self, sessions: SessionStore) -> None:
        sessions.create(_make_session("u1", "jti-1"))
        sessions.revoke_by_jti("jti-1")
        sessions.revoke_by_jti("jti-1")
        sessions.revoke_by_jti("never-existed")
        stored = sessions.get_by_jti("jti-1")
        assert stored.revoked is True
        assert not stored.is_active(NOW)

    def test_revoke_by_user_counts_live_sessions(self, sessions: SessionStore) -> None:
        sessions.create(_make_session("u1", "a"))
        sessions.create(_make_session("u1", "b"))
        sessions.create(_make_session("u2", "c"))
        sessions.revoke_by_jti("a")
        assert sessions.revoke_by_user("u1") == 1
        assert sessions.revoke_by_user("u1") == 0
        assert sessions.get_by_jti("c").revoked is False

    def test_list_by_user_newest_first(self, sessions: SessionStore) -> None:
        sessions.create(_make_session("u1", "old", created_at=NOW - timedelta(hours=1)))
        sessions.create(_make_session("u1", "new", created_at=NOW))
        assert [s.token_jti for s in sessions.list_by_user("u1")] == ["new", "old"]

    def test_refresh_rotation_compare_and_swap(self, sessions: SessionStore) -> None:
        sessions.create(_make_session("u1", "jti-1"))
        expiry = NOW + timedelta(days=7)
        assert sessions.update_refresh_token("jti-1", "b" * 64, expiry, expected_hash="a" * 64) is True
        assert sessions.update_refresh_token("jti-1", "c" * 64, expiry, expected_hash="a" * 64) is False
        assert sessions.get_by_jti("jti-1").refresh_token_hash == "b" * 64

    def test_rotation_skips_revoked_session(self, sessions: SessionStore) -> None:
        sessions.create(_make_session("u1", "jti-1"))
        sessions.revoke_by_jti("jti-1")
        assert sessions.update_refresh_token("jti-1", "b" * 64, NOW + timedelta(days=1)) is False

    def test_backend_failure_is_store_unavailable(self, engine, sessions: SessionStore) -> None:
        with engine.connect() as conn:
            conn.execute(text("DROP TABLE user_sessions"))
            conn.commit()
        with pytest.raises(StoreUnavailable):
            sessions.get_by_jti("jti-1")


class TestAuditAndConfigStores:
    def test_audit_filters_and_orders(self, engine) -> None:
        audit = AuditStore(engine)
        for i, kind in enumerate(["LOGIN_FAILURE", "LOGIN_SUCCESS", "LOGOUT"]):
            audit.log_event(
                AuditEvent(
                    event_type=kind,
                    resource="auth",
                    action="login",
                    timestamp=NOW + timedelta(seconds=i),
                    user_id="u1",
                    new_values={"n": i},
                )
            )
        audit.log_event(AuditEvent(event_type="LOGIN_FAILURE", resource="auth", action="login", timestamp=NOW))

        events = audit.list_events(user_id="u1")
        assert [e.event_type for e in events] == ["LOGOUT", "LOGIN_SUCCESS", "LOGIN_FAILURE"]
        assert events[0].new_values == {"n": 2}
        assert len(audit.list_events(event_type="LOGIN_FAILURE")) == 2
        assert len(audit.list_events(limit=1)) == 1

    def test_config_upsert(self, engine) -> None:
        store = SecurityConfigStore(engine)
        assert store.get_value("MAX_FAILED_ATTEMPTS") is None
        store.set_value("MAX_FAILED_ATTEMPTS", "3")
        store.set_value("MAX_FAILED_ATTEMPTS", "4")
        assert store.get_value("MAX_FAILED_ATTEMPTS") == "4"
        assert store.list_values() == {"MAX_FAILED_ATTEMPTS": "4"}
