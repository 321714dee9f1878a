"""
tests/test_cli.py -- Tests for the estate-auth admin CLI (main.py).

The CLI opens and disposes its own engine per command. A named shared-memory
SQLite database only lives while a connection is open, so each test keeps one
connection on a second engine for the whole test and inspects state through
the regular stores.
"""

from __future__ import annotations

import io
import uuid
from datetime import datetime, timedelta, timezone

import pytest

import main as cli
from auth.models import Session
from auth.passwords import verify_password
from auth.store import AuditStore, SecurityConfigStore, SessionStore, UserStore, open_engine
from core.config import get_settings


@pytest.fixture
def engine(monkeypatch):
    url = f"sqlite:///file:test_cli_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    engine = open_engine(url)
    keeper = engine.connect()
    settings = get_settings().model_copy(update={"database_url": url})
    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    yield engine
    keeper.close()
    engine.dispose()


def _run(monkeypatch, *argv: str, stdin: str = "") -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO(stdin))
    cli.main(list(argv))


def test_seed_user_role_and_permission(engine, monkeypatch, capsys) -> None:
    _run(monkeypatch, "create-user", "alice", "alice@example.com", stdin="S3cret!pass\n")
    _run(monkeypatch, "create-role", "auditor", "--description", "Reads the audit trail")
    _run(monkeypatch, "create-permission", "audit_logs:read", "audit_logs", "read")
    _run(monkeypatch, "grant", "auditor", "audit_logs:read")
    _run(monkeypatch, "assign", "alice", "auditor")

    users = UserStore(engine)
    alice = users.get_by_username("alice")
    assert alice is not None
    assert alice.email == "alice@example.com"
    assert verify_password("S3cret!pass", get_settings().password_pepper, alice.password_hash)
    assert [p.name for p in users.get_permissions(alice.id)] == ["audit_logs:read"]
    out = capsys.readouterr().out
    assert "Created user alice" in out
    assert "Assigned auditor to alice" in out


def test_duplicate_user_exits_nonzero(engine, monkeypatch, capsys) -> None:
    _run(monkeypatch, "create-user", "alice", "alice@example.com", stdin="S3cret!pass\n")
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, "create-user", "alice", "other@example.com", stdin="S3cret!pass\n")
    assert exc.value.code == 1
    assert "Already exists." in capsys.readouterr().out


def test_grant_unknown_role_exits_nonzero(engine, monkeypatch) -> None:
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, "grant", "nobody", "audit_logs:read")
    assert exc.value.code == 1


def test_set_config_is_persisted_and_audited(engine, monkeypatch) -> None:
    _run(monkeypatch, "set-config", "MAX_FAILED_ATTEMPTS", "3")

    assert SecurityConfigStore(engine).get_value("MAX_FAILED_ATTEMPTS") == "3"
    [event] = AuditStore(engine).list_events(event_type="CONFIG_CHANGE")
    assert event.user_id is None
    assert event.action == "cli"
    assert event.resource == "security_config"
    assert event.old_values == {"MAX_FAILED_ATTEMPTS": 5}
    assert event.new_values == {"MAX_FAILED_ATTEMPTS": 3}


def test_invalid_config_is_rejected_without_audit(engine, monkeypatch) -> None:
    with pytest.raises(SystemExit) as exc:
        _run(monkeypatch, "set-config", "MAX_FAILED_ATTEMPTS", "0")
    assert exc.value.code == 1
    assert SecurityConfigStore(engine).get_value("MAX_FAILED_ATTEMPTS") is None
    assert AuditStore(engine).list_events(event_type="CONFIG_CHANGE") == []


def test_revoke_sessions_is_audited(engine, monkeypatch, capsys) -> None:
    _run(monkeypatch, "create-user", "alice", "alice@example.com", stdin="S3cret!pass\n")
    alice = UserStore(engine).get_by_username("alice")
    now = datetime.now(timezone.utc)
    sessions = SessionStore(engine)
    for jti in ("jti-a", "jti-b"):
        sessions.create(
            Session(
                user_id=alice.id,
                token_jti=jti,
                refresh_token_hash="a" * 64,
                device_id="laptop",
                expires_at=now + timedelta(days=7),
                created_at=now,
            )
        )

    _run(monkeypatch, "revoke-sessions", "alice")

    assert all(s.revoked for s in sessions.list_by_user(alice.id))
    [event] = AuditStore(engine).list_events(event_type="LOGOUT_ALL")
    assert event.user_id is None
    assert event.action == "cli"
    assert event.new_values == {"target_user_id": alice.id, "revoked_sessions": 2}
    assert "Revoked 2 session(s) for alice" in capsys.readouterr().out
