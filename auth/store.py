"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore, SessionStore, AuditStore and
SecurityConfigStore are the repositories (one per collaborator contract in
auth/ports.py); the _row_to_* functions are the mappers. The gateway never
touches SQL directly.

All four repositories share one Engine built by open_engine(), so they live in
the same database and the same connection pool.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Failed-attempt updates support compare-and-swap (expected_attempts) so two
  concurrent failed logins cannot both read N and both write N+1.

  Session revocation is a plain UPDATE ... SET revoked = 1. Running it twice,
  or concurrently, is harmless.

Error translation:
  Any SQLAlchemyError other than IntegrityError is re-raised as
  StoreUnavailable. IntegrityError propagates unchanged so callers can turn a
  duplicate username into a 409.

Timestamps are stored as ISO 8601 UTC text, the same representation the rest
of the codebase logs and returns.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import StoreUnavailable
from auth.models import AuditEvent, Permission, Role, Session, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("mfa_secret", Text),  # NULL until MFA enrollment
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
    Column("created_at", String(32), nullable=False),
)

_permissions = Table(
    "permissions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("resource", String(100), nullable=False),
    Column("action", String(50), nullable=False),
    Column("created_at", String(32), nullable=False),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("user_id", String(36), ForeignKey("users.id"), primary_key=True),
    Column("role_id", String(36), ForeignKey("roles.id"), primary_key=True),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_id", String(36), ForeignKey("roles.id"), primary_key=True),
    Column("permission_id", String(36), ForeignKey("permissions.id"), primary_key=True),
)

_sessions = Table(
    "user_sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    Column("token_jti", String(36), nullable=False, unique=True),
    Column("refresh_token_hash", String(64), nullable=False),  # SHA-256 hex, never the raw token
    Column("device_id", String(255), nullable=False),
    Column("location_data", Text),  # JSON blob
    Column("user_agent", Text),
    Column("device_metadata", Text),  # JSON blob
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked", Integer, nullable=False, server_default="0"),
)

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("event_type", String(50), nullable=False, index=True),
    Column("user_id", String(36), index=True),  # NULL for unknown-user failures
    Column("resource", String(100), nullable=False),
    Column("action", String(100), nullable=False),
    Column("old_values", Text),  # JSON snapshot
    Column("new_values", Text),  # JSON snapshot
    Column("ip_address", String(64)),
    Column("user_agent", Text),
    Column("timestamp", String(32), nullable=False),
)

_security_config = Table(
    "security_config",
    _metadata,
    Column("key", String(64), primary_key=True),
    Column("value", Text, nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def open_engine(db_url: str) -> Engine:
    """Create the shared Engine and make sure every auth table exists."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    _metadata.create_all(engine)
    return engine


@contextmanager
def _connection(engine: Engine) -> Iterator[Connection]:
    try:
        with engine.connect() as conn:
            yield conn
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        raise StoreUnavailable() from exc


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _dump(blob: dict[str, Any] | None) -> str | None:
    return json.dumps(blob, default=str) if blob is not None else None


def _load(raw: str | None) -> dict[str, Any] | None:
    if not raw:
        return None
    value = json.loads(raw)
    return value if isinstance(value, dict) else None


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users and their role/permission links (CredentialStore).

    Usage:
        engine = open_engine("sqlite:///estateauth.db")
        users = UserStore(engine)
        user_id = users.create_user(User(username="alice", email="a@x", password_hash=h))
        perms = users.get_permissions(user_id)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        user_id = user.id or _new_id()
        now = _now_iso()
        with _connection(self.engine) as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    mfa_secret=user.mfa_secret,
                    failed_attempts=user.failed_attempts,
                    locked_until=_to_iso(user.locked_until),
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return user_id

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with _connection(self.engine) as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with _connection(self.engine) as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def update_failed_attempts(
        self,
        user_id: str,
        attempts: int,
        locked_until: datetime | None,
        expected_attempts: int | None = None,
    ) -> bool:
        """Write failed_attempts/locked_until. Compare-and-swap when expected_attempts is given.

        The WHERE clause carries the expected value, so the check and the write
        are one atomic statement. Returns False if the row changed underneath
        us (or does not exist); the caller re-reads and retries.
        """
        stmt = _users.update().where(_users.c.id == user_id)
        if expected_attempts is not None:
            stmt = stmt.where(_users.c.failed_attempts == expected_attempts)
        stmt = stmt.values(
            failed_attempts=attempts,
            locked_until=_to_iso(locked_until),
            updated_at=_now_iso(),
        )
        with _connection(self.engine) as conn:
            result = conn.execute(stmt)
            conn.commit()
        return result.rowcount > 0

    def update_mfa_secret(self, user_id: str, secret: str | None) -> None:
        with _connection(self.engine) as conn:
            conn.execute(
                _users.update().where(_users.c.id == user_id).values(mfa_secret=secret, updated_at=_now_iso())
            )
            conn.commit()

    # ------------------------------------------------------------------
    # RBAC
    # ------------------------------------------------------------------

    def get_permissions(self, user_id: str) -> list[Permission]:
        """Return the user's effective permissions via user -> role -> permission.

        DISTINCT removes duplicates when two roles grant the same permission.
        A user with no roles gets an empty list, not an error.
        """
        query = (
            select(_permissions.c.id, _permissions.c.name, _permissions.c.resource, _permissions.c.action)
            .distinct()
            .select_from(
                _permissions.join(_role_permissions, _role_permissions.c.permission_id == _permissions.c.id)
                .join(_roles, _roles.c.id == _role_permissions.c.role_id)
                .join(_user_roles, _user_roles.c.role_id == _roles.c.id)
            )
            .where(_user_roles.c.user_id == user_id)
        )
        with _connection(self.engine) as conn:
            rows = conn.execute(query).fetchall()
        return [Permission(id=r.id, name=r.name, resource=r.resource, action=r.action) for r in rows]

    def create_role(self, name: str, description: str = "") -> Role:
        role = Role(id=_new_id(), name=name, description=description)
        with _connection(self.engine) as conn:
            conn.execute(
                _roles.insert().values(id=role.id, name=name, description=description, created_at=_now_iso())
            )
            conn.commit()
        return role

    def get_role(self, name: str) -> Role | None:
        with _connection(self.engine) as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return Role(id=row.id, name=row.name, description=row.description) if row is not None else None

    def create_permission(self, name: str, resource: str, action: str) -> Permission:
        perm = Permission(id=_new_id(), name=name, resource=resource, action=action)
        with _connection(self.engine) as conn:
            conn.execute(
                _permissions.insert().values(
                    id=perm.id, name=name, resource=resource, action=action, created_at=_now_iso()
                )
            )
            conn.commit()
        return perm

    def get_permission(self, name: str) -> Permission | None:
        with _connection(self.engine) as conn:
            row = conn.execute(_permissions.select().where(_permissions.c.name == name)).fetchone()
        if row is None:
            return None
        return Permission(id=row.id, name=row.name, resource=row.resource, action=row.action)

    def grant_permission(self, role_id: str, permission_id: str) -> None:
        with _connection(self.engine) as conn:
            conn.execute(_role_permissions.insert().values(role_id=role_id, permission_id=permission_id))
            conn.commit()

    def assign_role(self, user_id: str, role_id: str) -> None:
        with _connection(self.engine) as conn:
            conn.execute(_user_roles.insert().values(user_id=user_id, role_id=role_id))
            conn.commit()


class SessionStore:
    """Repository for user_sessions. One row per successful login, keyed by token_jti."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create(self, session: Session) -> str:
        """Insert the session and return its id. Raises IntegrityError on a duplicate jti."""
        session_id = session.id or _new_id()
        created_at = session.created_at or datetime.now(timezone.utc)
        with _connection(self.engine) as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session_id,
                    user_id=session.user_id,
                    token_jti=session.token_jti,
                    refresh_token_hash=session.refresh_token_hash,
                    device_id=session.device_id,
                    location_data=_dump(session.location_data),
                    user_agent=session.user_agent,
                    device_metadata=_dump(session.device_metadata),
                    created_at=_to_iso(created_at),
                    expires_at=_to_iso(session.expires_at),
                    revoked=1 if session.revoked else 0,
                )
            )
            conn.commit()
        return session_id

    def get_by_jti(self, jti: str) -> Session | None:
        """Return the session for jti including revoked ones; the caller decides."""
        with _connection(self.engine) as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_jti == jti)).fetchone()
        return _row_to_session(row) if row is not None else None

    def list_by_user(self, user_id: str) -> list[Session]:
        with _connection(self.engine) as conn:
            rows = conn.execute(
                _sessions.select().where(_sessions.c.user_id == user_id).order_by(_sessions.c.created_at.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def revoke_by_jti(self, jti: str) -> None:
        with _connection(self.engine) as conn:
            conn.execute(_sessions.update().where(_sessions.c.token_jti == jti).values(revoked=1))
            conn.commit()

    def revoke_by_user(self, user_id: str) -> int:
        """Revoke every live session of a user. Returns how many rows flipped."""
        with _connection(self.engine) as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.user_id == user_id) & (_sessions.c.revoked == 0))
                .values(revoked=1)
            )
            conn.commit()
        return result.rowcount

    def update_refresh_token(
        self,
        jti: str,
        new_hash: str,
        new_expiry: datetime,
        expected_hash: str | None = None,
    ) -> bool:
        """Replace the stored refresh hash (rotation). Revoked sessions are left untouched.

        expected_hash turns this into a compare-and-swap: two refreshes racing
        with the same refresh token cannot both rotate it.
        """
        stmt = _sessions.update().where((_sessions.c.token_jti == jti) & (_sessions.c.revoked == 0))
        if expected_hash is not None:
            stmt = stmt.where(_sessions.c.refresh_token_hash == expected_hash)
        with _connection(self.engine) as conn:
            result = conn.execute(stmt.values(refresh_token_hash=new_hash, expires_at=_to_iso(new_expiry)))
            conn.commit()
        return result.rowcount > 0


class AuditStore:
    """Append-only repository for audit_logs (AuditSink). There is no update or delete."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def log_event(self, event: AuditEvent) -> str:
        event_id = event.id or _new_id()
        with _connection(self.engine) as conn:
            conn.execute(
                _audit_logs.insert().values(
                    id=event_id,
                    event_type=event.event_type,
                    user_id=event.user_id,
                    resource=event.resource,
                    action=event.action,
                    old_values=_dump(event.old_values),
                    new_values=_dump(event.new_values),
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    timestamp=_to_iso(event.timestamp),
                )
            )
            conn.commit()
        return event_id

    def list_events(
        self,
        user_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Return events newest first, optionally filtered by user and/or type."""
        query = _audit_logs.select()
        if user_id is not None:
            query = query.where(_audit_logs.c.user_id == user_id)
        if event_type is not None:
            query = query.where(_audit_logs.c.event_type == event_type)
        query = query.order_by(_audit_logs.c.timestamp.desc()).limit(limit)
        with _connection(self.engine) as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_audit_event(r) for r in rows]


class SecurityConfigStore:
    """Key/value repository for runtime security tunables.

    Keys are validated by auth.security_config before they get here; this
    layer stores whatever string it is given.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_value(self, key: str) -> str | None:
        with _connection(self.engine) as conn:
            row = conn.execute(
                select(_security_config.c.value).where(_security_config.c.key == key)
            ).fetchone()
        return row.value if row is not None else None

    def set_value(self, key: str, value: str) -> None:
        """Upsert a key. UPDATE first, INSERT if nothing was updated."""
        with _connection(self.engine) as conn:
            result = conn.execute(
                _security_config.update()
                .where(_security_config.c.key == key)
                .values(value=value, updated_at=_now_iso())
            )
            if result.rowcount == 0:
                conn.execute(_security_config.insert().values(key=key, value=value, updated_at=_now_iso()))
            conn.commit()

    def list_values(self) -> dict[str, str]:
        with _connection(self.engine) as conn:
            rows = conn.execute(select(_security_config.c.key, _security_config.c.value)).fetchall()
        return {r.key: r.value for r in rows}


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        mfa_secret=row.mfa_secret,
        failed_attempts=row.failed_attempts or 0,
        locked_until=_from_iso(row.locked_until),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        token_jti=row.token_jti,
        refresh_token_hash=row.refresh_token_hash,
        device_id=row.device_id,
        location_data=_load(row.location_data) or {},
        user_agent=row.user_agent or "",
        device_metadata=_load(row.device_metadata) or {},
        created_at=_from_iso(row.created_at),
        expires_at=_from_iso(row.expires_at),
        revoked=bool(row.revoked),
    )


def _row_to_audit_event(row) -> AuditEvent:
    return AuditEvent(
        id=row.id,
        event_type=row.event_type,
        user_id=row.user_id,
        resource=row.resource,
        action=row.action,
        old_values=_load(row.old_values),
        new_values=_load(row.new_values),
        ip_address=row.ip_address or "",
        user_agent=row.user_agent or "",
        timestamp=_from_iso(row.timestamp),
    )
