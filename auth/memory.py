"""
auth/memory.py -- In-memory implementations of the auth store contracts.

Drop-in substitutes for the SQLAlchemy repositories in auth/store.py, used by
the gateway unit tests and handy for local experiments. Each store guards its
state with an RLock because the gateway calls stores from worker threads.

Semantics match the SQL stores: get_by_jti returns revoked sessions too,
revocation is idempotent, update_failed_attempts supports compare-and-swap,
duplicate usernames/jtis raise ConstraintViolation.

A store can be switched into a failing mode with fail_with(exc) to exercise
StoreUnavailable handling.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone

from auth.models import AuditEvent, Permission, Role, Session, User


class ConstraintViolation(Exception):
    """Raised when a uniqueness constraint would be violated."""


class _FailureSwitch:
    def __init__(self) -> None:
        self._failure: Exception | None = None

    def fail_with(self, exc: Exception | None) -> None:
        """Make every subsequent call raise exc. Pass None to restore normal behavior."""
        self._failure = exc

    def _check(self) -> None:
        if self._failure is not None:
            raise self._failure


class MemoryUserStore(_FailureSwitch):
    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self.users: dict[str, User] = {}
        self.roles: dict[str, Role] = {}
        self.permissions: dict[str, Permission] = {}
        self.user_roles: set[tuple[str, str]] = set()
        self.role_permissions: set[tuple[str, str]] = set()

    def create_user(self, user: User) -> str:
        self._check()
        with self._lock:
            if any(u.username == user.username for u in self.users.values()):
                raise ConstraintViolation(f"username {user.username!r} already exists")
            now = datetime.now(timezone.utc)
            stored = replace(user, id=user.id or str(uuid.uuid4()), created_at=now, updated_at=now)
            self.users[stored.id] = stored
            return stored.id

    def get_by_username(self, username: str) -> User | None:
        self._check()
        with self._lock:
            for user in self.users.values():
                if user.username == username:
                    return replace(user)
        return None

    def get_by_id(self, user_id: str) -> User | None:
        self._check()
        with self._lock:
            user = self.users.get(user_id)
            return replace(user) if user is not None else None

    def update_failed_attempts(
        self,
        user_id: str,
        attempts: int,
        locked_until: datetime | None,
        expected_attempts: int | None = None,
    ) -> bool:
        self._check()
        with self._lock:
            user = self.users.get(user_id)
            if user is None:
                return False
            if expected_attempts is not None and user.failed_attempts != expected_attempts:
                return False
            self.users[user_id] = replace(
                user,
                failed_attempts=attempts,
                locked_until=locked_until,
                updated_at=datetime.now(timezone.utc),
            )
            return True

    def update_mfa_secret(self, user_id: str, secret: str | None) -> None:
        self._check()
        with self._lock:
            user = self.users.get(user_id)
            if user is not None:
                self.users[user_id] = replace(user, mfa_secret=secret, updated_at=datetime.now(timezone.utc))

    def get_permissions(self, user_id: str) -> list[Permission]:
        self._check()
        with self._lock:
            role_ids = {rid for uid, rid in self.user_roles if uid == user_id}
            perm_ids = {pid for rid, pid in self.role_permissions if rid in role_ids}
            return [self.permissions[pid] for pid in perm_ids]

    def create_role(self, name: str, description: str = "") -> Role:
        self._check()
        with self._lock:
            role = Role(id=str(uuid.uuid4()), name=name, description=description)
            self.roles[role.id] = role
            return role

    def create_permission(self, name: str, resource: str, action: str) -> Permission:
        self._check()
        with self._lock:
            perm = Permission(id=str(uuid.uuid4()), name=name, resource=resource, action=action)
            self.permissions[perm.id] = perm
            return perm

    def grant_permission(self, role_id: str, permission_id: str) -> None:
        self._check()
        with self._lock:
            self.role_permissions.add((role_id, permission_id))

    def assign_role(self, user_id: str, role_id: str) -> None:
        self._check()
        with self._lock:
            self.user_roles.add((user_id, role_id))


class MemorySessionStore(_FailureSwitch):
    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self.sessions: dict[str, Session] = {}  # keyed by token_jti

    def create(self, session: Session) -> str:
        self._check()
        with self._lock:
            if session.token_jti in self.sessions:
                raise ConstraintViolation(f"jti {session.token_jti!r} already exists")
            stored = replace(
                session,
                id=session.id or str(uuid.uuid4()),
                created_at=session.created_at or datetime.now(timezone.utc),
            )
            self.sessions[stored.token_jti] = stored
            return stored.id

    def get_by_jti(self, jti: str) -> Session | None:
        self._check()
        with self._lock:
            session = self.sessions.get(jti)
            return replace(session) if session is not None else None

    def list_by_user(self, user_id: str) -> list[Session]:
        self._check()
        with self._lock:
            found = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(found, key=lambda s: s.created_at, reverse=True)

    def revoke_by_jti(self, jti: str) -> None:
        self._check()
        with self._lock:
            session = self.sessions.get(jti)
            if session is not None:
                self.sessions[jti] = replace(session, revoked=True)

    def revoke_by_user(self, user_id: str) -> int:
        self._check()
        count = 0
        with self._lock:
            for jti, session in list(self.sessions.items()):
                if session.user_id == user_id and not session.revoked:
                    self.sessions[jti] = replace(session, revoked=True)
                    count += 1
        return count

    def update_refresh_token(
        self,
        jti: str,
        new_hash: str,
        new_expiry: datetime,
        expected_hash: str | None = None,
    ) -> bool:
        self._check()
        with self._lock:
            session = self.sessions.get(jti)
            if session is None or session.revoked:
                return False
            if expected_hash is not None and session.refresh_token_hash != expected_hash:
                return False
            self.sessions[jti] = replace(session, refresh_token_hash=new_hash, expires_at=new_expiry)
            return True


class MemoryAuditStore(_FailureSwitch):
    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self.events: list[AuditEvent] = []

    def log_event(self, event: AuditEvent) -> str:
        self._check()
        with self._lock:
            stored = replace(event, id=event.id or str(uuid.uuid4()))
            self.events.append(stored)
            return stored.id

    def list_events(
        self,
        user_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        self._check()
        with self._lock:
            found = [
                e
                for e in reversed(self.events)
                if (user_id is None or e.user_id == user_id) and (event_type is None or e.event_type == event_type)
            ]
        return found[:limit]


class MemorySecurityConfigStore(_FailureSwitch):
    def __init__(self, values: dict[str, str] | None = None) -> None:
        super().__init__()
        self._lock = threading.RLock()
        self.values: dict[str, str] = dict(values or {})

    def get_value(self, key: str) -> str | None:
        self._check()
        with self._lock:
            return self.values.get(key)

    def set_value(self, key: str, value: str) -> None:
        self._check()
        with self._lock:
            self.values[key] = value

    def list_values(self) -> dict[str, str]:
        self._check()
        with self._lock:
            return dict(self.values)
