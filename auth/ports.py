"""
auth/ports.py -- Capability contracts for the stores the gateway depends on.

The gateway only ever talks to these Protocols. auth/store.py provides the
SQLAlchemy implementations; auth/memory.py provides in-memory doubles for tests.
Any implementation must raise auth.errors.StoreUnavailable for backend failures
-- never return an empty/None result in place of an error.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from auth.models import AuditEvent, Permission, Role, Session, User


class CredentialStore(Protocol):
    def create_user(self, user: User) -> str: ...

    def get_by_username(self, username: str) -> User | None: ...

    def get_by_id(self, user_id: str) -> User | None: ...

    def update_failed_attempts(
        self,
        user_id: str,
        attempts: int,
        locked_until: datetime | None,
        expected_attempts: int | None = None,
    ) -> bool:
        """Persist new lockout counters.

        With expected_attempts set this is a compare-and-swap: the row is only
        written if its current failed_attempts equals expected_attempts.
        Returns True if a row was written.
        """
        ...

    def update_mfa_secret(self, user_id: str, secret: str | None) -> None: ...

    def get_permissions(self, user_id: str) -> list[Permission]: ...

    def create_role(self, name: str, description: str = "") -> Role: ...

    def create_permission(self, name: str, resource: str, action: str) -> Permission: ...

    def grant_permission(self, role_id: str, permission_id: str) -> None: ...

    def assign_role(self, user_id: str, role_id: str) -> None: ...


class SessionStore(Protocol):
    def create(self, session: Session) -> str: ...

    def get_by_jti(self, jti: str) -> Session | None:
        """Return the session for jti, revoked or not. None if no such row."""
        ...

    def list_by_user(self, user_id: str) -> list[Session]: ...

    def revoke_by_jti(self, jti: str) -> None:
        """Idempotent. Revoking an already-revoked or unknown session is not an error."""
        ...

    def revoke_by_user(self, user_id: str) -> int: ...

    def update_refresh_token(
        self,
        jti: str,
        new_hash: str,
        new_expiry: datetime,
        expected_hash: str | None = None,
    ) -> bool:
        """Rotate the stored refresh hash of a live session.

        With expected_hash set, only writes if the stored hash still equals it.
        Returns True if a row was written.
        """
        ...


class AuditSink(Protocol):
    def log_event(self, event: AuditEvent) -> str: ...

    def list_events(
        self,
        user_id: str | None = None,
        event_type: str | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]: ...


class SecurityConfigStore(Protocol):
    def get_value(self, key: str) -> str | None: ...

    def set_value(self, key: str, value: str) -> None: ...

    def list_values(self) -> dict[str, str]: ...
