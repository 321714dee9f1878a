"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and the
gateway do the work; these own the domain shape.

Identifiers are UUID4 strings. Timestamps are timezone-aware UTC datetimes;
the SQL stores convert to ISO 8601 text at the boundary.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any


@dataclass
class User:
    """An account that can log in.

    mfa_secret is None until the user enrolls in MFA. failed_attempts and
    locked_until are only ever written through the login path (see
    auth.lockout). password_hash is never serialized to API responses.
    """

    username: str
    email: str
    password_hash: str
    id: str | None = None
    mfa_secret: str | None = None
    failed_attempts: int = 0
    locked_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def mfa_enabled(self) -> bool:
        return bool(self.mfa_secret)


@dataclass(frozen=True)
class Role:
    id: str
    name: str
    description: str = ""


@dataclass(frozen=True)
class Permission:
    """A named capability, e.g. "audit_logs:read". Frozen so it can live in a frozenset."""

    id: str
    name: str
    resource: str
    action: str


@dataclass
class Session:
    """Server-side record of one issued token pair.

    A session is the sole evidence that a bearer token is still honored.
    refresh_token_hash is SHA-256 of the current refresh token -- the raw token
    is never persisted. revoked only ever goes False -> True.
    """

    user_id: str
    token_jti: str
    refresh_token_hash: str
    device_id: str
    expires_at: datetime
    location_data: dict[str, Any] = field(default_factory=dict)
    user_agent: str = ""
    device_metadata: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    created_at: datetime | None = None
    revoked: bool = False

    def is_active(self, now: datetime) -> bool:
        return not self.revoked and now < self.expires_at

    @property
    def metadata(self) -> SessionMetadata:
        return SessionMetadata.from_blobs(self.location_data, self.device_metadata)


@dataclass(frozen=True)
class SessionMetadata:
    """Typed view over the opaque location/device blobs stored on a session.

    Only these keys are read by logic. Anything else in the blobs is preserved
    verbatim but ignored.
    """

    ip: str | None = None
    country: str | None = None
    city: str | None = None
    os: str | None = None
    browser: str | None = None
    platform: str | None = None

    LOCATION_KEYS = ("ip", "country", "city")
    DEVICE_KEYS = ("os", "browser", "platform")

    @classmethod
    def from_blobs(cls, location: dict[str, Any] | None, device: dict[str, Any] | None) -> SessionMetadata:
        location = location or {}
        device = device or {}
        values = {k: location.get(k) for k in cls.LOCATION_KEYS}
        values.update({k: device.get(k) for k in cls.DEVICE_KEYS})
        return cls(**{k: v if isinstance(v, str) else None for k, v in values.items()})


class AuditEventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    MFA_SUCCESS = "MFA_SUCCESS"
    MFA_FAILURE = "MFA_FAILURE"
    MFA_ENROLLED = "MFA_ENROLLED"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    SESSION_HIJACK_ATTEMPT = "SESSION_HIJACK_ATTEMPT"
    REFRESH_TOKEN_REUSE = "REFRESH_TOKEN_REUSE"
    CONFIG_CHANGE = "CONFIG_CHANGE"


@dataclass
class AuditEvent:
    """Immutable security event. Written once, never updated or deleted."""

    event_type: str
    resource: str
    action: str
    timestamp: datetime
    user_id: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    ip_address: str = ""
    user_agent: str = ""
    id: str | None = None


@dataclass(frozen=True)
class SecurityConfig:
    """Resolved security tunables consumed by the gateway. Read-only."""

    access_token_ttl: timedelta
    refresh_token_ttl: timedelta
    max_failed_attempts: int
    lockout_duration: timedelta
    rotate_refresh_tokens: bool = True


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    jti: str
    iat: int
    exp: int
    type: str


@dataclass(frozen=True)
class LoginResult:
    access_token: str
    refresh_token: str
    jti: str
    mfa_required: bool
    expires_in: int
    user: User


@dataclass(frozen=True)
class RefreshResult:
    """refresh_token is None when rotation is disabled."""

    access_token: str
    jti: str
    expires_in: int
    refresh_token: str | None = None


@dataclass(frozen=True)
class AuthenticatedRequest:
    """Identity resolved by the authorization gate for one inbound request.

    Handed to route handlers through FastAPI Depends() instead of an untyped
    request-scoped key/value bag.
    """

    user_id: str
    jti: str
    session: Session
    device_fingerprint: str
    ip_address: str = ""
