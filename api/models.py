"""
API request and response models for Estate Auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuditEvent, Session

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    location and device are optional client-reported metadata. Only the keys of
    SessionMetadata (ip, country, city, os, browser, platform) are read back.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=150)
    password: str = Field(min_length=1, max_length=1024)
    location: dict[str, Any] = Field(default_factory=dict)
    device: dict[str, Any] = Field(default_factory=dict)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh."""

    refresh_token: str = Field(min_length=1, max_length=4096)


class MfaVerifyRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=6, max_length=10)


class MfaEnrollRequest(BaseModel):
    """Request body for POST /api/v1/auth/mfa/enroll.

    current_code is required only when replacing an already-enrolled secret.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    current_code: Optional[str] = Field(default=None, max_length=10)


class SecurityConfigPatch(BaseModel):
    """Request body for PATCH /api/v1/admin/security-config."""

    model_config = ConfigDict(str_strip_whitespace=True)

    key: str = Field(min_length=1, max_length=64)
    value: int


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    mfa_required: bool
    user_id: str
    username: str


class RefreshResponse(BaseModel):
    """Response for POST /api/v1/auth/refresh.

    refresh_token is only present when rotation is enabled; the previous
    refresh token stops working as soon as this response is issued.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_in: int


class MfaEnrollResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: str
    provisioning_uri: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked_sessions: int


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    email: str
    mfa_enabled: bool
    jti: str
    device_id: str


class PermissionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    resource: str
    action: str


class SessionResponse(BaseModel):
    """One row in GET /api/v1/auth/sessions. Refresh hashes are never returned."""

    model_config = ConfigDict(frozen=True)

    jti: str
    device_id: str
    user_agent: str
    ip: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    created_at: Optional[str] = None
    expires_at: str
    revoked: bool
    current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_jti: str = "") -> "SessionResponse":
        meta = session.metadata
        return cls(
            jti=session.token_jti,
            device_id=session.device_id,
            user_agent=session.user_agent,
            ip=meta.ip,
            country=meta.country,
            city=meta.city,
            created_at=session.created_at.isoformat() if session.created_at else None,
            expires_at=session.expires_at.isoformat(),
            revoked=session.revoked,
            current=session.token_jti == current_jti,
        )


class SecurityConfigResponse(BaseModel):
    """Effective security tunables, keyed by config key."""

    model_config = ConfigDict(frozen=True)

    values: dict[str, int]
    rotate_refresh_tokens: bool


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[str]
    event_type: str
    user_id: Optional[str]
    resource: str
    action: str
    old_values: Optional[dict[str, Any]] = None
    new_values: Optional[dict[str, Any]] = None
    ip_address: str
    user_agent: str
    timestamp: str

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            event_type=event.event_type,
            user_id=event.user_id,
            resource=event.resource,
            action=event.action,
            old_values=event.old_values,
            new_values=event.new_values,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
            timestamp=event.timestamp.isoformat(),
        )


class ErrorDetail(BaseModel):
    """Machine-readable error payload. trace_id matches the X-Trace-ID header."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None
    trace_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
