"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/login         -- password login; returns access + refresh token
  POST /api/v1/auth/refresh       -- exchange refresh token for a new access token
  POST /api/v1/auth/mfa/verify    -- verify a TOTP code (requires auth)
  POST /api/v1/auth/mfa/enroll    -- generate a new MFA secret (requires auth)
  POST /api/v1/auth/logout        -- revoke the current session (requires auth)
  POST /api/v1/auth/logout-all    -- revoke every session of the caller (requires auth)
  GET  /api/v1/auth/me            -- current identity (requires auth)
  GET  /api/v1/auth/permissions   -- effective permissions (requires auth)
  GET  /api/v1/auth/sessions      -- the caller's sessions, newest first (requires auth)

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [C1] Timing equalization lives in AuthGateway.login -- never inline a
       username lookup + password check here.
  The device fingerprint is read from X-Device-Fingerprint on login, refresh
  and every protected request. A mismatch revokes the session.
  Routes never build error bodies: AuthError subclasses propagate to the
  handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    MeResponse,
    MessageResponse,
    MfaEnrollRequest,
    MfaEnrollResponse,
    MfaVerifyRequest,
    PermissionResponse,
    RefreshRequest,
    RefreshResponse,
    SessionResponse,
)
from auth.dependencies import DEVICE_HEADER, client_ip, get_authenticated_request, get_gateway
from auth.errors import SessionRevoked
from auth.models import AuthenticatedRequest

# Auth policy:
# - POST /api/v1/auth/login:       public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/refresh:     public -- the refresh token in the body is the credential
# - everything else:               requires auth (get_authenticated_request)
router = APIRouter()


def _user_agent(request: Request) -> str:
    return request.headers.get("User-Agent", "")[:512]


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(login_rate_limit)  # [H2] route decorator outermost so FastAPI registers the limited wrapper
async def login(request: Request, body: LoginRequest) -> LoginResponse:
    """Authenticate with username and password and open a device-bound session.

    Wrong username and wrong password both return "invalid_credentials".
    When mfa_required is true the client must call /auth/mfa/verify next.
    """
    ip = client_ip(request)
    location = dict(body.location)
    if ip:
        location["ip"] = ip
    result = await get_gateway(request).login(
        body.username,
        body.password,
        request.headers.get(DEVICE_HEADER),
        location_meta=location,
        user_agent=_user_agent(request),
        device_meta=body.device,
        ip_address=ip,
    )
    return LoginResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=result.expires_in,
        mfa_required=result.mfa_required,
        user_id=result.user.id,
        username=result.user.username,
    )


@router.post("/auth/refresh", response_model=RefreshResponse)
async def refresh(request: Request, body: RefreshRequest) -> RefreshResponse:
    """Mint a new access token for the same session.

    Must be called from the device that logged in. With rotation enabled the
    response carries a new refresh token and the presented one is spent.
    """
    result = await get_gateway(request).refresh_token(
        body.refresh_token,
        request.headers.get(DEVICE_HEADER),
        ip_address=client_ip(request),
        user_agent=_user_agent(request),
    )
    return RefreshResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
    )


# ---------------------------------------------------------------------------
# MFA
# ---------------------------------------------------------------------------


@router.post("/auth/mfa/verify", response_model=MessageResponse)
async def verify_mfa(
    request: Request,
    body: MfaVerifyRequest,
    auth: AuthenticatedRequest = Depends(get_authenticated_request),
) -> MessageResponse:
    await get_gateway(request).verify_mfa(
        auth.user_id, body.code, ip_address=auth.ip_address, user_agent=_user_agent(request)
    )
    return MessageResponse(message="MFA verified.")


@router.post("/auth/mfa/enroll", response_model=MfaEnrollResponse)
async def enroll_mfa(
    request: Request,
    body: MfaEnrollRequest,
    auth: AuthenticatedRequest = Depends(get_authenticated_request),
) -> MfaEnrollResponse:
    """Generate a TOTP secret for the caller. The secret is shown ONCE.

    Replacing an existing secret requires current_code from the old one.
    """
    secret, uri = await get_gateway(request).enroll_mfa(
        auth.user_id,
        current_code=body.current_code,
        ip_address=auth.ip_address,
        user_agent=_user_agent(request),
    )
    return MfaEnrollResponse(secret=secret, provisioning_uri=uri)


# ---------------------------------------------------------------------------
# Logout
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    auth: AuthenticatedRequest = Depends(get_authenticated_request),
) -> MessageResponse:
    await get_gateway(request).logout(
        auth.jti, user_id=auth.user_id, ip_address=auth.ip_address, user_agent=_user_agent(request)
    )
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
async def logout_all(
    request: Request,
    auth: AuthenticatedRequest = Depends(get_authenticated_request),
) -> LogoutAllResponse:
    """Revoke every session of the caller, including the current one."""
    count = await get_gateway(request).logout_all(
        auth.user_id, ip_address=auth.ip_address, user_agent=_user_agent(request)
    )
    return LogoutAllResponse(revoked_sessions=count)


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(request: Request, auth: AuthenticatedRequest = Depends(get_authenticated_request)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    user = await get_gateway(request).get_user(auth.user_id)
    if user is None:
        raise SessionRevoked(code="session_invalid")
    return MeResponse(
        user_id=user.id,
        username=user.username,
        email=user.email,
        mfa_enabled=user.mfa_enabled,
        jti=auth.jti,
        device_id=auth.device_fingerprint,
    )


@router.get("/auth/permissions", response_model=list[PermissionResponse])
async def permissions(
    request: Request,
    auth: AuthenticatedRequest = Depends(get_authenticated_request),
) -> list[PermissionResponse]:
    perms = await get_gateway(request).get_user_permissions(auth.user_id)
    return [
        PermissionResponse(name=p.name, resource=p.resource, action=p.action)
        for p in sorted(perms, key=lambda p: p.name)
    ]


@router.get("/auth/sessions", response_model=list[SessionResponse])
async def sessions(
    request: Request,
    auth: AuthenticatedRequest = Depends(get_authenticated_request),
) -> list[SessionResponse]:
    """List the caller's sessions, newest first. Refresh hashes are never exposed."""
    found = await get_gateway(request).list_sessions(auth.user_id)
    return [SessionResponse.from_session(s, current_jti=auth.jti) for s in found]
