"""
api/routes/v1/admin.py -- Security configuration and audit log endpoints.

Routes:
  GET   /api/v1/admin/security-config  -- effective tunables (security_config:read)
  PATCH /api/v1/admin/security-config  -- override one tunable (security_config:update)
  GET   /api/v1/admin/audit-logs       -- recent audit events (audit_logs:read)

A config change is persisted, audited as CONFIG_CHANGE with old/new values, and
then re-applied to the running gateway. Tokens already issued keep their exp.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import AuditEventResponse, SecurityConfigPatch, SecurityConfigResponse
from auth.dependencies import require_permission
from auth.models import AuditEventType, AuthenticatedRequest
from auth.permissions import AUDIT_LOGS_READ, SECURITY_CONFIG_READ, SECURITY_CONFIG_UPDATE
from auth.security_config import load_security_config, resolve_values, update_security_config
from core.config import get_settings

router = APIRouter()


@router.get("/admin/security-config", response_model=SecurityConfigResponse)
async def get_security_config(
    request: Request,
    auth: AuthenticatedRequest = Depends(require_permission(SECURITY_CONFIG_READ)),
) -> SecurityConfigResponse:
    settings = get_settings()
    values = await asyncio.to_thread(resolve_values, settings, request.app.state.config_store)
    return SecurityConfigResponse(values=values, rotate_refresh_tokens=settings.rotate_refresh_tokens)


@router.patch("/admin/security-config", response_model=SecurityConfigResponse)
async def patch_security_config(
    request: Request,
    body: SecurityConfigPatch,
    auth: AuthenticatedRequest = Depends(require_permission(SECURITY_CONFIG_UPDATE)),
) -> SecurityConfigResponse:
    """Override one tunable. Unknown keys and out-of-range values are rejected with 422."""
    settings = get_settings()
    store = request.app.state.config_store
    gateway = request.app.state.gateway
    try:
        old, new = await asyncio.to_thread(update_security_config, settings, store, body.key, body.value)
    except ValueError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "invalid_config", "message": str(exc)},
        ) from exc

    await asyncio.to_thread(
        gateway.audit.record,
        AuditEventType.CONFIG_CHANGE,
        resource="security_config",
        action="update",
        user_id=auth.user_id,
        old_values={body.key: old},
        new_values={body.key: new},
        ip_address=auth.ip_address,
        user_agent=request.headers.get("User-Agent", "")[:512],
    )
    gateway.apply_config(await asyncio.to_thread(load_security_config, settings, store))

    values = await asyncio.to_thread(resolve_values, settings, store)
    return SecurityConfigResponse(values=values, rotate_refresh_tokens=settings.rotate_refresh_tokens)


@router.get("/admin/audit-logs", response_model=list[AuditEventResponse])
async def list_audit_logs(
    request: Request,
    user_id: Optional[str] = Query(default=None, max_length=64),
    event_type: Optional[AuditEventType] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    auth: AuthenticatedRequest = Depends(require_permission(AUDIT_LOGS_READ)),
) -> list[AuditEventResponse]:
    """Return audit events newest first, optionally filtered by user and type."""
    events = await asyncio.to_thread(
        request.app.state.audit_store.list_events,
        user_id=user_id,
        event_type=event_type.value if event_type else None,
        limit=limit,
    )
    return [AuditEventResponse.from_event(e) for e in events]
