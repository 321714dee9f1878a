"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Every protected route depends on get_authenticated_request(), which:
  1. Reads the Authorization: Bearer <token> header.
  2. Reads X-Device-Fingerprint (absent -> the default device sentinel).
  3. Hands both to AuthGateway.authenticate(): token signature/expiry/type,
     live session lookup, device binding.

The result is an AuthenticatedRequest passed to the handler as a typed
argument. Rejections are raised as AuthError subclasses and rendered by the
handler in api/main.py.

require_permission(name) wraps get_authenticated_request() and additionally
resolves the caller's permissions. It fails closed: if resolution raises
(StoreUnavailable), the request is rejected with 503, never allowed.

Layer rule: no imports from api/ or core/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Depends, Request

from auth.errors import InsufficientPermissions, InvalidToken
from auth.gateway import AuthGateway
from auth.models import AuthenticatedRequest
from auth.permissions import has_permission

DEVICE_HEADER = "X-Device-Fingerprint"


def get_gateway(request: Request) -> AuthGateway:
    return request.app.state.gateway


def client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def bearer_token(request: Request) -> str:
    """Extract the Bearer token. Missing or non-Bearer Authorization -> InvalidToken."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidToken("Authentication required.", code="unauthorized")
    return token.strip()


async def get_authenticated_request(request: Request) -> AuthenticatedRequest:
    """Require a valid access token bound to a live session on this device.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(auth: AuthenticatedRequest = Depends(get_authenticated_request)): ...
    """
    gateway = get_gateway(request)
    return await gateway.authenticate(
        bearer_token(request),
        request.headers.get(DEVICE_HEADER),
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent", "")[:512],
    )


def require_permission(name: str) -> Callable[..., Awaitable[AuthenticatedRequest]]:
    """Build a dependency that requires the named permission.

    Use as a FastAPI dependency:
        @router.get("/admin/thing")
        async def route(auth: AuthenticatedRequest = Depends(require_permission("thing:read"))): ...
    """

    async def dependency(
        request: Request,
        auth: AuthenticatedRequest = Depends(get_authenticated_request),
    ) -> AuthenticatedRequest:
        permissions = await get_gateway(request).get_user_permissions(auth.user_id)
        if not has_permission(permissions, name):
            raise InsufficientPermissions(f"Missing permission: {name}")
        return auth

    return dependency
