"""
auth/errors.py -- Exception taxonomy for the authentication subsystem.

Every failure the gateway can report is an AuthError subclass carrying a stable
machine-readable code and the HTTP status the API layer should use. The API
layer renders these uniformly (api/main.py); the core never builds responses.

Enumeration policy:
  Unknown username and wrong password both surface as InvalidCredentials. The
  specific cause is only written to the audit trail.

  Authorization failures (SessionRevoked, DeviceMismatch,
  InsufficientPermissions) are reported distinctly -- they carry no enumeration
  risk and tell the client to re-authenticate.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. Subclasses set code/status_code/message defaults."""

    code: str = "auth_error"
    status_code: int = 401
    message: str = "Authentication failed."

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        if message is not None:
            self.message = message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid username or password."


class AccountLocked(AuthError):
    code = "account_locked"
    message = "Account is temporarily locked. Try again later."


class InvalidToken(AuthError):
    code = "invalid_token"
    message = "Invalid token."


class InvalidSignature(InvalidToken):
    """Signature did not verify, or the token asserts an algorithm other than the pinned one."""


class MalformedClaims(InvalidToken):
    """Token decoded but its claims are missing, mistyped, or of the wrong kind."""

    message = "Invalid token claims."


class TokenExpired(AuthError):
    code = "token_expired"
    message = "Token has expired."


class SessionRevoked(AuthError):
    code = "session_revoked"
    message = "Session is no longer valid. Please log in again."


class DeviceMismatch(AuthError):
    code = "device_mismatch"
    message = "Device mismatch. Session has been revoked."


class InsufficientPermissions(AuthError):
    code = "insufficient_permissions"
    status_code = 403
    message = "Insufficient permissions."


class MFAInvalid(AuthError):
    code = "mfa_invalid"
    message = "Invalid MFA code."


class StoreUnavailable(AuthError):
    """A backing store failed. Never treated as success or as an empty result."""

    code = "store_unavailable"
    status_code = 503
    message = "Service temporarily unavailable."
