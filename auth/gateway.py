"""
auth/gateway.py -- AuthGateway: the single entry point for authentication.

Orchestrates PasswordVerifier, TokenCodec, LockoutPolicy, DeviceBindingGuard,
PermissionResolver and the audit trail over the three store contracts in
auth/ports.py. The HTTP layer only ever talks to this class.

Session states:
  Active   revoked=False and now < expires_at
  Expired  revoked=False and now >= expires_at
  Revoked  revoked=True (one-way)

Concurrency model:
  Every public method is a coroutine. Store calls and bcrypt run on worker
  threads via asyncio.to_thread, so a caller can bound an operation with
  asyncio.wait_for() or cancel the task; no further step runs after the
  cancellation is delivered. Nothing is cached -- lock and revocation status
  are read fresh on every call.

  Login writes the session row last. If the login is cancelled once that write
  has been dispatched, a background cleanup waits for the write to settle and
  revokes the session, so an abandoned login never leaves an Active session
  behind. A login that fails after the write (for example a fatal audit
  error) revokes its session before the error propagates.

  Failed-attempt counters are persisted with compare-and-swap; refresh-token
  rotation is compare-and-swap on the stored hash.

Security notes:
  [C1] Unknown usernames and locked accounts still pay one bcrypt verification
       (against DUMMY_HASH) so response time does not reveal which case hit.
  The lock is checked BEFORE the password. A correct password on a locked
       account fails with AccountLocked and does not reset the counter.
  Device mismatch (refresh or protected request) revokes the session
       immediately and records SESSION_HIJACK_ATTEMPT.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from auth.audit import AuditRecorder
from auth.device import fingerprints_match, normalize_fingerprint
from auth.errors import (
    AccountLocked,
    DeviceMismatch,
    InvalidCredentials,
    MalformedClaims,
    MFAInvalid,
    SessionRevoked,
    StoreUnavailable,
)
from auth.lockout import LockoutState, is_locked, register_failure, register_success
from auth.mfa import MfaVerifier, TotpVerifier
from auth.models import (
    AuditEventType,
    AuthenticatedRequest,
    LoginResult,
    Permission,
    RefreshResult,
    SecurityConfig,
    Session,
    User,
)
from auth.passwords import DUMMY_HASH, verify_password
from auth.permissions import PermissionResolver
from auth.ports import AuditSink, CredentialStore, SessionStore
from auth.tokens import ACCESS, REFRESH, TokenCodec, hash_refresh_token

logger = logging.getLogger("estateauth.gateway")

# Bounded retries for the failed-attempt compare-and-swap.
_CAS_RETRIES = 8

_RESOURCE = "auth"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def _call(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return await asyncio.to_thread(fn, *args, **kwargs)


class AuthGateway:
    """Login, refresh, MFA, logout, session validation and permission lookup.

    Usage:
        gateway = AuthGateway(users, sessions, audit, secret_key=..., pepper=..., config=cfg)
        result = await gateway.login("alice", "Secret123!", "device-1")
        identity = await gateway.authenticate(result.access_token, "device-1")
    """

    def __init__(
        self,
        users: CredentialStore,
        sessions: SessionStore,
        audit_sink: AuditSink,
        *,
        secret_key: str,
        pepper: str,
        config: SecurityConfig,
        mfa_verifier: MfaVerifier | None = None,
        mfa_issuer: str = "Estate Auth",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.audit = AuditRecorder(audit_sink)
        self.resolver = PermissionResolver(users)
        self.mfa_issuer = mfa_issuer
        self._secret_key = secret_key
        self._pepper = pepper
        self._mfa = mfa_verifier or TotpVerifier()
        self._clock = clock
        self._cleanups: set[asyncio.Task] = set()
        self.apply_config(config)

    def apply_config(self, config: SecurityConfig) -> None:
        """Swap in a newly resolved SecurityConfig. Already-issued tokens keep their exp."""
        self.config = config
        self.codec = TokenCodec(self._secret_key, config.access_token_ttl, config.refresh_token_ttl)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    async def login(
        self,
        username: str,
        password: str,
        device_fingerprint: str | None,
        location_meta: dict[str, Any] | None = None,
        user_agent: str = "",
        device_meta: dict[str, Any] | None = None,
        ip_address: str = "",
    ) -> LoginResult:
        device_id = normalize_fingerprint(device_fingerprint)
        user: User | None = await _call(self.users.get_by_username, username)

        if user is None:
            await _call(verify_password, password, self._pepper, DUMMY_HASH)
            await self._audit(
                AuditEventType.LOGIN_FAILURE,
                action="login",
                new_values={"username": username, "reason": "unknown_user"},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise InvalidCredentials()

        now = self._clock()
        if is_locked(user.locked_until, now):
            await _call(verify_password, password, self._pepper, DUMMY_HASH)
            await self._audit(
                AuditEventType.LOGIN_FAILURE,
                user_id=user.id,
                action="login",
                new_values={"reason": "account_locked", "locked_until": user.locked_until.isoformat()},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise AccountLocked()

        if not await _call(verify_password, password, self._pepper, user.password_hash):
            state = await self._record_failure(user)
            await self._audit(
                AuditEventType.LOGIN_FAILURE,
                user_id=user.id,
                action="login",
                new_values={
                    "reason": "bad_password",
                    "attempts": state.failed_attempts,
                    "locked": state.locked_until is not None,
                },
                ip_address=ip_address,
                user_agent=user_agent,
            )
            if state.locked_until is not None:
                logger.warning("Account %s locked until %s after %d failed attempts",
                               user.id, state.locked_until.isoformat(), state.failed_attempts)
            raise InvalidCredentials()

        reset = register_success()
        await _call(self.users.update_failed_attempts, user.id, reset.failed_attempts, reset.locked_until)

        expires_at = now + self.config.refresh_token_ttl
        access, refresh, jti = self.codec.issue_pair(user.id, refresh_expires_at=expires_at)
        session = Session(
            user_id=user.id,
            token_jti=jti,
            refresh_token_hash=hash_refresh_token(refresh),
            device_id=device_id,
            location_data=dict(location_meta or {}),
            user_agent=user_agent,
            device_metadata=dict(device_meta or {}),
            created_at=now,
            expires_at=expires_at,
        )
        mfa_required = user.mfa_enabled

        create = asyncio.ensure_future(_call(self.sessions.create, session))
        try:
            await asyncio.shield(create)
            await self._audit(
                AuditEventType.LOGIN_SUCCESS,
                user_id=user.id,
                action="login",
                new_values={"mfa_required": mfa_required, "device_id": device_id},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        except asyncio.CancelledError:
            self._discard_session_later(create, jti)
            raise
        except Exception:
            # A login that reports failure must not leave its session Active.
            if create.done() and not create.cancelled() and create.exception() is None:
                await self._revoke_quietly(jti)
            raise

        return LoginResult(
            access_token=access,
            refresh_token=refresh,
            jti=jti,
            mfa_required=mfa_required,
            expires_in=int(self.config.access_token_ttl.total_seconds()),
            user=user,
        )

    async def _record_failure(self, user: User) -> LockoutState:
        """Persist one more failed attempt with compare-and-swap, re-reading on conflict."""
        current = user
        for _ in range(_CAS_RETRIES):
            state = register_failure(
                current.failed_attempts,
                self.config.max_failed_attempts,
                self.config.lockout_duration,
                self._clock(),
            )
            written = await _call(
                self.users.update_failed_attempts,
                current.id,
                state.failed_attempts,
                state.locked_until,
                current.failed_attempts,
            )
            if written:
                return state
            current = await _call(self.users.get_by_id, user.id)
            if current is None:
                raise InvalidCredentials()
        raise StoreUnavailable("Could not record failed login attempt.")

    def _discard_session_later(self, create: asyncio.Future, jti: str) -> None:
        task = asyncio.ensure_future(self._discard_session(create, jti))
        self._cleanups.add(task)
        task.add_done_callback(self._cleanups.discard)

    async def _discard_session(self, create: asyncio.Future, jti: str) -> None:
        try:
            await create
        except Exception:
            logger.info("Cancelled login %s never wrote its session", jti)
            return
        await _call(self.sessions.revoke_by_jti, jti)
        logger.info("Revoked session %s left behind by a cancelled login", jti)

    async def _revoke_quietly(self, jti: str) -> None:
        """Revoke the session of a failed login without masking the original error."""
        try:
            await _call(self.sessions.revoke_by_jti, jti)
        except StoreUnavailable:
            logger.error("Could not revoke session %s of a failed login", jti, exc_info=True)
            return
        logger.info("Revoked session %s of a failed login", jti)

    # ------------------------------------------------------------------
    # MFA
    # ------------------------------------------------------------------

    async def verify_mfa(self, user_id: str, code: str, ip_address: str = "", user_agent: str = "") -> None:
        """Check a one-time code against the user's MFA secret. Raises MFAInvalid."""
        user: User | None = await _call(self.users.get_by_id, user_id)
        if user is None or not user.mfa_secret or not self._mfa.verify(user.mfa_secret, code):
            await self._audit(
                AuditEventType.MFA_FAILURE,
                user_id=user_id,
                action="mfa_verify",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise MFAInvalid()
        await self._audit(
            AuditEventType.MFA_SUCCESS,
            user_id=user_id,
            action="mfa_verify",
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def enroll_mfa(
        self,
        user_id: str,
        current_code: str | None = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> tuple[str, str]:
        """Generate and store a new MFA secret. Returns (secret, provisioning_uri).

        Replacing an existing secret requires a valid code for the current one,
        so a stolen access token alone cannot re-bind the second factor.
        """
        user: User | None = await _call(self.users.get_by_id, user_id)
        if user is None:
            raise InvalidCredentials()
        if user.mfa_enabled and not (current_code and self._mfa.verify(user.mfa_secret, current_code)):
            await self._audit(
                AuditEventType.MFA_FAILURE,
                user_id=user_id,
                action="mfa_enroll",
                ip_address=ip_address,
                user_agent=user_agent,
            )
            raise MFAInvalid()
        secret = self._mfa.new_secret()
        await _call(self.users.update_mfa_secret, user_id, secret)
        await self._audit(
            AuditEventType.MFA_ENROLLED,
            user_id=user_id,
            action="mfa_enroll",
            old_values={"mfa_enabled": user.mfa_enabled},
            new_values={"mfa_enabled": True},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return secret, self._mfa.provisioning_uri(secret, user.email or user.username, self.mfa_issuer)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_token(
        self,
        refresh_token: str,
        device_fingerprint: str | None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> RefreshResult:
        """Exchange a refresh token for a new access token bound to the same jti.

        With rotation enabled the refresh token is single-use: a new one is
        returned and the presented one stops working. Presenting a superseded
        refresh token is treated as theft and revokes the session.
        """
        claims = self.codec.parse(refresh_token, expected_type=REFRESH)
        device_id = normalize_fingerprint(device_fingerprint)

        session: Session | None = await _call(self.sessions.get_by_jti, claims.jti)
        if session is None or session.revoked:
            raise SessionRevoked()
        if session.user_id != claims.sub:
            raise MalformedClaims()
        if not session.is_active(self._clock()):
            raise SessionRevoked()

        if not fingerprints_match(session.device_id, device_id):
            await self._revoke_for_hijack(session, "refresh", ip_address, user_agent)
            raise DeviceMismatch()

        new_refresh: str | None = None
        if self.config.rotate_refresh_tokens:
            presented_hash = hash_refresh_token(refresh_token)
            if not hmac.compare_digest(session.refresh_token_hash, presented_hash):
                await self._revoke_for_reuse(session, ip_address, user_agent)
                raise SessionRevoked()
            new_refresh = self.codec.issue_refresh(session.user_id, claims.jti, session.expires_at)
            rotated = await _call(
                self.sessions.update_refresh_token,
                claims.jti,
                hash_refresh_token(new_refresh),
                session.expires_at,
                presented_hash,
            )
            if not rotated:
                await self._revoke_for_reuse(session, ip_address, user_agent)
                raise SessionRevoked()

        access = self.codec.issue_access(session.user_id, claims.jti)
        await self._audit(
            AuditEventType.TOKEN_REFRESH,
            user_id=session.user_id,
            action="refresh",
            new_values={"rotated": new_refresh is not None},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return RefreshResult(
            access_token=access,
            jti=claims.jti,
            expires_in=int(self.config.access_token_ttl.total_seconds()),
            refresh_token=new_refresh,
        )

    async def _revoke_for_hijack(self, session: Session, action: str, ip_address: str, user_agent: str) -> None:
        await _call(self.sessions.revoke_by_jti, session.token_jti)
        logger.warning(
            "Device mismatch on %s for user %s; session %s revoked",
            action,
            session.user_id,
            session.token_jti,
        )
        await self._audit(
            AuditEventType.SESSION_HIJACK_ATTEMPT,
            user_id=session.user_id,
            action=action,
            new_values={"device_mismatch": True, "jti": session.token_jti},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def _revoke_for_reuse(self, session: Session, ip_address: str, user_agent: str) -> None:
        await _call(self.sessions.revoke_by_jti, session.token_jti)
        logger.warning("Superseded refresh token presented for user %s; session %s revoked",
                       session.user_id, session.token_jti)
        await self._audit(
            AuditEventType.REFRESH_TOKEN_REUSE,
            user_id=session.user_id,
            action="refresh",
            new_values={"jti": session.token_jti},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    async def logout(self, jti: str, user_id: str | None = None, ip_address: str = "", user_agent: str = "") -> None:
        """Revoke one session. Idempotent."""
        await _call(self.sessions.revoke_by_jti, jti)
        await self._audit(
            AuditEventType.LOGOUT,
            user_id=user_id,
            action="logout",
            new_values={"jti": jti},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def logout_all(self, user_id: str, ip_address: str = "", user_agent: str = "") -> int:
        """Revoke every live session of a user. Returns the number revoked."""
        count = await _call(self.sessions.revoke_by_user, user_id)
        await self._audit(
            AuditEventType.LOGOUT_ALL,
            user_id=user_id,
            action="logout_all",
            new_values={"revoked_sessions": count},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return count

    # ------------------------------------------------------------------
    # Session validation / request authentication
    # ------------------------------------------------------------------

    async def validate_session(self, jti: str) -> Session:
        """Return the session if Active. Not found, revoked or expired -> SessionRevoked."""
        session: Session | None = await _call(self.sessions.get_by_jti, jti)
        if session is None or not session.is_active(self._clock()):
            raise SessionRevoked(code="session_invalid")
        return session

    async def authenticate(
        self,
        token: str,
        device_fingerprint: str | None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> AuthenticatedRequest:
        """Full gate for a protected request: token, live session, device binding."""
        claims = self.codec.parse(token, expected_type=ACCESS)
        session = await self.validate_session(claims.jti)
        if session.user_id != claims.sub:
            raise MalformedClaims()

        device_id = normalize_fingerprint(device_fingerprint)
        if not fingerprints_match(session.device_id, device_id):
            await self._revoke_for_hijack(session, "request", ip_address, user_agent)
            raise DeviceMismatch()

        recorded_ip = session.metadata.ip
        if ip_address and recorded_ip and recorded_ip != ip_address:
            logger.warning(
                "Possible impossible travel for user %s: session ip %s, request ip %s",
                session.user_id,
                recorded_ip,
                ip_address,
            )

        return AuthenticatedRequest(
            user_id=session.user_id,
            jti=session.token_jti,
            session=session,
            device_fingerprint=device_id,
            ip_address=ip_address,
        )

    async def list_sessions(self, user_id: str) -> list[Session]:
        return await _call(self.sessions.list_by_user, user_id)

    async def get_user(self, user_id: str) -> User | None:
        return await _call(self.users.get_by_id, user_id)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def get_user_permissions(self, user_id: str) -> frozenset[Permission]:
        """Resolve effective permissions. Store failures surface as StoreUnavailable."""
        try:
            return await _call(self.resolver.resolve, user_id)
        except StoreUnavailable:
            logger.warning("Failed to load permissions for user %s", user_id)
            raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _audit(self, event_type: AuditEventType, *, action: str, **fields: Any) -> None:
        await _call(self.audit.record, event_type, resource=_RESOURCE, action=action, **fields)
