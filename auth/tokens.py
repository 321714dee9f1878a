"""
auth/tokens.py -- Bearer token codec (JWT, HS256) and refresh token hashing.

Security design decisions:
  JWT: python-jose with HS256. Every token carries sub (user id), jti, iat, exp
       and type ("access" | "refresh"). The access and refresh token minted at
       login share one jti -- the jti is the session key in SessionStore.

  Algorithm pinning: the unverified header is inspected BEFORE decoding and
       anything other than HS256 (including "none") is rejected outright. The
       decode call additionally passes algorithms=[HS256].

  Refresh tokens carry an opaque random "nonce" claim. With rotation enabled,
       two refresh tokens minted for the same session in the same second would
       otherwise be byte-identical, and the old one would stay usable.

  Only SHA-256(refresh_token) is stored. Lookup is by jti, so the hash only
       has to answer "is this the current refresh token for the session".

  The signing secret is injected at construction. There is no module-level
  key; the app builds one TokenCodec from Settings at startup.

Layer rule: stdlib + python-jose only.
"""

from __future__ import annotations

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt
from jose.exceptions import JWTClaimsError

from auth.errors import InvalidSignature, MalformedClaims, TokenExpired
from auth.models import TokenClaims

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"

_REQUIRED_CLAIMS = ("sub", "jti", "iat", "exp", "type")


class TokenCodec:
    """Signs, parses and validates access/refresh tokens.

    Usage:
        codec = TokenCodec(settings.secret_key, timedelta(minutes=15), timedelta(days=7))
        access, refresh, jti = codec.issue_pair(user.id)
        claims = codec.parse(access, expected_type="access")
    """

    def __init__(self, secret_key: str, access_ttl: timedelta, refresh_ttl: timedelta) -> None:
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_pair(self, user_id: str, refresh_expires_at: datetime | None = None) -> tuple[str, str, str]:
        """Mint an (access, refresh, jti) triple. Both tokens share the new jti.

        refresh_expires_at lets the caller align the refresh token with the
        session row's expires_at; it defaults to now + refresh_ttl.
        """
        jti = str(uuid.uuid4())
        if refresh_expires_at is None:
            refresh_expires_at = datetime.now(timezone.utc) + self.refresh_ttl
        access = self.issue_access(user_id, jti)
        refresh = self.issue_refresh(user_id, jti, refresh_expires_at)
        return access, refresh, jti

    def issue_access(self, user_id: str, jti: str) -> str:
        now = datetime.now(timezone.utc)
        return self._encode(user_id, jti, ACCESS, now, now + self.access_ttl)

    def issue_refresh(self, user_id: str, jti: str, expires_at: datetime) -> str:
        """Mint a refresh token for an existing jti with an explicit expiry."""
        now = datetime.now(timezone.utc)
        return self._encode(user_id, jti, REFRESH, now, expires_at, nonce=secrets.token_urlsafe(12))

    def _encode(self, user_id: str, jti: str, kind: str, issued: datetime, expires: datetime, **extra) -> str:
        payload = {
            "sub": user_id,
            "jti": jti,
            "iat": int(issued.timestamp()),
            "exp": int(expires.timestamp()),
            "type": kind,
            **extra,
        }
        return jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------

    def parse(self, token: str, expected_type: str | None = None) -> TokenClaims:
        """Verify signature, expiry and claim shape. Raises on any failure.

        Raises:
            InvalidSignature: bad signature, or header asserts a non-HS256 algorithm.
            TokenExpired:     signature valid but exp has passed.
            MalformedClaims:  undecodable token, missing/mistyped claims, or
                              a type other than expected_type.
        """
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            raise MalformedClaims("Malformed token.") from exc
        if header.get("alg") != ALGORITHM:
            raise InvalidSignature("Unexpected signing algorithm.")

        try:
            payload = jwt.decode(token, self._secret_key, algorithms=[ALGORITHM])
        except ExpiredSignatureError as exc:
            raise TokenExpired() from exc
        except JWTClaimsError as exc:
            raise MalformedClaims() from exc
        except JWTError as exc:
            raise InvalidSignature() from exc

        claims = _to_claims(payload)
        if expected_type is not None and claims.type != expected_type:
            raise MalformedClaims(f"Expected a {expected_type} token.")
        return claims


def _to_claims(payload: dict) -> TokenClaims:
    if any(name not in payload for name in _REQUIRED_CLAIMS):
        raise MalformedClaims()
    sub, jti, kind = payload["sub"], payload["jti"], payload["type"]
    iat, exp = payload["iat"], payload["exp"]
    if not (isinstance(sub, str) and sub and isinstance(jti, str) and jti):
        raise MalformedClaims()
    if kind not in (ACCESS, REFRESH):
        raise MalformedClaims()
    if isinstance(iat, bool) or isinstance(exp, bool) or not isinstance(iat, int) or not isinstance(exp, int):
        raise MalformedClaims()
    return TokenClaims(sub=sub, jti=jti, iat=iat, exp=exp, type=kind)


def hash_refresh_token(token: str) -> str:
    """Return SHA-256(token) as hex. This is what SessionStore persists."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
