"""
tests/test_tokens.py -- Unit tests for TokenCodec.

Covers issue/parse round trip, shared jti, algorithm pinning ("none", HS512,
wrong key), expiry, claim shape and token-type checks.
"""

from __future__ import annotations

import base64
import json
import time
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth.errors import InvalidSignature, InvalidToken, MalformedClaims, TokenExpired
from auth.tokens import ACCESS, REFRESH, TokenCodec, hash_refresh_token

SECRET = "test-secret-key-that-is-at-least-32-characters"


@pytest.fixture
def codec() -> TokenCodec:
    return TokenCodec(SECRET, timedelta(minutes=15), timedelta(days=7))


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()


def _claims(**overrides) -> dict:
    now = int(time.time())
    payload = {"sub": "user-1", "jti": "jti-1", "iat": now, "exp": now + 600, "type": ACCESS}
    payload.update(overrides)
    return payload


class TestIssueAndParse:
    def test_pair_shares_jti(self, codec: TokenCodec) -> None:
        access, refresh, jti = codec.issue_pair("user-1")
        a = codec.parse(access, expected_type=ACCESS)
        r = codec.parse(refresh, expected_type=REFRESH)
        assert a.jti == r.jti == jti
        assert a.sub == r.sub == "user-1"

    def test_ttls_applied(self, codec: TokenCodec) -> None:
        access, refresh, _ = codec.issue_pair("user-1")
        a = codec.parse(access)
        r = codec.parse(refresh)
        assert a.exp - a.iat == 15 * 60
        assert abs((r.exp - r.iat) - 7 * 86400) <= 1

    def test_refresh_expiry_can_be_pinned(self, codec: TokenCodec) -> None:
        expires = datetime.now(timezone.utc) + timedelta(days=2)
        _, refresh, _ = codec.issue_pair("user-1", refresh_expires_at=expires)
        assert codec.parse(refresh).exp == int(expires.timestamp())

    def test_reissued_refresh_tokens_differ(self, codec: TokenCodec) -> None:
        expires = datetime.now(timezone.utc) + timedelta(days=1)
        assert codec.issue_refresh("user-1", "jti-1", expires) != codec.issue_refresh("user-1", "jti-1", expires)

    def test_type_mismatch_rejected(self, codec: TokenCodec) -> None:
        access, refresh, _ = codec.issue_pair("user-1")
        with pytest.raises(MalformedClaims):
            codec.parse(refresh, expected_type=ACCESS)
        with pytest.raises(MalformedClaims):
            codec.parse(access, expected_type=REFRESH)


class TestRejection:
    def test_wrong_key(self, codec: TokenCodec) -> None:
        other = TokenCodec("another-secret-key-that-is-32-characters!", timedelta(minutes=15), timedelta(days=7))
        access, _, _ = other.issue_pair("user-1")
        with pytest.raises(InvalidSignature):
            codec.parse(access)

    def test_alg_none(self, codec: TokenCodec) -> None:
        token = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(_claims())}."
        with pytest.raises(InvalidToken):
            codec.parse(token)

    def test_other_hmac_algorithm(self, codec: TokenCodec) -> None:
        token = jwt.encode(_claims(), SECRET, algorithm="HS512")
        with pytest.raises(InvalidSignature):
            codec.parse(token)

    def test_expired(self) -> None:
        codec = TokenCodec(SECRET, timedelta(seconds=-30), timedelta(days=7))
        access = codec.issue_access("user-1", "jti-1")
        with pytest.raises(TokenExpired):
            codec.parse(access)

    @pytest.mark.parametrize(
        "payload",
        [
            {k: v for k, v in _claims().items() if k != "jti"},
            _claims(sub=""),
            _claims(type="id"),
            _claims(iat="yesterday"),
        ],
    )
    def test_malformed_claims(self, codec: TokenCodec, payload: dict) -> None:
        token = jwt.encode(payload, SECRET, algorithm="HS256")
        with pytest.raises(MalformedClaims):
            codec.parse(token)

    def test_garbage(self, codec: TokenCodec) -> None:
        with pytest.raises(InvalidToken):
            codec.parse("not-a-token")

    def test_tampered_payload(self, codec: TokenCodec) -> None:
        access, _, _ = codec.issue_pair("user-1")
        header, _, signature = access.split(".")
        forged = f"{header}.{_b64(_claims(sub='admin'))}.{signature}"
        with pytest.raises(InvalidSignature):
            codec.parse(forged)


def test_refresh_hash_is_sha256_hex() -> None:
    digest = hash_refresh_token("abc")
    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    assert hash_refresh_token("abc") == digest
