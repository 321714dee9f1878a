"""
auth/mfa.py -- Multi-factor verification extension point.

The gateway depends on the MfaVerifier protocol only. TotpVerifier is the
default: RFC 6238 time-based one-time passwords via pyotp, accepting the
previous/next 30s step to tolerate clock drift. Deployments that need push,
WebAuthn or backup codes substitute their own verifier.
"""

from __future__ import annotations

from typing import Protocol

import pyotp


class MfaVerifier(Protocol):
    def verify(self, secret: str, code: str) -> bool: ...

    def new_secret(self) -> str: ...

    def provisioning_uri(self, secret: str, account_name: str, issuer: str) -> str: ...


class TotpVerifier:
    def __init__(self, valid_window: int = 1) -> None:
        self.valid_window = valid_window

    def verify(self, secret: str, code: str) -> bool:
        code = (code or "").strip()
        if not code.isdigit():
            return False
        try:
            return pyotp.TOTP(secret).verify(code, valid_window=self.valid_window)
        except Exception:
            # A corrupt stored secret is a failed verification, not a 500.
            return False

    def new_secret(self) -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, account_name: str, issuer: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=issuer)
