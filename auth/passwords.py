"""
auth/passwords.py -- Peppered bcrypt password hashing.

The password is concatenated with a server-wide pepper before hashing. The
pepper never touches the database, so a leaked users table alone is not enough
to mount an offline guessing attack.

bcrypt reads at most 72 bytes of input (bcrypt 4.1+ raises instead of
truncating). When password + pepper is longer than that, the peppered value is
first collapsed to a base64 SHA-256 digest. The transform is deterministic, so
hash_password() and verify_password() always agree.

verify_password() never raises. A malformed stored hash is indistinguishable
from a wrong password to the caller.

Layer rule: stdlib + bcrypt only.
"""

from __future__ import annotations

import base64
import hashlib

import bcrypt

BCRYPT_ROUNDS = 12
_BCRYPT_MAX_BYTES = 72


def _peppered(password: str, pepper: str) -> bytes:
    raw = f"{password}{pepper}".encode("utf-8")
    if len(raw) > _BCRYPT_MAX_BYTES:
        raw = base64.b64encode(hashlib.sha256(raw).digest())
    return raw


def hash_password(password: str, pepper: str) -> str:
    """Return a bcrypt hash (cost 12) of password + pepper."""
    return bcrypt.hashpw(_peppered(password, pepper), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, pepper: str, hashed: str) -> bool:
    """Return True if password + pepper matches the bcrypt hash. False on any error."""
    try:
        return bcrypt.checkpw(_peppered(password, pepper), hashed.encode("utf-8"))
    except Exception:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load. The gateway verifies against it when the
# username is unknown or the account is locked, so those paths cost the same
# bcrypt work as a real wrong-password check.
DUMMY_HASH: str = hash_password("estateauth_timing_dummy", "")
