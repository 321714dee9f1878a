"""
auth/lockout.py -- Account lockout policy.

Pure functions over (failed_attempts, max_attempts, lockout_duration, now).
No I/O -- the gateway reads the user, asks this module for the next state and
persists it with a compare-and-swap so concurrent failed logins cannot lose an
increment.

Ordering rule enforced by the gateway, not here: the lock is checked strictly
BEFORE the password is verified, and a locked account fails the same way
whether or not the password is right.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class LockoutState:
    failed_attempts: int
    locked_until: datetime | None


def register_failure(
    failed_attempts: int,
    max_attempts: int,
    lockout_duration: timedelta,
    now: datetime,
) -> LockoutState:
    """Increment the counter; lock for lockout_duration once it reaches max_attempts."""
    attempts = failed_attempts + 1
    if attempts >= max_attempts:
        return LockoutState(attempts, now + lockout_duration)
    return LockoutState(attempts, None)


def register_success() -> LockoutState:
    return LockoutState(0, None)


def is_locked(locked_until: datetime | None, now: datetime) -> bool:
    return locked_until is not None and now < locked_until
