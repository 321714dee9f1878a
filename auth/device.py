"""
auth/device.py -- Device-fingerprint binding for sessions.

A session is bound to the fingerprint presented at login. Every refresh and
every protected request compares the presented fingerprint against the recorded
one. Comparison is constant time (hmac.compare_digest) so response timing does
not leak how many leading characters matched.

On mismatch the caller revokes the session and audits SESSION_HIJACK_ATTEMPT.
This is a fail-closed control, not a warning.
"""

from __future__ import annotations

import hmac

# Used when the client sends no X-Device-Fingerprint header. Clients that never
# send one are all bound to this sentinel -- an explicit policy choice.
DEFAULT_DEVICE_ID = "default-device"


def fingerprints_match(recorded: str, presented: str) -> bool:
    """Return True if the presented fingerprint equals the recorded one (constant time)."""
    return hmac.compare_digest(recorded.encode("utf-8"), presented.encode("utf-8"))


def normalize_fingerprint(value: str | None) -> str:
    """Map a missing or blank header value to DEFAULT_DEVICE_ID."""
    value = (value or "").strip()
    return value or DEFAULT_DEVICE_ID
