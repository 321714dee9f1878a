"""
auth/security_config.py -- Resolve runtime security tunables.

Settings (core/config.py) supplies the documented defaults. Each tunable can be
overridden at runtime by a row in the security_config table. Resolution is
per key and tolerant: a store failure, a missing row or a value that does not
parse / is out of range keeps the default and logs a WARNING. That is the only
place in the subsystem where a store failure is allowed to fall back.

Writes are strict: update_security_config() validates the key and range and
raises ValueError before anything reaches the store.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.errors import StoreUnavailable
from auth.models import SecurityConfig
from auth.ports import SecurityConfigStore
from core.config import Settings

logger = logging.getLogger("estateauth.security_config")

ACCESS_TOKEN_TTL_MINUTES = "ACCESS_TOKEN_TTL_MINUTES"
REFRESH_TOKEN_TTL_DAYS = "REFRESH_TOKEN_TTL_DAYS"
MAX_FAILED_ATTEMPTS = "MAX_FAILED_ATTEMPTS"
LOCKOUT_DURATION_MINUTES = "LOCKOUT_DURATION_MINUTES"

# Accepted inclusive ranges per key.
CONFIG_RANGES: dict[str, tuple[int, int]] = {
    ACCESS_TOKEN_TTL_MINUTES: (1, 60),
    REFRESH_TOKEN_TTL_DAYS: (1, 365),
    MAX_FAILED_ATTEMPTS: (1, 20),
    LOCKOUT_DURATION_MINUTES: (1, 1440),
}


def default_values(settings: Settings) -> dict[str, int]:
    return {
        ACCESS_TOKEN_TTL_MINUTES: settings.access_token_ttl_minutes,
        REFRESH_TOKEN_TTL_DAYS: settings.refresh_token_ttl_days,
        MAX_FAILED_ATTEMPTS: settings.max_failed_attempts,
        LOCKOUT_DURATION_MINUTES: settings.lockout_duration_minutes,
    }


def validate_config_value(key: str, value: int) -> int:
    """Return value if key is known and value is within its range, else raise ValueError."""
    if key not in CONFIG_RANGES:
        raise ValueError(f"Unknown security config key: {key!r}")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    low, high = CONFIG_RANGES[key]
    if not low <= value <= high:
        raise ValueError(f"{key} must be between {low} and {high}")
    return value


def resolve_values(settings: Settings, store: SecurityConfigStore) -> dict[str, int]:
    """Return the effective integer value for every key (store override or default)."""
    values = default_values(settings)
    for key, default in values.items():
        try:
            raw = store.get_value(key)
        except StoreUnavailable:
            logger.warning("Failed to read %s from security_config, using default %d", key, default, exc_info=True)
            continue
        if raw is None:
            continue
        try:
            values[key] = validate_config_value(key, int(raw))
        except ValueError:
            logger.warning("Ignoring invalid %s=%r from security_config, using default %d", key, raw, default)
    return values


def load_security_config(settings: Settings, store: SecurityConfigStore) -> SecurityConfig:
    values = resolve_values(settings, store)
    config = SecurityConfig(
        access_token_ttl=timedelta(minutes=values[ACCESS_TOKEN_TTL_MINUTES]),
        refresh_token_ttl=timedelta(days=values[REFRESH_TOKEN_TTL_DAYS]),
        max_failed_attempts=values[MAX_FAILED_ATTEMPTS],
        lockout_duration=timedelta(minutes=values[LOCKOUT_DURATION_MINUTES]),
        rotate_refresh_tokens=settings.rotate_refresh_tokens,
    )
    logger.info(
        "Security config resolved (access_ttl=%s, refresh_ttl=%s, max_attempts=%d, lockout=%s)",
        config.access_token_ttl,
        config.refresh_token_ttl,
        config.max_failed_attempts,
        config.lockout_duration,
    )
    return config


def update_security_config(
    settings: Settings,
    store: SecurityConfigStore,
    key: str,
    value: int,
) -> tuple[int, int]:
    """Validate and persist one override. Returns (old_effective_value, new_value).

    Store failures propagate -- a config write that did not happen must not be
    reported as applied.
    """
    validate_config_value(key, value)
    old = resolve_values(settings, store)[key]
    store.set_value(key, str(value))
    return old, value
