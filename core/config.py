"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Estate Auth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, password_pepper -> PASSWORD_PEPPER).

  @model_validator(mode="after"): Cross-field validation of the two server-wide
      secrets. Dev mode generates them with a warning, production mode refuses
      to start without them.

The security tunables below (TTLs, lockout thresholds) are only the documented
defaults. The runtime values are resolved by auth.security_config, which lets a
row in the security_config table override each of them.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. HMAC-SHA256 token
       signing relies on key entropy -- a short key weakens every token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY or
       PASSWORD_PEPPER is a hard startup failure. A random pepper would make
       every stored password hash unverifiable after a restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("estateauth.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev value or raises, so callers never see "".
    secret_key: str = ""
    password_pepper: str = ""
    database_url: str = "sqlite:///estateauth.db"

    # ------------------------------------------------------------------
    # Security defaults (overridable at runtime from the security_config table)
    # ------------------------------------------------------------------

    access_token_ttl_minutes: int = Field(default=15, ge=1, le=60)
    refresh_token_ttl_days: int = Field(default=7, ge=1, le=365)
    max_failed_attempts: int = Field(default=5, ge=1, le=20)
    lockout_duration_minutes: int = Field(default=15, ge=1, le=1440)

    # Issue a fresh refresh token on every refresh and reject the previous one.
    # Turning this off keeps the refresh token valid until its original expiry.
    rotate_refresh_tokens: bool = True

    mfa_issuer: str = "Estate Auth"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the SECRET_KEY / PASSWORD_PEPPER policy [M6][M7].

        Dev mode (DEBUG=true): auto-generate missing values with a warning.
            Tokens and password hashes will not survive a restart.

        Production mode: refuse to start when either value is missing.

        Both modes: reject SECRET_KEY shorter than 32 characters.
        """
        for name in ("secret_key", "password_pepper"):
            if getattr(self, name):
                continue
            if self.debug:
                setattr(self, name, secrets.token_hex(32))
                logger.warning("Using auto-generated %s. Values will not persist across restarts.", name.upper())
            else:
                raise ValueError(
                    f"{name.upper()} is required in production mode. "
                    f"Set {name.upper()} in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
