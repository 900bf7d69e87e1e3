"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for tenantauth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_access_secret -> JWT_ACCESS_SECRET).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Secrets are generated in dev mode and required in production.

Security notes:
  [S1] Each JWT secret must be at least 32 characters. HS256 signing relies
       on key entropy -- a short key weakens every token issued with it.

  [S2] The access and refresh secrets must differ. Otherwise a leaked access
       token verifies as a refresh token and can be exchanged for a session.

  [S3] bcrypt cost for passwords is at least 12 outside debug mode. Tests run
       with DEBUG=true and a low cost so the suite stays fast.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tenantauth.config")

_MIN_SECRET_LENGTH = 32
_MIN_PASSWORD_ROUNDS = 12


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
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
    # Empty string means "use the SQLite file next to auth/store.py".
    database_url: str = ""

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The validator below
    # either generates a dev secret or raises, so callers never see "".
    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_access_ttl_seconds: int = 900
    jwt_refresh_ttl_seconds: int = 60 * 60 * 24 * 30
    invite_ttl_seconds: int = 60 * 60 * 24 * 7

    # Candidate-scan bounds for hash-compare lookups
    refresh_scan_limit: int = 10
    invite_scan_limit: int = 50
    logout_scan_limit: int = 50

    # bcrypt cost factors
    password_hash_rounds: int = 12
    token_hash_rounds: int = 10

    # ------------------------------------------------------------------
    # Refresh-token cookie
    # ------------------------------------------------------------------

    refresh_cookie_name: str = "refresh_token"
    cookie_secure: bool = False
    cookie_samesite: str = "lax"
    cookie_domain: str = ""

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    # pydantic-settings parses list fields from JSON, e.g.
    # ALLOWED_HOSTS='["auth.example.com"]'
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the JWT secret and hashing-cost policy.

        Dev mode (DEBUG=true): missing secrets are generated with a warning.
            Sessions will not survive a restart -- acceptable for local dev.

        Production mode: refuse to start without both secrets [S1], and
            refuse a password cost factor below 12 [S3].

        Both modes: reject short secrets [S1] and identical secrets [S2].
        """
        for field in ("jwt_access_secret", "jwt_refresh_secret"):
            if getattr(self, field):
                continue
            if not self.debug:
                raise ValueError(
                    f"{field.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, field, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Sessions will not persist across restarts.", field.upper())

        if len(self.jwt_access_secret) < _MIN_SECRET_LENGTH or len(self.jwt_refresh_secret) < _MIN_SECRET_LENGTH:
            raise ValueError(f"JWT secrets must be at least {_MIN_SECRET_LENGTH} characters.")
        if secrets.compare_digest(self.jwt_access_secret, self.jwt_refresh_secret):
            raise ValueError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ.")
        if self.password_hash_rounds < _MIN_PASSWORD_ROUNDS and not self.debug:
            raise ValueError(f"PASSWORD_HASH_ROUNDS must be at least {_MIN_PASSWORD_ROUNDS} in production mode.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
