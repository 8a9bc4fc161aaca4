"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionKit happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The
      FastAPI lifespan reads it once and hands plain values to the auth
      components, so nothing below api/ depends on the singleton.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Cross-field validation of the two signing
      secrets once every field is resolved.

Security notes:
  Access and refresh tokens are signed with separate secrets. Reusing one key
  for both would let anyone holding a refresh-signing key mint access tokens,
  so identical secrets are rejected at startup.

  Secrets shorter than 32 chars are rejected. In production mode (DEBUG not
  set or false) a missing secret is a hard startup failure; in dev mode a
  random one is generated with a warning.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessionkit.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'sessionkit_auth.db'}"

_MIN_SECRET_LENGTH = 32
_SECURE_COOKIE_PREFIXES = ("__Secure-", "__Host-")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file, provided DEBUG=true.
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
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    # Empty string is the "not configured" sentinel; the validator below
    # either generates a dev secret or raises.
    access_token_secret: str = ""
    access_token_expire_seconds: int = 900
    refresh_token_secret: str = ""
    refresh_token_expire_days: int = 7

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    db_connect_retries: int = 5
    db_connect_retry_delay: float = 5.0
    db_statement_timeout_ms: int = 5000

    # ------------------------------------------------------------------
    # HTTP boundary
    # ------------------------------------------------------------------

    # None = derive from the cookie name: "__Secure-" and "__Host-" cookies are
    # dropped by browsers unless they carry the Secure attribute.
    secure_cookies: bool | None = None
    refresh_cookie_name: str = "__Secure-refresh-token"
    auth_rate_limit: str = "10/minute"
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("access_token_expire_seconds", "refresh_token_expire_days", "db_connect_retries")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy.

        Dev mode (DEBUG=true): generate whichever secret is missing, with a
            warning. Tokens will not survive a restart.

        Production mode: refuse to start if either secret is missing.

        Both modes: each secret must be at least 32 characters, and the two
            must differ.
        """
        for field in ("access_token_secret", "refresh_token_secret"):
            if getattr(self, field):
                continue
            if not self.debug:
                raise ValueError(
                    f"{field.upper()} is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
            setattr(self, field, secrets.token_hex(32))
            logger.warning("Using auto-generated %s. Issued tokens will not survive a restart.", field.upper())

        if len(self.access_token_secret) < _MIN_SECRET_LENGTH or len(self.refresh_token_secret) < _MIN_SECRET_LENGTH:
            raise ValueError(f"Token signing secrets must be at least {_MIN_SECRET_LENGTH} characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must be different.")
        return self

    @model_validator(mode="after")
    def validate_cookie(self) -> "Settings":
        """Keep the refresh cookie name and its Secure attribute consistent."""
        prefixed = self.refresh_cookie_name.startswith(_SECURE_COOKIE_PREFIXES)
        if self.secure_cookies is None:
            self.secure_cookies = prefixed
        elif prefixed and not self.secure_cookies:
            raise ValueError(
                f"REFRESH_COOKIE_NAME '{self.refresh_cookie_name}' requires SECURE_COOKIES=true. "
                "Browsers reject prefixed cookies without the Secure attribute; "
                "pick an unprefixed name for plain-HTTP development."
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
