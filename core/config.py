"""
core/config.py -- Settings for the Gruff auth service (pydantic-settings).

Every environment read in the project goes through Settings. Nothing else
calls os.getenv(); import get_settings() instead.

  get_settings() is cached with lru_cache, so Settings is built once per
      process. api/main.py calls it in the lifespan, main.py per command.

  Field names map to upper-case environment variables (jwt_secret ->
      JWT_SECRET); a .env file in the working directory is read too.

JWT_SECRET policy (validate_jwt_secret):
  - shorter than 32 characters: rejected in every mode
  - missing with DEBUG=true: a random key is generated and a warning logged;
    issued tokens die with the process
  - missing otherwise: startup fails

TTLs, the session key prefix and the cookie name are read here, but auth/
never reads them globally. api/main.py builds TokenConfig and SessionStore
from Settings at startup; tests construct those objects with their own values.

Layer rule: core/ is the kernel. No imports from api/, auth/, or kv/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("gruff.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent.parent / 'auth' / 'gruff_auth.db'}"


class Settings(BaseSettings):
    """Environment-backed configuration. Every field has a default except
    the effective JWT secret, which validate_jwt_secret() resolves."""

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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    jwt_secret: str = ""

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    access_token_ttl: int = 15 * 60
    refresh_token_ttl: int = 7 * 24 * 60 * 60
    session_key_prefix: str = "session:"
    access_cookie_name: str = "gruff_access_token"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    # memory://, redis://host:port/db, or any SQLAlchemy URL
    kv_url: str = "memory://"
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("access_token_ttl", "refresh_token_ttl")
    @classmethod
    def positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token TTLs must be positive")
        return value

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Resolve the signing secret (see module docstring for the policy)."""
        if not self.jwt_secret and self.debug:
            self.jwt_secret = secrets.token_hex(32)
            logger.warning("JWT_SECRET not set; generated a per-process key. Tokens will not survive a restart.")
        elif not self.jwt_secret:
            raise ValueError(
                "JWT_SECRET is required in production mode. "
                "Set it in the environment or .env, or set DEBUG=true for local development."
            )
        if len(self.jwt_secret) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, built on first call.

    Tests that change the environment construct Settings() directly or call
    get_settings.cache_clear().
    """
    return Settings()
