"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth core happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() at the
process edge (api/main.py) and pass values down by constructor injection.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Only the
      application entry point calls it; services receive a Settings object.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved: SECRET_KEY policy, argon2 parameter floors, provider toggles.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Token signing
       relies on key entropy -- a short key weakens every issued session.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [P1] Argon2 parameters below 64 MiB / 3 iterations / 4 lanes are rejected.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authcore.config")

ARGON2_MIN_MEMORY_KIB = 64 * 1024
ARGON2_MIN_TIME_COST = 3
ARGON2_MIN_PARALLELISM = 4


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (DEBUG=true or an explicit
    secret_key is still required).
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
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = "sqlite:///authcore.db"

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    active_provider: Literal["local", "remote"] = "local"
    local_enabled: bool = True
    remote_enabled: bool = False
    remote_base_url: str = ""
    remote_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Sessions and lockout
    # ------------------------------------------------------------------

    require_email_verification: bool = False
    access_token_ttl_seconds: int = 3600
    # Lifetime of the refresh token / Session row (7 days).
    session_duration_hours: int = 168
    max_failed_attempts: int = 5
    lockout_duration_minutes: int = 30
    revoke_access_on_sign_out: bool = True

    # ------------------------------------------------------------------
    # Password hashing (argon2id)
    # ------------------------------------------------------------------

    argon2_memory_cost_kib: int = ARGON2_MIN_MEMORY_KIB
    argon2_time_cost: int = ARGON2_MIN_TIME_COST
    argon2_parallelism: int = ARGON2_MIN_PARALLELISM
    password_hash_workers: int = 2

    # ------------------------------------------------------------------
    # Email links
    # ------------------------------------------------------------------

    email_workers: int = 2
    frontend_url: str = "http://localhost:3000"
    # Empty means "derive from frontend_url".
    verify_email_url: str = ""
    reset_password_url: str = ""

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""
    discord_client_id: str = ""
    discord_client_secret: str = ""
    oauth_state_ttl_seconds: int = 600

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    cors_origins: list[str] = ["http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_password_hashing(self) -> "Settings":
        """Reject argon2 parameters weaker than the floor [P1]."""
        if self.argon2_memory_cost_kib < ARGON2_MIN_MEMORY_KIB:
            raise ValueError(f"ARGON2_MEMORY_COST_KIB must be at least {ARGON2_MIN_MEMORY_KIB}.")
        if self.argon2_time_cost < ARGON2_MIN_TIME_COST:
            raise ValueError(f"ARGON2_TIME_COST must be at least {ARGON2_MIN_TIME_COST}.")
        if self.argon2_parallelism < ARGON2_MIN_PARALLELISM:
            raise ValueError(f"ARGON2_PARALLELISM must be at least {ARGON2_MIN_PARALLELISM}.")
        if self.max_failed_attempts < 1:
            raise ValueError("MAX_FAILED_ATTEMPTS must be at least 1.")
        return self

    @model_validator(mode="after")
    def validate_providers(self) -> "Settings":
        """Disable the remote provider when it has nowhere to call."""
        if self.remote_enabled and not self.remote_base_url:
            logger.warning("REMOTE_ENABLED is set but REMOTE_BASE_URL is empty; disabling remote provider")
            self.remote_enabled = False
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def verify_email_link(self) -> str:
        return self.verify_email_url or f"{self.frontend_url.rstrip('/')}/auth/verify-email"

    @property
    def reset_password_link(self) -> str:
        return self.reset_password_url or f"{self.frontend_url.rstrip('/')}/auth/reset-password"

    @property
    def session_duration_seconds(self) -> int:
        return self.session_duration_hours * 3600


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    This is the official FastAPI pattern for config (see FastAPI docs /advanced/settings/).

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
