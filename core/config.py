"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Storegate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_duration_hours -> SESSION_DURATION_HOURS).

  @model_validator(mode="after"): cross-field sanity checks after all fields
      are resolved. Durations and TTLs must be positive; the store timeout
      bounds every database call made on the request path.

Services never read settings themselves. The lifespan in api/main.py and the
CLI in main.py read them once and pass plain values into constructors, so
tests can build services with whatever values they need.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
cache/, tenancy/, or enforcement/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("storegate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'storegate.db'}"


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
    database_url: str = _DEFAULT_DB_URL
    # Upper bound for acquiring a connection / waiting on a lock. Past this
    # the store raises and enforcement checks fail closed.
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Sessions and credentials
    # ------------------------------------------------------------------

    session_duration_hours: int = 24 * 7
    session_cookie_name: str = "session_token"
    secure_cookies: bool = False
    password_min_length: int = 1
    # 0 disables automatic lockout; locked_until is then only set by an admin.
    lockout_threshold: int = 0
    lockout_minutes: int = 15

    # ------------------------------------------------------------------
    # Tenancy
    # ------------------------------------------------------------------

    domain_cache_ttl_seconds: int = 5 * 60

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    signup_rate_limit: str = "5/minute"
    allowed_origins: list[str] = ["http://localhost", "http://localhost:3000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_durations(self) -> "Settings":
        """Reject durations that would make every session or cache entry stale on arrival."""
        if self.session_duration_hours <= 0:
            raise ValueError("SESSION_DURATION_HOURS must be positive.")
        if self.domain_cache_ttl_seconds <= 0:
            raise ValueError("DOMAIN_CACHE_TTL_SECONDS must be positive.")
        if self.store_timeout_seconds <= 0:
            raise ValueError("STORE_TIMEOUT_SECONDS must be positive.")
        if self.lockout_threshold < 0:
            raise ValueError("LOCKOUT_THRESHOLD cannot be negative.")
        if self.lockout_threshold and self.lockout_minutes <= 0:
            raise ValueError("LOCKOUT_MINUTES must be positive when lockout is enabled.")
        if self.debug and self.database_url == _DEFAULT_DB_URL:
            logger.warning("Using the default SQLite database at %s", _DEFAULT_DB_URL)
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
