"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Tokenward happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. bcrypt_cost -> BCRYPT_COST). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field checks on the token TTL table.
      Each scope has a hard ceiling, so a misconfigured password-reset window
      can never be stretched to session length (or the other way round).

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or mailer/.
"""

import logging
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokenward.config")

VERSION = "1.0.0"
API_VERSION = "v1"

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'tokenward.db'}"

# Upper bounds per scope, in seconds.
_TTL_CEILINGS = {
    "authentication_token_ttl_seconds": 30 * 24 * 3600,
    "activation_token_ttl_seconds": 7 * 24 * 3600,
    "password_reset_token_ttl_seconds": 24 * 3600,
}


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

    env: Literal["development", "staging", "production"] = "development"
    port: int = Field(default=4000, ge=1, le=65535)
    db_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Credentials and tokens
    # ------------------------------------------------------------------

    # bcrypt accepts 4..31; 12 is the production default.
    bcrypt_cost: int = Field(default=12, ge=4, le=31)

    authentication_token_ttl_seconds: int = 24 * 3600
    activation_token_ttl_seconds: int = 3 * 24 * 3600
    password_reset_token_ttl_seconds: int = 45 * 60

    token_purge_interval_seconds: int = Field(default=6 * 3600, gt=0)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    worker_max_threads: int = Field(default=8, ge=1)
    shutdown_timeout_seconds: float = Field(default=30.0, gt=0)

    # ------------------------------------------------------------------
    # Rate limiting (slowapi limit strings)
    # ------------------------------------------------------------------

    limiter_enabled: bool = True
    limiter_rate: str = "2/second"
    limiter_burst_rate: str = "4/second"

    # ------------------------------------------------------------------
    # SMTP
    # ------------------------------------------------------------------

    smtp_host: str = "sandbox.smtp.mailtrap.io"
    smtp_port: int = 25
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_sender: str = "Tokenward <no-reply@tokenward.local>"

    # ------------------------------------------------------------------
    # CORS
    # ------------------------------------------------------------------

    cors_trusted_origins: list[str] = ["http://localhost:4000"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_token_ttls(self) -> "Settings":
        """Reject TTLs that are non-positive or exceed their scope's ceiling."""
        for name, ceiling in _TTL_CEILINGS.items():
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name.upper()} must be positive.")
            if value > ceiling:
                raise ValueError(f"{name.upper()} must not exceed {ceiling} seconds.")
        if self.env == "production" and not self.smtp_username:
            logger.warning("SMTP_USERNAME is not set -- outgoing mail will be sent unauthenticated.")
        return self

    def ttl_table(self) -> dict[str, timedelta]:
        """Return the scope -> TTL mapping keyed by scope value."""
        return {
            "authentication": timedelta(seconds=self.authentication_token_ttl_seconds),
            "activation": timedelta(seconds=self.activation_token_ttl_seconds),
            "password-reset": timedelta(seconds=self.password_reset_token_ttl_seconds),
        }


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
