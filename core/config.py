"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for DealFlow happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY, microsoft_client_id -> MICROSOFT_CLIENT_ID).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Handles the DEBUG-conditional SECRET_KEY rule and the
      DEBUG-only reset-token exposure switch.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session cookies
       are HMAC-signed with it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [R1] EXPOSE_RESET_TOKEN returns the raw reset token in the forgot-password
       response for operators running without an email relay. It is forced
       off unless DEBUG is also true, so a deployed system never sends the
       token over the network.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("dealflow.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'dealflow_auth.db'}"


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
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    app_url: str = "http://localhost:8000"

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_ttl_seconds: int = 7 * 24 * 60 * 60

    # ------------------------------------------------------------------
    # Local credentials
    # ------------------------------------------------------------------

    reset_token_expire_hours: int = 24
    expose_reset_token: bool = False  # [R1]
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Microsoft Entra ID federation (empty client id/secret = disabled)
    # ------------------------------------------------------------------

    microsoft_client_id: str = ""
    microsoft_client_secret: str = ""
    microsoft_tenant_id: str = "common"
    federation_http_timeout: float = 10.0
    jwks_cache_ttl_seconds: int = 24 * 60 * 60
    state_ttl_seconds: int = 10 * 60

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7] and the reset-token gate [R1].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

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
        if self.expose_reset_token and not self.debug:
            logger.warning("EXPOSE_RESET_TOKEN ignored outside DEBUG mode.")
            self.expose_reset_token = False
        return self

    @property
    def federation_configured(self) -> bool:
        return bool(self.microsoft_client_id and self.microsoft_client_secret)

    @property
    def federation_redirect_uri(self) -> str:
        return f"{self.app_url.rstrip('/')}/api/v1/auth/microsoft/callback"


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
