"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Master Auth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or better, accept the values at construction time (TokenService.from_settings,
WebAuthnService.from_settings, ...).

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_access_secret -> JWT_ACCESS_SECRET).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Dev mode generates missing secrets with a warning,
      production mode refuses to start without them.

Security notes:
  Every signing purpose has its own secret. A leaked action-token secret must
  not be able to forge access tokens, so the four signing secrets are required
  to be pairwise distinct.

  Secrets shorter than 32 chars are rejected outright.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or mail/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("masterauth.config")

_SECRET_FIELDS = ("secret_key", "jwt_access_secret", "jwt_refresh_secret", "jwt_action_secret", "session_secret_key")

_DEV_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'masterauth.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments with DEBUG=true and no .env file.
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
    # Empty string is the sentinel for "not configured". The validator either
    # generates a dev value or raises, so callers never see "".
    secret_key: str = ""  # OAuth state cookie (authlib SessionMiddleware)
    database_url: str = ""

    client_url: str = "http://localhost:3000"
    # Base URL the client layer uses to reach the backend API.
    api_url: str = "http://localhost:5500/api/v1"

    cors_origins: list[str] = ["http://localhost:3000"]
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_access_secret: str = ""
    jwt_refresh_secret: str = ""
    jwt_action_secret: str = ""

    access_token_expire_seconds: int = 3600
    refresh_token_expire_seconds: int = 7 * 24 * 3600
    action_token_expire_seconds: int = 24 * 3600

    bcrypt_rounds: int = 10

    # ------------------------------------------------------------------
    # Client session cookie
    # ------------------------------------------------------------------

    session_secret_key: str = ""
    session_cookie_name: str = "session"
    session_max_age_seconds: int = 7 * 24 * 3600
    secure_cookies: bool = True
    gateway_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    totp_issuer: str = "Master Auth"
    totp_label_prefix: str = "MA-"

    webauthn_rp_id: str = "localhost"
    webauthn_rp_name: str = "Master Auth"
    # Empty means "same as client_url" -- the browser origin running the ceremony.
    webauthn_origin: str = ""
    webauthn_registration_timeout_ms: int = 30_000
    webauthn_authentication_timeout_ms: int = 60_000

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_timeout_seconds: float = 10.0
    sender_email: str = ""

    email_max_attempts: int = 3
    email_retry_delay_seconds: float = 5.0
    email_workers: int = 5

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    login_rate_limit: str = "10/minute"
    signup_rate_limit: str = "5/minute"
    two_factor_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the secret and database policy.

        Dev mode (DEBUG=true): auto-generate missing secrets with a warning and
            fall back to a local SQLite file.

        Production mode: refuse to start if any signing secret or DATABASE_URL
            is missing.

        Both modes: reject secrets shorter than 32 characters and reject
            configurations where two signing purposes share a secret.
        """
        for name in _SECRET_FIELDS:
            value = getattr(self, name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                setattr(self, name, secrets.token_hex(32))
                logger.warning("Using auto-generated %s. Tokens will not survive restarts.", name.upper())
            elif len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")

        values = [getattr(self, name) for name in _SECRET_FIELDS]
        if len(set(values)) != len(values):
            raise ValueError("Each signing secret must be distinct.")

        if not self.database_url:
            if not self.debug:
                raise ValueError("DATABASE_URL is required in production mode.")
            self.database_url = _DEV_DB_URL

        if not self.webauthn_origin:
            self.webauthn_origin = self.client_url.rstrip("/")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
