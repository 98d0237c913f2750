"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for StepGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates missing signing keys
      with a warning, production mode refuses to start without them.

Security notes:
  [K1] Three independent signing keys: access tokens (A), refresh tokens (B)
       and challenge envelopes (C). Leaking one must not let an attacker mint
       the other two, so the validator rejects configurations that reuse a key.

  [K2] Keys shorter than 32 chars are rejected outright. HMAC-SHA256 challenge
       digests and JWT signatures both rely on key entropy.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or notify/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("stepguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'stepguard_auth.db'}"

_SIGNING_KEYS = ("access_token_secret", "refresh_token_secret", "envelope_token_secret")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (given DEBUG=true). The
    model_validator enforces production-safety rules at startup.
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

    # ------------------------------------------------------------------
    # Signing keys -- empty string is the "not configured" sentinel
    # ------------------------------------------------------------------

    access_token_secret: str = ""
    refresh_token_secret: str = ""
    envelope_token_secret: str = ""

    # ------------------------------------------------------------------
    # Lifetimes (seconds)
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 20 * 60
    step_up_ttl_seconds: int = 3 * 60
    reset_ttl_seconds: int = 4 * 60

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 10
    totp_issuer: str = "StepGuard"
    recovery_code_count: int = 8

    # ------------------------------------------------------------------
    # Background sweeper
    # ------------------------------------------------------------------

    sweep_interval_seconds: int = 60

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Outbound mail -- empty smtp_host means "log instead of send"
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    mail_from: str = "no-reply@stepguard.local"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_signing_keys(self) -> "Settings":
        """Enforce the signing key policy [K1] [K2].

        Dev mode (DEBUG=true): auto-generate each missing key with a warning.
            Issued tokens will not survive a restart -- acceptable locally.

        Production mode: refuse to start if any key is missing.

        Both modes: reject short keys and reject reuse of one key for two
            token families.
        """
        for name in _SIGNING_KEYS:
            value = getattr(self, name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                setattr(self, name, value)
                logger.warning("Using auto-generated %s. Tokens will not survive a restart.", name.upper())
            if len(value) < 32:
                raise ValueError(f"{name.upper()} must be at least 32 characters.")
        if len({getattr(self, name) for name in _SIGNING_KEYS}) != len(_SIGNING_KEYS):
            raise ValueError("ACCESS_TOKEN_SECRET, REFRESH_TOKEN_SECRET and ENVELOPE_TOKEN_SECRET must differ.")
        if self.bcrypt_rounds < 4 or self.bcrypt_rounds > 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        for name in ("step_up_ttl_seconds", "reset_ttl_seconds", "sweep_interval_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly, except tests that need a one-off configuration.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
