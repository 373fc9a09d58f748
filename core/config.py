"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead, or receive the Settings instance from whoever built the service.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.
      List fields (PREVIOUS_SECRET_KEYS, ALLOWED_HOSTS, CORS_ORIGINS) are read
      as JSON arrays.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic: dev mode generates a key with warning, production mode refuses to
      start without one.

Security notes:
  [M6] Signing keys shorter than 32 chars are rejected outright, current and
       previous alike. HMAC-based JWT signing relies on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. The signing key is never a literal in code.

  [M8] Key rotation: tokens are always signed with SECRET_KEY. Keys listed in
       PREVIOUS_SECRET_KEYS are accepted for verification only, so tokens minted
       before a rotation stay valid until they expire.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("smerauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'smerauth.db'}"

# HMAC family only. Asymmetric algorithms would need a key pair, and "none"
# must never be configurable.
_ALLOWED_ALGORITHMS = {"HS256", "HS384", "HS512"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `secret_key` reads from SECRET_KEY, `debug` reads from DEBUG.
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
    previous_secret_keys: list[str] = []
    database_url: str = _DEFAULT_DB_URL
    # Per-request deadline handed to the core via RequestContext.
    request_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    jwt_algorithm: str = "HS512"
    token_issuer: str = "smer-auth"
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 30 * 24 * 3600
    # Activation and password-reset links.
    one_time_token_ttl_seconds: int = 10 * 60

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    # bcrypt work factor. Tests lower this to 4 to keep the suite fast.
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Links and mail
    # ------------------------------------------------------------------

    # Activation links point at the API; reset links point at the frontend
    # page that collects the new password.
    public_base_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"
    # Where GET /auth/activate/{token} redirects after success. Empty = JSON body.
    activation_redirect_url: str = ""
    # True = POST /auth/password-reset answers 202 even for unknown or
    # unverified emails (no account enumeration). False = report the failure.
    conceal_unknown_reset_email: bool = False

    # Empty host = mail is logged instead of sent (dev mode).
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_timeout_seconds: float = 10.0
    mail_from: str = "no-reply@localhost"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters, including every
            key in PREVIOUS_SECRET_KEYS [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not survive a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if any(len(key) < 32 for key in self.previous_secret_keys):
            raise ValueError("Every PREVIOUS_SECRET_KEYS entry must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_token_settings(self) -> "Settings":
        """Reject algorithms outside the HMAC family and non-positive TTLs."""
        if self.jwt_algorithm not in _ALLOWED_ALGORITHMS:
            raise ValueError(f"JWT_ALGORITHM must be one of {sorted(_ALLOWED_ALGORITHMS)}.")
        for name in ("access_token_ttl_seconds", "refresh_token_ttl_seconds", "one_time_token_ttl_seconds"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive.")
        return self

    @property
    def verification_keys(self) -> list[str]:
        """Current key first, then previous keys, for token verification."""
        return [self.secret_key, *self.previous_secret_keys]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    All modules should call get_settings() rather than constructing Settings()
    directly; the core components receive values through their constructors.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
