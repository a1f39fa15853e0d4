"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for formlogin happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). List fields are read as JSON, e.g.
      PUBLIC_PATTERNS='["/static/**", "/login"]'.

  @model_validator(mode="after"): cross-field validation after all fields are
      resolved. Dev mode generates a SECRET_KEY with a warning, production
      mode refuses to start without one.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. The session
       cookie signature and the remember-me token HMAC both rely on it.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [M8] secure_cookies defaults to False so a plain-HTTP dev server works. The
       session and remember-me cookies then travel without the Secure flag;
       production (DEBUG=false) logs a warning until SECURE_COOKIES=true.

  [D1] reveal_user_not_found defaults to False. Turning it on makes the login
       page say "unknown user" instead of the generic "bad credentials", which
       lets anyone enumerate accounts. It must be an explicit deployment choice.

Layer rule: core/ is the kernel. This module may not import from api/, web/
or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("formlogin.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'formlogin.db'}"

# Paths reachable without a login: the allow-list of the original deployment,
# /logout (logout must work with only a remember-me cookie left) and the
# health probe.
_DEFAULT_PUBLIC_PATTERNS = [
    "/static/**",
    "/webjars/**",
    "/public/**",
    "/login",
    "/logout",
    "/register",
    "/favicon.ico",
    "/api/v1/health",
]


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
    # Upper bound for any single persistence call (SQLite busy timeout,
    # connection pool checkout).
    store_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://127.0.0.1"]
    secure_cookies: bool = False
    csrf_enabled: bool = False

    # ------------------------------------------------------------------
    # Form login
    # ------------------------------------------------------------------

    login_url: str = "/login"
    default_success_url: str = "/user"
    public_patterns: list[str] = _DEFAULT_PUBLIC_PATTERNS
    protected_default: bool = True
    reveal_user_not_found: bool = False  # [D1]
    login_rate_limit: str = "10/minute"
    min_password_length: int = 8

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    session_cookie_name: str = "session"
    session_idle_seconds: int = 1800

    # ------------------------------------------------------------------
    # Remember-me
    # ------------------------------------------------------------------

    remember_me_cookie_name: str = "remember-me"
    remember_me_parameter: str = "remember-me"
    # Two weeks, the validity period of the original token repository.
    remember_me_max_age_seconds: int = 1209600
    token_purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions and remember-me cookies will not survive a restart.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. "
                    "Sessions and remember-me cookies will not persist across restarts."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if not self.debug and not self.secure_cookies:  # [M8]
            logger.warning("SECURE_COOKIES is off -- session and remember-me cookies will be sent over plain HTTP")
        if self.reveal_user_not_found:
            logger.warning("reveal_user_not_found is enabled -- login errors disclose whether an account exists")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
