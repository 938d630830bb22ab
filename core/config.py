"""
core/config.py -- EstateGate settings, read once from the environment and .env.

Every tunable of the service lives on Settings: token lifetimes, the
per-account session cap, reset-token lifetime and resend cooldown, slowapi
limit strings, and the outbound mail API. Modules take their values from
get_settings(); nothing else reads os.environ.

SECRET_KEY:
  [M6] Keys shorter than 32 characters are rejected. Access tokens are signed
       with it and refresh/reset token digests are keyed with it.

  [M7] With DEBUG unset or false a missing key stops startup. With DEBUG=true
       a random key is generated, so tokens and stored digests die on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("estategate.config")


class Settings(BaseSettings):
    """EstateGate runtime settings. Every field has a default, so tests build Settings() without a .env."""

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
    # "" means unset; validate_secret_key() replaces it or raises.
    secret_key: str = ""
    database_url: str = "sqlite:///estategate.db"
    app_base_url: str = "http://localhost:3000"

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Tokens and sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_days: int = 30
    # Oldest session is evicted once an account holds this many.
    max_sessions_per_account: int = 10

    reset_token_expire_seconds: int = 15 * 60
    # A second forgot-password request inside this window does not re-issue.
    reset_resend_cooldown_seconds: int = 120

    # ------------------------------------------------------------------
    # Rate limiting (slowapi limit strings, keyed by client IP)
    # ------------------------------------------------------------------

    register_rate_limit: str = "5 per 15 minutes"
    login_rate_limit: str = "10 per 15 minutes"
    forgot_password_rate_limit: str = "3 per 10 minutes"
    reset_password_rate_limit: str = "5 per 15 minutes"
    contact_rate_limit: str = "5/hour"

    # ------------------------------------------------------------------
    # Outbound mail (empty token means "log instead of send")
    # ------------------------------------------------------------------

    mail_api_url: str = "https://api.mailersend.com/v1/email"
    mail_api_token: str = ""
    mail_from_email: str = "no-reply@localhost"
    mail_from_name: str = "EstateGate"
    contact_recipient_email: str = ""
    mail_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Generate a dev key or refuse to start without one [M7]; enforce the minimum length [M6]."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("SECRET_KEY not set; generated one for this process. Sessions end on restart.")
            else:
                raise ValueError("SECRET_KEY is required unless DEBUG=true. Set it in the environment or .env.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @property
    def refresh_token_expire_seconds(self) -> int:
        return self.refresh_token_expire_days * 24 * 60 * 60


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings. Tests derive variants with model_copy(update=...)."""
    return Settings()
