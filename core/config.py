"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SiteWatch happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Settings are read once through get_settings(), an lru_cache singleton, so
every layer sees the same values. Field names map to env vars
(user_cache_seconds -> USER_CACHE_SECONDS); pydantic-settings also reads an
optional .env file and coerces types.

The two SQLAlchemy URLs default to SQLite files next to the source tree. The
identity cache window (USER_CACHE_SECONDS) applies to both freshness policies
in auth/identity.py; they differ only in whether the numeric user id is
required.

Security notes:
  SECRET_KEY only signs the Starlette session cookie that carries the OAuth
  state between the authorization redirect and the callback. The SiteWatch
  session id cookie is an opaque random token looked up in auth_sessions and
  is not signed.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or sites/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sitewatch.config")

_DATA_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """SiteWatch settings.

    Every field has a default; only SECRET_KEY (outside DEBUG) and the OAuth
    client credentials need to be set for a real deployment.
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

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_cookie_name: str = "sw_session"
    session_max_age_seconds: int = 30 * 24 * 3600
    session_purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Identity provider (LINUX DO Connect). Empty client id disables login.
    # ------------------------------------------------------------------

    ld_oauth_client_id: str = ""
    ld_oauth_client_secret: str = ""
    ld_oauth_authorize_url: str = "https://connect.linux.do/oauth2/authorize"
    ld_oauth_token_url: str = "https://connect.linux.do/oauth2/token"
    ld_oauth_user_endpoint: str = "https://connect.linux.do/api/user"
    identity_timeout_seconds: float = 10.0
    # Default freshness window for cached identities (1 hour).
    user_cache_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    auth_db_url: str = f"sqlite:///{_DATA_DIR / 'sitewatch_auth.db'}"
    sites_db_url: str = f"sqlite:///{_DATA_DIR / 'sitewatch_sites.db'}"

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    report_reason_max_length: int = 500
    report_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            In-flight OAuth logins will not survive a restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. OAuth state will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @property
    def oauth_enabled(self) -> bool:
        return bool(self.ld_oauth_client_id and self.ld_oauth_client_secret)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
