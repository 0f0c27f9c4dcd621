"""
core/config.py -- IdentityHub settings, read once from the environment / .env.

Every environment read goes through get_settings(); nothing else in the tree
touches os.environ. Field names map to upper-case env vars (jira_client_id ->
JIRA_CLIENT_ID). List fields (ALLOWED_HOSTS, JIRA_SCOPES, FINDING_LABELS) are
given as JSON arrays.

SECRET_KEY keys three things at once: the session JWT signature, the API key
HMAC and the Fernet cipher sealing stored Jira tokens. So:
  - under 32 characters it is rejected [M6];
  - outside DEBUG a missing key stops startup [M7]. A per-process random key
    would log everyone out and orphan every stored Jira token on restart.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or tracker/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("identityhub.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'identityhub.db'}"


class Settings(BaseSettings):
    """Runtime configuration. Every field has a default except a production SECRET_KEY."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # "" means unset; validate_secret_key replaces or rejects it.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL
    # Host headers accepted by TrustedHostMiddleware. JSON list in the env var.
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    session_expire_seconds: int = 24 * 60 * 60

    # ------------------------------------------------------------------
    # Rate limiting / API keys
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    signup_rate_limit: str = "5/minute"
    max_api_keys_per_user: int = 10

    # ------------------------------------------------------------------
    # Jira Cloud OAuth 2.0 (3LO)
    # ------------------------------------------------------------------

    jira_client_id: str = ""
    jira_client_secret: str = ""
    jira_redirect_uri: str = "http://localhost:8000/api/v1/jira/callback"
    jira_scopes: list[str] = [
        "read:jira-work",
        "write:jira-work",
        "read:jira-user",
        "offline_access",
    ]
    jira_authorize_url: str = "https://auth.atlassian.com/authorize"
    jira_token_url: str = "https://auth.atlassian.com/oauth/token"  # noqa: S105 -- URL, not a password
    jira_api_base_url: str = "https://api.atlassian.com"
    # Upper bound for every outbound tracker call, in seconds.
    tracker_timeout_seconds: float = 15.0

    # ------------------------------------------------------------------
    # OAuth CSRF state ledger
    # ------------------------------------------------------------------

    oauth_state_ttl_seconds: int = 5 * 60
    oauth_state_purge_seconds: int = 10 * 60

    # ------------------------------------------------------------------
    # Front end / findings
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:5173"
    finding_labels: list[str] = ["nhi-finding", "created-via-api", "created-from-identityhub"]
    default_issue_type: str = "Bug"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Generate a throwaway key in DEBUG, otherwise require one [M7]; min length [M6]."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "DEBUG: generated a throwaway SECRET_KEY. "
                    "Sessions and stored Jira tokens will not persist across restarts."
                )
            else:
                raise ValueError("SECRET_KEY must be set when DEBUG is off (or set DEBUG=true for local runs).")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Process-wide Settings instance. Tests that change env vars call get_settings.cache_clear()."""
    return Settings()
