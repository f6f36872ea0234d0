"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for VPNWarden happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_expiry -> SESSION_EXPIRY). Complex fields such as PROFILES
      are parsed from JSON.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic and for the session expiry lower bound.

Profiles:
  PROFILES is a JSON list, one object per VPN profile:
    [{"profile_id": "office", "vpn_proto": "wireguard",
      "node_urls": ["https://gw1.example.org:41194"]}]
  node_urls is a list even though only the first entry is used today.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or credentials/.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("vpnwarden.config")

LOG_FORMAT = "%(asctime)s %(levelname)-5s %(name)s %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Lower bound on SESSION_EXPIRY. Anything shorter would expire freshly issued
# WireGuard configurations before a client could realistically use them.
_MIN_SESSION_EXPIRY = timedelta(minutes=30)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return to_iso(now_utc())


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as a second-precision UTC ISO 8601 string.

    All timestamps in the credential store go through this function so that
    string comparison in SQL matches chronological order. Naive datetimes are
    treated as UTC.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="seconds")


def from_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class ProfileConfig(BaseModel):
    """One VPN profile and the gateway node(s) serving it."""

    profile_id: str = Field(min_length=1, max_length=64)
    display_name: str = ""
    vpn_proto: Literal["wireguard", "openvpn"] = "wireguard"
    node_urls: list[str] = Field(default_factory=list)

    @field_validator("node_urls")
    @classmethod
    def strip_trailing_slash(cls, value: list[str]) -> list[str]:
        return [url.rstrip("/") for url in value]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Node mapping problems are not
    rejected here; core.nodes.NodeDirectory raises ConfigurationError for
    them so the batch job can report a clean diagnostic.
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
    log_level: str = "INFO"

    database_url: str = "sqlite:///vpnwarden.db"

    # ------------------------------------------------------------------
    # Expiry and retention
    # ------------------------------------------------------------------

    # Also the lifetime of WireGuard peers and OAuth authorizations.
    session_expiry: timedelta = timedelta(days=90)
    connection_log_retention: timedelta = timedelta(days=30)
    user_log_retention: timedelta = timedelta(days=30)

    # ------------------------------------------------------------------
    # Gateway nodes
    # ------------------------------------------------------------------

    profiles: list[ProfileConfig] = Field(default_factory=list)
    daemon_timeout: float = 10.0
    daemon_verify_tls: bool = True
    daemon_ca_file: Optional[str] = None
    daemon_client_cert: Optional[str] = None
    daemon_client_key: Optional[str] = None
    sync_workers: int = Field(default=1, ge=1, le=32)

    # ------------------------------------------------------------------
    # HTTP API
    # ------------------------------------------------------------------

    # Shared secret the gateway nodes present when reporting connect and
    # disconnect events. Empty string disables the node API.
    node_api_secret: str = ""
    allowed_hosts: list[str] = Field(default_factory=lambda: ["*"])
    admin_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters, they back the
        HMAC used for API key hashing.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. API keys will not survive restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_session_expiry(self) -> "Settings":
        if self.session_expiry <= _MIN_SESSION_EXPIRY:
            raise ValueError("SESSION_EXPIRY must be longer than 30 minutes.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
