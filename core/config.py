"""
core/config.py -- Process configuration via pydantic-settings.

All environment variable reads for DashGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Two layers of configuration exist:
  Settings (this module): process-level, read once from the environment.
      Database location, file paths, rate-limit budget, and the per-source
      discovery pins.
  SystemSettings (auth/settings.py): runtime-editable, persisted row-per-key
      in the database and changed through the admin API.

Environment variables that overlap with SystemSettings (COOKIE_SECURE,
SESSION_DURATION_DAYS, AUTH_MODE, the discovery source settings) take effect
when the runtime settings are applied, not here.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
discovery/ or health/.
"""

import logging
import re
from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("dashgate.config")

VERSION = "1.0.0"

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `db_path` reads from DB_PATH, `npm_email` reads from NPM_EMAIL.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Storage and files
    # ------------------------------------------------------------------

    db_path: str = "/config/dashgate.db"
    config_path: str = "/config/config.yaml"
    # Empty means "<config_path without .yaml>-mappings.yaml".
    mappings_path: str = ""

    # 64 hex characters (32 bytes). Empty means "use or create the key row
    # stored in the database".
    encryption_key: str = ""

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    # None = not set; the stored cookie_secure setting applies.
    cookie_secure: Optional[bool] = None
    # "authelia", "local" or "hybrid". Seeds the enabled providers until the
    # first settings save marks setup as completed.
    auth_mode: str = ""
    session_duration_days: int = 0

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    port: int = 1738
    login_rate_limit: int = 5
    login_rate_window_minutes: int = 15
    max_body_bytes: int = 1 << 20

    # ------------------------------------------------------------------
    # Discovery pins (a *_DISCOVERY=true toggle locks the source against UI edits)
    # ------------------------------------------------------------------

    docker_discovery: bool = False
    docker_socket: str = ""

    traefik_discovery: bool = False
    traefik_url: str = ""
    traefik_username: str = ""
    traefik_password: str = ""

    nginx_discovery: bool = False
    nginx_config_path: str = ""

    npm_discovery: bool = False
    npm_url: str = ""
    npm_email: str = ""
    npm_password: str = ""

    caddy_discovery: bool = False
    caddy_admin_url: str = ""
    caddy_username: str = ""
    caddy_password: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, value: str) -> str:
        """Accept only a 64-character hex key; anything else falls through to the DB key."""
        value = value.strip()
        if value and not _HEX_KEY.match(value):
            logger.warning("ENCRYPTION_KEY ignored: expected exactly 64 hex characters")
            return ""
        return value

    @field_validator("auth_mode")
    @classmethod
    def validate_auth_mode(cls, value: str) -> str:
        value = value.strip().lower()
        if value and value not in ("authelia", "local", "hybrid"):
            logger.warning("AUTH_MODE %r not recognised, ignoring", value)
            return ""
        return value

    @property
    def resolved_mappings_path(self) -> str:
        if self.mappings_path:
            return self.mappings_path
        path = self.config_path
        if path.endswith(".yaml"):
            path = path[: -len(".yaml")]
        return path + "-mappings.yaml"

    def discovery_pins(self) -> dict[str, bool]:
        """Sources whose enablement comes from the environment and is locked in the UI."""
        return {
            "docker": self.docker_discovery,
            "traefik": self.traefik_discovery and bool(self.traefik_url),
            "nginx": self.nginx_discovery,
            "npm": self.npm_discovery and bool(self.npm_url and self.npm_email and self.npm_password),
            "caddy": self.caddy_discovery,
        }


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
