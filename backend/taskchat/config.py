"""Taskchat application configuration.

Loads settings from two YAML files:
  * taskchat.settings.yaml: non-secret configuration
  * taskchat.secrets.yaml: secrets (never committed)

Either path can be overridden with TASKCHAT_SETTINGS_FILE /
TASKCHAT_SECRETS_FILE. The JWT secret may also be supplied through
TASKCHAT_JWT_SECRET, which wins over the secrets file.
"""
from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("taskchat.settings.yaml")
SECRETS_FILE  = Path("taskchat.secrets.yaml")

JWT_SECRET_ENV = "TASKCHAT_JWT_SECRET"


class ConfigurationError(RuntimeError):
    """Raised when required configuration is missing or unusable."""


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: Optional[str] = None


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 3002
    reload:          bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class DatabaseSettings(BaseModel):
    """DuckDB file holding the users and messages tables.

    ``:memory:`` gives a throwaway database (tests, demos).
    """
    path: str = "taskchat.duckdb"


class AuthSettings(BaseModel):
    algorithm:            str = "HS256"
    leeway_seconds:       int = 0
    token_expire_minutes: int = 60 * 24


class ChatSettings(BaseModel):
    """Messaging limits shared by the socket channel and the HTTP fallback."""
    max_content_length: int = Field(default=2000, ge=1)
    # Admin account students talk to from the student chat page.
    support_user_id:    int = 1


class LoggingSettings(BaseModel):
    level: Literal["debug", "info", "warning", "error"] = "info"

    @field_validator("level", mode="before")
    @classmethod
    def _lower(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)

    def jwt_secret(self) -> str:
        """Return the token signing secret or fail loudly."""
        secret = self.secrets.jwt.secret_key
        if not secret:
            raise ConfigurationError(
                f"JWT secret is not configured; set secrets.jwt.secret_key in "
                f"{SECRETS_FILE} or the {JWT_SECRET_ENV} environment variable"
            )
        return secret


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = settings_path or Path(os.environ.get("TASKCHAT_SETTINGS_FILE", SETTINGS_FILE))
    secrets_path  = secrets_path or Path(os.environ.get("TASKCHAT_SECRETS_FILE", SECRETS_FILE))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    env_secret = os.environ.get(JWT_SECRET_ENV)
    if env_secret:
        secrets_data.setdefault("jwt", {})["secret_key"] = env_secret

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, max_content_length=%d)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.database.path,
        app_settings.chat.max_content_length,
    )
    return app_settings


@lru_cache(maxsize=1)
def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    return load_settings()


def reset_config() -> None:
    """Drop the cached settings so the next get_config() reloads them."""
    get_config.cache_clear()
