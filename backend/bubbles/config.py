"""Bubbles application configuration.

Loads settings from two YAML files:
  * bubbles.settings.yaml: non-secret configuration
  * bubbles.secrets.yaml: secrets (never committed)

Relative storage paths are resolved against the directory that holds the
settings file, so the server can be started from any working directory.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("bubbles.settings.yaml")
SECRETS_FILE  = Path("bubbles.secrets.yaml")

IN_MEMORY_DB = ":memory:"


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
    secret_key:     str = "change-me-in-production"
    algorithm:      str = "HS256"
    expire_minutes: int = 60 * 24 * 7


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    """Where chats, messages and uploaded images are kept."""
    db_path:         str = "bubbles.duckdb"
    files_db_path:   str = "file_metadata.duckdb"
    upload_dir:      str = "uploads"
    public_base_url: str = "http://localhost:8000"


class MessageSettings(BaseModel):
    edit_window_seconds: int = 10 * 60
    max_content_length:  int = 5000
    max_images:          int = 5
    default_page_size:   int = 20
    max_page_size:       int = 50

    @field_validator("default_page_size", "max_page_size", "max_images")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value


class RealtimeSettings(BaseModel):
    typing_idle_seconds:     float = 2.0
    typing_refresh_seconds:  float = 3.0
    reconnect_base_delay:    float = 1.0
    reconnect_max_delay:     float = 30.0
    pending_queue_max:       int   = 1000
    request_timeout_seconds: float = 10.0


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    storage:  StorageSettings  = Field(default_factory=StorageSettings)
    messages: MessageSettings  = Field(default_factory=MessageSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


def _resolve_path(value: str, base_dir: Path) -> str:
    if value == IN_MEMORY_DB:
        return value
    path = Path(value)
    if path.is_absolute():
        return str(path)
    return str(base_dir / path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)

    base_dir = settings_path.resolve().parent
    app_settings.storage.db_path    = _resolve_path(app_settings.storage.db_path, base_dir)
    app_settings.storage.files_db_path = _resolve_path(app_settings.storage.files_db_path, base_dir)
    app_settings.storage.upload_dir = _resolve_path(app_settings.storage.upload_dir, base_dir)

    logger.info(
        "Settings loaded (server=%s:%s, db=%s, edit_window=%ss)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.db_path,
        app_settings.messages.edit_window_seconds,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppSettings) -> None:
    """Replace the process-wide settings (used by tests and embedders)."""
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
