"""Parley application configuration.

Settings are read from ``parley.settings.yaml`` (non-secret configuration).
The path can be overridden with the ``PARLEY_SETTINGS`` environment variable
or passed explicitly to :func:`load_config`. A missing file is not an error:
every section has working defaults for local development.

Relative storage paths are resolved against the directory that holds the
settings file so that the service behaves the same regardless of the
working directory it was launched from.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("parley.settings.yaml")
SETTINGS_ENV_VAR = "PARLEY_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 3001
    allowed_origins: list = Field(default_factory=lambda: ["http://localhost:5173"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class StorageSettings(BaseModel):
    """Durable store and blob store locations."""
    db_path:          str = "parley.duckdb"
    blob_db_path:     str = "file_metadata.duckdb"
    upload_dir:       str = "uploads"
    max_file_size_mb: int = 20
    # Base URL used when building attachment download links. Empty means
    # "derive from the incoming request".
    public_base_url:  str = ""

    @property
    def max_file_size_bytes(self) -> int:
        return self.max_file_size_mb * 1024 * 1024


class RoomSettings(BaseModel):
    # Re-check ChatMember status on join_room. False accepts any
    # client-declared room key.
    verify_membership: bool = True
    # 0 = no limit on simultaneous WebSocket connections.
    max_connections:   int  = 0


class ReceiptSettings(BaseModel):
    # mark_delivered stamps readAt together with deliveredAt. Turn off to get
    # a real "delivered but unread" state.
    conflate_read_on_delivery: bool = True


class MessageSettings(BaseModel):
    default_page_size: int = 50
    max_page_size:     int = 200


class AppConfig(BaseModel):
    server:   ServerSettings  = Field(default_factory=ServerSettings)
    logging:  LoggingSettings = Field(default_factory=LoggingSettings)
    storage:  StorageSettings = Field(default_factory=StorageSettings)
    rooms:    RoomSettings    = Field(default_factory=RoomSettings)
    receipts: ReceiptSettings = Field(default_factory=ReceiptSettings)
    messages: MessageSettings = Field(default_factory=MessageSettings)


# ---------------------------------------------------------------------------
# Path resolution
# ---------------------------------------------------------------------------


def _resolve_path(value: str, base_dir: Path) -> str:
    """Resolve *value* against *base_dir* unless it is absolute or in-memory."""
    if value == ":memory:" or os.path.isabs(value):
        return value
    return str(base_dir / value)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings from YAML into an :class:`AppConfig`.

    Args:
        settings_path: Explicit settings file. Falls back to ``PARLEY_SETTINGS``
            and then to ``parley.settings.yaml`` in the working directory.
    """
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_path = Path(settings_path)

    data = _load_yaml(settings_path)
    config = AppConfig(**data)

    base_dir = settings_path.resolve().parent
    config.storage.db_path = _resolve_path(config.storage.db_path, base_dir)
    config.storage.upload_dir = _resolve_path(config.storage.upload_dir, base_dir)
    config.storage.blob_db_path = _resolve_path(config.storage.blob_db_path, base_dir)

    logger.info(
        "Settings loaded (server=%s:%s, db=%s, verify_membership=%s, conflate_receipts=%s)",
        config.server.host,
        config.server.port,
        config.storage.db_path,
        config.rooms.verify_membership,
        config.receipts.conflate_read_on_delivery,
    )
    return config


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    """Install *config* as the process-wide config (used by tests)."""
    global _config
    _config = config


def reset_config() -> None:
    """Forget the cached config so the next get_config() reloads it."""
    global _config
    _config = None
