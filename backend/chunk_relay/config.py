"""Chunk relay application configuration.

Loads settings from ``relay.settings.yaml`` (non-secret configuration) and
overlays environment variables on top, so a container can be configured
without shipping a settings file:

  * PORT, HOST, CORS_ORIGIN, PING_INTERVAL, PING_TIMEOUT, STATIC_DIR
  * CHUNK_SIZE, MAX_FILE_SIZE, MAX_BUFFER_SIZE, CLEANUP_INTERVAL
  * TEMP_DIR, UPLOAD_DIR, LOG_DIR
  * LOG_LEVEL, ENABLE_LOGGING

Values are read once at process start; there is no hot reload.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")

MB = 1024 * 1024
GB = 1024 * MB


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _split_origins(value: str) -> List[str]:
    return [origin.strip() for origin in value.split(",") if origin.strip()]


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:                  str       = "0.0.0.0"
    port:                  int       = 3000
    allowed_origins:       List[str] = Field(default_factory=lambda: ["*"])
    ping_interval_seconds: float     = 25.0
    ping_timeout_seconds:  float     = 60.0
    static_dir:            str       = "public"


class TransferSettings(BaseModel):
    """Limits applied to chunk transfers.

    ``chunk_size`` is advertised to clients only; the server accepts chunks
    of any size up to ``max_buffer_size`` (the WebSocket message limit).
    """
    chunk_size:               int   = 10 * MB
    max_file_size:            int   = 2 * GB
    max_buffer_size:          int   = 100 * MB
    cleanup_interval_seconds: float = 3600.0

    @field_validator("chunk_size", "max_file_size", "max_buffer_size", "cleanup_interval_seconds")
    @classmethod
    def _positive(cls, value):
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value


class StorageSettings(BaseModel):
    temp_dir:   str = "./temp"
    upload_dir: str = "./uploads"
    log_dir:    str = "./logs"


class LoggingSettings(BaseModel):
    level:            str  = "info"
    activity_enabled: bool = True


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    transfer: TransferSettings = Field(default_factory=TransferSettings)
    storage:  StorageSettings  = Field(default_factory=StorageSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

# env var -> (section, key, converter)
_ENV_OVERRIDES: Dict[str, Tuple[str, str, Callable[[str], Any]]] = {
    "HOST":             ("server",   "host",                     str),
    "PORT":             ("server",   "port",                     int),
    "CORS_ORIGIN":      ("server",   "allowed_origins",          _split_origins),
    "PING_INTERVAL":    ("server",   "ping_interval_seconds",    float),
    "PING_TIMEOUT":     ("server",   "ping_timeout_seconds",     float),
    "STATIC_DIR":       ("server",   "static_dir",               str),
    "CHUNK_SIZE":       ("transfer", "chunk_size",               int),
    "MAX_FILE_SIZE":    ("transfer", "max_file_size",            int),
    "MAX_BUFFER_SIZE":  ("transfer", "max_buffer_size",          int),
    "CLEANUP_INTERVAL": ("transfer", "cleanup_interval_seconds", float),
    "TEMP_DIR":         ("storage",  "temp_dir",                 str),
    "UPLOAD_DIR":       ("storage",  "upload_dir",               str),
    "LOG_DIR":          ("storage",  "log_dir",                  str),
    "LOG_LEVEL":        ("logging",  "level",                    str),
    "ENABLE_LOGGING":   ("logging",  "activity_enabled",         _parse_bool),
}


def _apply_env_overrides(data: Dict[str, Any], environ: Dict[str, str]) -> Dict[str, Any]:
    """Overlay recognised environment variables onto raw settings data."""
    for env_name, (section, key, convert) in _ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = convert(raw)
        except ValueError:
            logger.warning("Ignoring invalid value for %s: %r", env_name, raw)
            continue
        data.setdefault(section, {})
        if data[section] is None:
            data[section] = {}
        data[section][key] = value
    return data


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_path: Optional[Path] = None,
    environ: Optional[Dict[str, str]] = None,
) -> AppSettings:
    """Load the settings file and merge environment overrides into *AppSettings*.

    Args:
        settings_path: YAML file to read. Defaults to ``RELAY_SETTINGS_FILE``
            from the environment, then ``relay.settings.yaml``.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Validated AppSettings.
    """
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    path = settings_path or Path(environ.get("RELAY_SETTINGS_FILE", SETTINGS_FILE))
    data = _apply_env_overrides(_load_yaml(path), environ)

    app_settings = AppSettings(**data)
    logger.info(
        "Settings loaded (server=%s:%s, temp_dir=%s, cleanup_interval=%ss)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.storage.temp_dir,
        app_settings.transfer.cleanup_interval_seconds,
    )
    return app_settings


_config: Optional[AppSettings] = None


def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    """Forget cached settings (for testing)."""
    global _config
    _config = None
