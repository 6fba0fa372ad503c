from __future__ import annotations

import os
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .logger import get_logger

logger = get_logger("config")

CONFIG_ENV_VAR = "PMT_CONFIG"
DEFAULT_DATA_DIR = os.path.expanduser("~/.local/share/postmessage_tracker")


class StorageConfig(BaseModel):
    """Where tracked listeners and user settings are kept."""

    state_path: str = os.path.join(DEFAULT_DATA_DIR, "state.json")
    settings_path: str = os.path.join(DEFAULT_DATA_DIR, "settings.json")
    debounce_seconds: float = Field(default=0.1, ge=0.0)


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = "127.0.0.1"
    port: int = 8765


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    dir: Optional[str] = "logs"


class TrackerConfig(BaseModel):
    """Defaults applied to durable settings that have never been written."""

    dedupe_enabled: bool = True
    log_url: str = ""
    report_timeout: float = Field(default=10.0, gt=0.0)


class AppConfig(BaseModel):
    """Main application configuration model."""

    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)


def _search_paths() -> List[str]:
    return [
        "postmessage_tracker.yml",
        "postmessage_tracker.yaml",
        os.path.expanduser("~/.config/postmessage_tracker/config.yml"),
    ]


def find_config_file(explicit: Optional[str] = None) -> Optional[str]:
    """Resolve the config path: explicit argument, then $PMT_CONFIG, then the search paths."""
    if explicit:
        return explicit
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return env_path
    for path in _search_paths():
        if os.path.exists(path):
            return path
    return None


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load the application configuration from a YAML file.

    A missing file, malformed YAML or a failed validation never aborts startup;
    the problem is logged and defaults are used instead.
    """
    config_path = find_config_file(path)
    config_data = {}
    if config_path and os.path.exists(config_path):
        logger.info("Using configuration file: %s", config_path)
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, IOError) as e:
            logger.error("Failed to load or parse %s: %s", config_path, e)
    elif config_path:
        logger.warning("Configuration file %s not found, using default settings.", config_path)

    if not isinstance(config_data, dict):
        logger.error("Configuration root in %s must be a mapping", config_path)
        config_data = {}

    try:
        return AppConfig(**config_data)
    except ValidationError as e:
        logger.error("Configuration validation failed: %s", e)
        return AppConfig()
