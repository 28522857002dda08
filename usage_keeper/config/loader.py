"""
Configuration management and loading.

Handles the usage statistics settings, the process-wide statistics
toggle and console logging setup.
"""

import logging.config
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import yaml

from ..errors import ConfigError

DEFAULT_AUTH_DIR = "~/.cli-proxy-api"
DEFAULT_DATABASE_NAME = "usage.db"
DEFAULT_BUSY_TIMEOUT = 5.0

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(frozen=True)
class UsageStatisticsConfig:
    """Settings for durable usage statistics."""
    enabled: bool = True
    database_path: Optional[str] = None
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT
    auth_dir: str = DEFAULT_AUTH_DIR

    def __post_init__(self):
        """Validate timeout and directory values."""
        if self.busy_timeout <= 0:
            raise ConfigError("busy_timeout must be > 0", config_key="usage_statistics.busy_timeout")
        if not self.auth_dir or not self.auth_dir.strip():
            raise ConfigError("auth_dir cannot be empty", config_key="auth_dir")

    def resolved_database_path(self) -> str:
        """Database path, defaulting to usage.db under the auth directory."""
        if self.database_path:
            return self.database_path
        return os.path.join(self.auth_dir, DEFAULT_DATABASE_NAME)


def load_usage_config(path: str) -> UsageStatisticsConfig:
    """Load and validate usage statistics configuration from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated UsageStatisticsConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Usage config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        return UsageStatisticsConfig()
    if not isinstance(raw_config, dict):
        raise ConfigError("Configuration must be a mapping")

    allowed_top_keys = {'usage_statistics', 'auth_dir'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ConfigError(f"Unknown configuration keys: {unknown_keys}")

    auth_dir = raw_config.get('auth_dir', DEFAULT_AUTH_DIR)
    if not isinstance(auth_dir, str):
        raise ConfigError("'auth_dir' must be a string", config_key="auth_dir")

    section = raw_config.get('usage_statistics') or {}
    if not isinstance(section, dict):
        raise ConfigError("'usage_statistics' must be a dictionary")

    return _parse_usage_section(section, auth_dir)


def _parse_usage_section(data: Dict, auth_dir: str) -> UsageStatisticsConfig:
    """Parse and validate the usage_statistics section.

    Raises:
        ConfigError: If the section is invalid
    """
    allowed_keys = {'enabled', 'database_path', 'busy_timeout'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ConfigError(f"Unknown keys in usage_statistics: {unknown_keys}")

    enabled = data.get('enabled', True)
    if not isinstance(enabled, bool):
        raise ConfigError("'enabled' must be a boolean", config_key="usage_statistics.enabled")

    database_path = data.get('database_path')
    if database_path is not None:
        if not isinstance(database_path, str) or not database_path.strip():
            raise ConfigError(
                "'database_path' must be a non-empty string",
                config_key="usage_statistics.database_path"
            )

    busy_timeout = data.get('busy_timeout', DEFAULT_BUSY_TIMEOUT)
    if isinstance(busy_timeout, bool) or not isinstance(busy_timeout, (int, float)):
        raise ConfigError("'busy_timeout' must be a number", config_key="usage_statistics.busy_timeout")

    return UsageStatisticsConfig(
        enabled=enabled,
        database_path=database_path,
        busy_timeout=float(busy_timeout),
        auth_dir=auth_dir,
    )


# Process-wide toggle; read on every usage event from many request threads.
_statistics_enabled = threading.Event()
_statistics_enabled.set()


def statistics_enabled() -> bool:
    return _statistics_enabled.is_set()


def set_statistics_enabled(enabled: bool) -> None:
    if enabled:
        _statistics_enabled.set()
    else:
        _statistics_enabled.clear()


def apply_config(config: UsageStatisticsConfig) -> None:
    """Apply runtime settings from a (re)loaded configuration."""
    set_statistics_enabled(config.enabled)


def setup_logging(level: str = "INFO") -> None:
    """Configure console logging for command-line use."""
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": LOG_FORMAT},
        },
        "handlers": {
            "console": {
                "level": level.upper(),
                "formatter": "standard",
                "class": "logging.StreamHandler",
                "stream": "ext://sys.stderr",
            },
        },
        "root": {
            "handlers": ["console"],
            "level": level.upper(),
        },
    })
