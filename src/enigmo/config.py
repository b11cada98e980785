"""
Enigmo - Configuration Management

Relay settings come from three layers, lowest first: DEFAULT_CONFIG, an
optional TOML file, then ENIGMO_<SECTION>_<KEY> environment variables.

Author: enigmo contributors
Version: 1.0.0
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CONFIG_FILENAME,
    CONNECTION_READ_TIMEOUT,
    DEFAULT_API_PORT,
    DEFAULT_DATA_DIR,
    DEFAULT_HISTORY_LIMIT,
    DEFAULT_HOST,
    DEFAULT_SERVER_PORT,
    MAX_HISTORY_LIMIT,
    MAX_LINE_BYTES,
    MAX_PROTOCOL_ERRORS,
    OUTBOX_MAX_SIZE,
    RATE_LIMIT_CONNECTIONS_PER_MINUTE,
    RATE_LIMIT_MESSAGES_BURST,
    RATE_LIMIT_MESSAGES_PER_MINUTE,
)
from .errors import ConfigError, ErrorCode

DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {
        "host": DEFAULT_HOST,
        "port": DEFAULT_SERVER_PORT,
        "api_port": DEFAULT_API_PORT,
        "outbox_size": OUTBOX_MAX_SIZE,
        "read_timeout": CONNECTION_READ_TIMEOUT,
    },
    "limits": {
        "max_line_bytes": MAX_LINE_BYTES,
        "messages_per_minute": RATE_LIMIT_MESSAGES_PER_MINUTE,
        "messages_burst": RATE_LIMIT_MESSAGES_BURST,
        "connections_per_minute": RATE_LIMIT_CONNECTIONS_PER_MINUTE,
        "max_protocol_errors": MAX_PROTOCOL_ERRORS,
        "default_history_limit": DEFAULT_HISTORY_LIMIT,
        "max_history_limit": MAX_HISTORY_LIMIT,
    },
    "auth": {
        # Argon2 hash of the shared bearer credential; empty disables the check
        "credential_hash": "",
    },
    "logging": {
        "level": "INFO",
        "console_logging": True,
        "file_logging": False,
        "file": "",
    },
}


class Config:
    """Configuration manager for the relay.

    Loads configuration from a TOML file, merges it with defaults,
    and applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Load settings from ``config_path`` (default ``~/.enigmo/config.toml``).

        A missing file is not an error; defaults and environment overrides
        still apply.
        """
        if config_path is None:
            config_path = Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    @classmethod
    def from_dict(cls, overrides: Dict[str, Any]) -> "Config":
        """Build a configuration from defaults plus an in-memory override mapping.

        Environment overrides are not applied; used for embedding and tests.
        """
        config = cls.__new__(cls)
        config.config_path = Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME
        config.data = config._merge_config(copy.deepcopy(DEFAULT_CONFIG), overrides)
        return config

    def _load_config(self) -> Dict[str, Any]:
        """Read the TOML file, if present, on top of the defaults.

        Raises:
            ConfigError: If configuration parsing fails
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E703_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e

            config = self._merge_config(config, file_config)

        return self._apply_env_overrides(config)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Overwrite settings from ENIGMO_* environment variables.

        Environment variables follow the pattern: ENIGMO_SECTION_KEY
        For example: ENIGMO_SERVER_PORT=9000

        Raises:
            ConfigError: If an override cannot be converted to the default's type
        """
        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key, current in settings.items():
                env_var = f"ENIGMO_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)
                if env_value is None:
                    continue

                try:
                    if isinstance(current, bool):
                        settings[key] = env_value.lower() in ("true", "1", "yes")
                    elif isinstance(current, int):
                        settings[key] = int(env_value)
                    elif isinstance(current, float):
                        settings[key] = float(env_value)
                    else:
                        settings[key] = env_value
                except ValueError as e:
                    raise ConfigError(
                        ErrorCode.E702_INVALID_CONFIG,
                        f"Invalid value for {env_var}: {env_value!r}",
                        {"variable": env_var, "value": env_value},
                    ) from e

        return config

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        self.data.setdefault(section, {})[key] = value

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return copy.deepcopy(self.data)
