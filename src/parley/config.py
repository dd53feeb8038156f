"""
Parley - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables, and configures logging for the
command line tools.

Author: orpheus497
Version: 1.0.0
"""

import copy
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from rich.logging import RichHandler

from .constants import (
    CIPHER_ENGINE_AEAD,
    CIPHER_ENGINE_XOR,
    CONFIG_FILENAME,
    DEFAULT_CIPHER_ENGINE,
    DEFAULT_DATA_DIR,
    DEFAULT_PAGE_SIZE,
    KEYSTORE_FILENAME,
    LOG_BACKUP_COUNT,
    LOG_DATE_FORMAT,
    LOG_FILENAME,
    LOG_FORMAT,
    LOG_MAX_BYTES,
    PLAINTEXT_MAX_LENGTH,
    PLAINTEXT_MIN_RATIO,
    UNRECOVERABLE_SENTINEL,
)
from .errors import ConfigError, ErrorCode

logger = logging.getLogger(__name__)

ENV_PREFIX = "PARLEY"

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "storage": {
        "data_dir": DEFAULT_DATA_DIR,
        "keystore_file": KEYSTORE_FILENAME,
    },
    "cipher": {
        "engine": DEFAULT_CIPHER_ENGINE,
    },
    "messages": {
        "page_size": DEFAULT_PAGE_SIZE,
        "plaintext_ratio": PLAINTEXT_MIN_RATIO,
        "plaintext_max_length": PLAINTEXT_MAX_LENGTH,
        "sentinel": UNRECOVERABLE_SENTINEL,
        "mark_read_on_load": True,
    },
    "logging": {
        "level": "INFO",
        "console_logging": True,
        "file_logging": False,
        "file_name": LOG_FILENAME,
    },
}


class Config:
    """Configuration manager for Parley.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
        """
        if config_path is None:
            config_path = Path(DEFAULT_DATA_DIR).expanduser() / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()
        self._validate()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Raises:
            ConfigError: If the configuration file cannot be read or parsed
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e
            except OSError as e:
                raise ConfigError(
                    ErrorCode.E701_CONFIG_LOAD_FAILED,
                    f"Failed to read configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e

            config = self._merge_config(config, file_config)
            logger.debug(f"Loaded configuration from {self.config_path}")

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
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: PARLEY_SECTION_KEY
        For example: PARLEY_CIPHER_ENGINE=aead

        Values are converted to the type of the current value; a value that
        cannot be converted is ignored with a warning.
        """
        result = copy.deepcopy(config)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key, current in settings.items():
                env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)
                if env_value is None:
                    continue

                try:
                    if isinstance(current, bool):
                        result[section][key] = env_value.lower() in ("true", "1", "yes")
                    elif isinstance(current, int):
                        result[section][key] = int(env_value)
                    elif isinstance(current, float):
                        result[section][key] = float(env_value)
                    else:
                        result[section][key] = env_value
                except ValueError:
                    logger.warning(f"Ignoring {env_var}: cannot convert '{env_value}'")

        return result

    def _validate(self) -> None:
        """Reject values the pipeline cannot work with.

        Raises:
            ConfigError: With E703 for an invalid value
        """
        engine = self.get("cipher", "engine")
        if engine not in (CIPHER_ENGINE_XOR, CIPHER_ENGINE_AEAD):
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                f"Unknown cipher engine: {engine}",
                {"section": "cipher", "key": "engine"},
            )

        page_size = self.get("messages", "page_size")
        if not isinstance(page_size, int) or page_size <= 0:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                "messages.page_size must be a positive integer",
                {"section": "messages", "key": "page_size"},
            )

        ratio = self.get("messages", "plaintext_ratio")
        if not isinstance(ratio, (int, float)) or not 0.0 <= ratio <= 1.0:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                "messages.plaintext_ratio must be between 0 and 1",
                {"section": "messages", "key": "plaintext_ratio"},
            )

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            default: Default value if key not found
        """
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        self.data.setdefault(section, {})[key] = value

    def data_dir(self) -> Path:
        """Resolved data directory."""
        return Path(self.get("storage", "data_dir", DEFAULT_DATA_DIR)).expanduser()

    def keystore_path(self) -> Path:
        """Path of the SQLite key store file."""
        return self.data_dir() / self.get("storage", "keystore_file", KEYSTORE_FILENAME)

    def log_path(self) -> Path:
        return self.data_dir() / self.get("logging", "file_name", LOG_FILENAME)

    def save(self) -> None:
        """Save current configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                self._write_toml(f, self.data)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    @staticmethod
    def _write_toml(file, data: Dict[str, Any]) -> None:
        """Write configuration data as TOML (one level of tables)."""
        for section, settings in data.items():
            if not isinstance(settings, dict):
                continue
            file.write(f"[{section}]\n")
            for key, value in settings.items():
                if isinstance(value, bool):
                    file.write(f"{key} = {str(value).lower()}\n")
                elif isinstance(value, (int, float)):
                    file.write(f"{key} = {value}\n")
                elif isinstance(value, str):
                    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
                    file.write(f'{key} = "{escaped}"\n')
            file.write("\n")

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Create an example configuration file with the default values.

        Raises:
            ConfigError: If file creation fails
        """
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                f.write("# Parley Configuration File\n")
                f.write("# Generated example configuration\n\n")
                cls._write_toml(f, DEFAULT_CONFIG)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            ) from e


def setup_logging(config: Config) -> None:
    """Configure the root logger from the ``logging`` section.

    Console output goes through rich; file output (if enabled) rotates at
    LOG_MAX_BYTES.
    """
    level_name = str(config.get("logging", "level", "INFO")).upper()
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        raise ConfigError(
            ErrorCode.E703_INVALID_CONFIG,
            f"Unknown log level: {level_name}",
            {"section": "logging", "key": "level"},
        )

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if config.get("logging", "console_logging", True):
        root.addHandler(RichHandler(rich_tracebacks=True, show_path=False))

    if config.get("logging", "file_logging", False):
        log_path = config.log_path()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
        root.addHandler(file_handler)
