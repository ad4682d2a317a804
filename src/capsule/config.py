"""
Capsule - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables. Supports default values and
runtime configuration updates.

Author: orpheus497
Version: 1.0.0
"""

import copy
import io
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CONFIG_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_ICE_SERVERS,
    DOWNLOADS_DIR,
    FILE_CHUNK_SIZE,
    ICE_GATHERING_TIMEOUT,
    KDF_PBKDF2,
    PBKDF2_ITERATIONS,
    VAULT_DIR,
)
from .errors import ConfigError, ErrorCode

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "crypto": {
        "kdf": KDF_PBKDF2,
        "pbkdf2_iterations": PBKDF2_ITERATIONS,
    },
    "network": {
        "ice_servers": DEFAULT_ICE_SERVERS,
        "gathering_timeout": ICE_GATHERING_TIMEOUT,
    },
    "transfer": {
        "chunk_size": FILE_CHUNK_SIZE,
        "download_dir": "",
    },
    "vault": {
        "path": "",
    },
    "logging": {
        "level": "INFO",
        "file_logging": True,
        "console_logging": True,
    },
}


class Config:
    """Configuration manager for Capsule.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data_dir: Directory holding configuration, vault and downloads
        data: Configuration dictionary
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        data_dir: Optional[Path] = None,
        use_env: bool = True,
    ):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
            data_dir: Data directory (optional, defaults to ~/.capsule)
            use_env: Apply CAPSULE_* environment overrides
        """
        if data_dir is None:
            data_dir = Path(DEFAULT_DATA_DIR).expanduser()
        self.data_dir = Path(data_dir)

        if config_path is None:
            config_path = self.data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.use_env = use_env
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Raises:
            ConfigError: If configuration loading or parsing fails
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                )

            config = self._merge_config(config, file_config)

        if not self.use_env:
            return config
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

        Environment variables follow the pattern: CAPSULE_SECTION_KEY
        For example: CAPSULE_TRANSFER_CHUNK_SIZE=65536

        List values are given as JSON.
        """
        result = copy.deepcopy(config)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key in settings:
                env_var = f"CAPSULE_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)

                if env_value is None:
                    continue

                try:
                    result[section][key] = self._convert(env_value, settings[key])
                except ValueError:
                    # Keep original value if conversion fails
                    pass

        return result

    @staticmethod
    def _convert(raw: str, current: Any) -> Any:
        """Convert a string to the type of the current value.

        Raises:
            ValueError: If the string does not fit that type
        """
        if isinstance(current, bool):
            return raw.lower() in ("true", "1", "yes")
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
        if isinstance(current, list):
            value = json.loads(raw)
            if not isinstance(value, list):
                raise ValueError(f"Expected a JSON list, got {raw!r}")
            return value
        return raw

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        if section not in self.data:
            self.data[section] = {}

        self.data[section][key] = value

    def set_from_string(self, section: str, key: str, raw: str) -> Any:
        """Set a known configuration value from its command line form.

        Returns:
            The converted value

        Raises:
            ConfigError: If the key is unknown or the value has the wrong type
        """
        if key not in DEFAULT_CONFIG.get(section, {}):
            raise ConfigError(
                message=f"Unknown configuration key: {section}.{key}",
                details={"section": section, "key": key},
            )

        try:
            value = self._convert(raw, DEFAULT_CONFIG[section][key])
        except ValueError as e:
            raise ConfigError(
                message=f"Invalid value for {section}.{key}: {e}",
                details={"section": section, "key": key, "value": raw},
            )

        self.set(section, key, value)
        return value

    @property
    def vault_path(self) -> Path:
        """Vault root directory, defaulting to <data_dir>/vault."""
        configured = self.get("vault", "path")
        if configured:
            return Path(configured).expanduser()
        return self.data_dir / VAULT_DIR

    @property
    def download_dir(self) -> Path:
        """Directory receiving completed transfers, defaulting to <data_dir>/downloads."""
        configured = self.get("transfer", "download_dir")
        if configured:
            return Path(configured).expanduser()
        return self.data_dir / DOWNLOADS_DIR

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
            )

    @staticmethod
    def _write_toml(file, data: Dict[str, Any]) -> None:
        """Write configuration data as TOML format."""
        for section, settings in data.items():
            if isinstance(settings, dict):
                file.write(f"[{section}]\n")
                for key, value in settings.items():
                    file.write(f"{key} = {Config._format_value(value)}\n")
                file.write("\n")

    @staticmethod
    def _format_value(value: Any) -> str:
        """Render one value as TOML."""
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, (int, float)):
            return str(value)
        if isinstance(value, dict):
            pairs = ", ".join(f"{k} = {Config._format_value(v)}" for k, v in value.items())
            return "{ " + pairs + " }"
        if isinstance(value, list):
            return "[" + ", ".join(Config._format_value(v) for v in value) + "]"
        return json.dumps(str(value))

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return copy.deepcopy(self.data)

    def to_toml(self) -> str:
        """Render the effective configuration as TOML."""
        buffer = io.StringIO()
        self._write_toml(buffer, self.data)
        return buffer.getvalue()

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Create an example configuration file.

        Raises:
            ConfigError: If file creation fails
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)

            with open(path, "w", encoding="utf-8") as f:
                f.write("# Capsule Configuration File\n")
                f.write("# Generated example configuration\n\n")
                cls._write_toml(f, DEFAULT_CONFIG)

        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            )
