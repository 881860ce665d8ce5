"""
Configuration management for ZenTuner.

Loads and validates configuration from YAML files with environment
variable interpolation support. A ``.env`` file next to the config
(or in the working directory) is loaded before interpolation.
"""

import copy
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from zentuner.utils.errors import ConfigurationError


class ConfigManager:
    """
    Manages application configuration loaded from YAML files.

    Features:
    - YAML configuration loading layered over the built-in defaults
    - Environment variable interpolation (${VAR_NAME} and ${VAR_NAME:-fallback})
    - Nested key access with dot notation
    - Configuration validation
    """

    def __init__(self, config_dict: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration manager.

        Args:
            config_dict: Optional pre-loaded configuration dictionary
        """
        self._config: Dict[str, Any] = config_dict or {}
        self._env_pattern = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')

    @classmethod
    def from_file(cls, file_path: Path, merge_defaults: bool = True) -> "ConfigManager":
        """
        Create ConfigManager from YAML file.

        Args:
            file_path: Path to YAML configuration file
            merge_defaults: Layer the file over get_default_config()

        Returns:
            ConfigManager: Initialized with file contents

        Raises:
            ConfigurationError: If file cannot be loaded or parsed
        """
        if not file_path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {file_path}",
                config_key=str(file_path)
            )

        env_path = file_path.parent / '.env'
        if env_path.exists():
            load_dotenv(env_path)

        try:
            with open(file_path, 'r') as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Failed to parse YAML configuration: {e}",
                config_key=str(file_path)
            )

        if not isinstance(loaded, dict):
            raise ConfigurationError(
                "Configuration root must be a mapping",
                config_key=str(file_path)
            )

        config_dict = _deep_merge(get_default_config(), loaded) if merge_defaults else loaded
        manager = cls(config_dict)
        manager._interpolate_env_vars()
        return manager

    def _interpolate_env_vars(self) -> None:
        """Replace ${ENV_VAR} patterns with environment variable values."""
        self._config = self._interpolate(self._config)

    def _interpolate(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self._interpolate(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._interpolate(item) for item in value]
        if isinstance(value, str):
            return self._interpolate_string(value)
        return value

    def _interpolate_string(self, s: str) -> str:
        """Replace ${ENV_VAR} with its value, its fallback, or leave it as is."""
        def replace(match: re.Match) -> str:
            value = os.environ.get(match.group(1))
            if value is not None:
                return value
            if match.group(2) is not None:
                return match.group(2)
            return match.group(0)

        return self._env_pattern.sub(replace, s)

    def get(
        self,
        key: str,
        default: Any = None,
        required: bool = False
    ) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key (supports dot notation: "cache.max_bytes")
            default: Default value if key not found
            required: If True, raise error when key not found

        Returns:
            Configuration value or default

        Raises:
            ConfigurationError: If required key is not found
        """
        value = self._config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                if required:
                    raise ConfigurationError(
                        f"Required configuration key not found: {key}",
                        config_key=key
                    )
                return default

        return value

    def get_section(self, key: str) -> Dict[str, Any]:
        """Get an entire configuration section (empty dict if missing)."""
        value = self.get(key, default={})
        if not isinstance(value, dict):
            return {}
        return value

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value using dot notation."""
        keys = key.split('.')
        current = self._config

        for k in keys[:-1]:
            if k not in current or not isinstance(current[k], dict):
                current[k] = {}
            current = current[k]

        current[keys[-1]] = value

    def to_dict(self) -> Dict[str, Any]:
        """Return configuration as dictionary."""
        return copy.deepcopy(self._config)

    def validate(self, schema: Optional[Dict[str, Any]] = None) -> None:
        """
        Validate configuration against a schema.

        Args:
            schema: Dictionary of dotted keys to rules
                    ({"type": int, "required": True, "min": 0, "max": 2}).
                    Defaults to CONFIG_SCHEMA.

        Raises:
            ConfigurationError: If validation fails
        """
        for key, rules in (schema or CONFIG_SCHEMA).items():
            value = self.get(key)
            expected_type = rules.get("type")

            if value is None:
                if rules.get("required", False):
                    raise ConfigurationError(
                        f"Required configuration missing: {key}",
                        config_key=key
                    )
                continue

            if expected_type and not isinstance(value, expected_type):
                raise ConfigurationError(
                    f"Invalid type for {key}: expected {_type_name(expected_type)}, "
                    f"got {type(value).__name__}",
                    config_key=key
                )

            if "min" in rules and value < rules["min"]:
                raise ConfigurationError(
                    f"{key} must be >= {rules['min']}, got {value}",
                    config_key=key
                )
            if "max" in rules and value > rules["max"]:
                raise ConfigurationError(
                    f"{key} must be <= {rules['max']}, got {value}",
                    config_key=key
                )


CONFIG_SCHEMA: Dict[str, Dict[str, Any]] = {
    "analysis.sensitivity": {"type": (int, float), "min": 0, "max": 100},
    "analysis.bass_sensitivity": {"type": (int, float), "min": 0, "max": 100},
    "processing.default_target_hz": {"type": (int, float), "min": 1},
    "cache.enabled": {"type": bool},
    "cache.max_entries": {"type": int, "min": 1},
    "cache.max_bytes": {"type": int, "min": 1},
    "metering.interval": {"type": (int, float), "min": 0.01},
    "export.block_size": {"type": int, "min": 128},
    "playback.block_size": {"type": int, "min": 64},
}


def _type_name(expected_type: Any) -> str:
    if isinstance(expected_type, tuple):
        return " or ".join(t.__name__ for t in expected_type)
    return expected_type.__name__


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively layer ``override`` over ``base`` (base is modified)."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from file or return defaults.

    Args:
        config_path: Optional path to config file.
                    If None, tries "config/config.yaml"

    Returns:
        Dict[str, Any]: Configuration dictionary
    """
    if config_path is None:
        default_paths = [
            Path("config/config.yaml"),
            Path("config.yaml"),
            Path(__file__).parent.parent.parent / "config" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                config_path = str(path)
                break

    if config_path and Path(config_path).exists():
        manager = ConfigManager.from_file(Path(config_path))
        manager.validate()
        return manager.to_dict()

    return get_default_config()


def get_default_config() -> Dict[str, Any]:
    """Return default configuration values."""
    return {
        "audio": {
            "supported_formats": [".wav", ".aiff", ".aif", ".flac", ".ogg", ".mp3"],
            "max_file_size": 524288000,  # 500MB
        },
        "analysis": {
            "sensitivity": 50,
            "bass_sensitivity": 50,
            "tuning_window_seconds": 4.0,
            "bass_window_seconds": 6.0,
            "bass_start_fraction": 0.2,
            "bass_start_max_seconds": 10.0,
            "phase_window_samples": 4096,
        },
        "processing": {
            "default_target_hz": 432.0,
        },
        "cache": {
            "enabled": True,
            "path": "~/.zentuner/cache.sqlite3",
            "max_entries": 5,
            "max_bytes": 524288000,  # 500MB
            "fingerprint": "stat",
        },
        "export": {
            "single_suffix": "ZenMaster",
            "batch_suffix": "ZenTuner",
            "archive_prefix": "ZenTuner_Batch",
            "block_size": 4096,
        },
        "metering": {
            "interval": 0.15,
            "smoothing": 0.2,
        },
        "playback": {
            "block_size": 1024,
            "device": None,
        },
        "logging": {
            "level": "INFO",
            "format": "text",
            "file": None,
            "history_size": 200,
        },
    }
