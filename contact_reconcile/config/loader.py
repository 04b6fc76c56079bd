"""
Configuration loader module for contact reconciliation.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Basic validation of configuration structure
- Merging with CLI argument overrides
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from contact_reconcile.sync.differ import VALID_EMPTY_VALUE_POLICIES
from contact_reconcile.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


# Valid configuration keys and their expected types
VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    "db_path": str,
    "account": str,
    "group_name": str,
    "batch_size": int,
    "empty_value_policy": str,
    "sync_operation": bool,
    "log_dir": str,
    "log_retention_count": int,
    "verbose": bool,
    "debug": bool,
}


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load()

        # With custom path
        loader = ConfigLoader(config_dir=Path("/custom/path"))
        config = loader.load()

        # Load from specific file
        config = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.contact-reconcile/ or
                       $CONTACT_RECONCILE_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    def _get_config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Dictionary containing configuration values, or empty dict if file
            doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self._get_config_path())

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Returns an empty dict if the file doesn't exist, allowing
        graceful operation with CLI defaults.

        Args:
            path: Path to the configuration file

        Returns:
            Dictionary containing configuration values, or empty dict if file
            doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        if config is None:
            logger.debug(f"Configuration file is empty: {path}")
            return {}

        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(config).__name__}"
            )

        logger.debug(f"Loaded configuration from {path}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration structure and values.

        Unknown keys are ignored so that newer configuration files keep
        working with older releases.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            if key not in VALID_KEYS:
                continue
            expected_type = VALID_KEYS[key]
            # bool is a subclass of int
            if expected_type is int and isinstance(value, bool):
                raise ConfigError(f"Invalid type for '{key}': expected int, got bool")
            if not isinstance(value, expected_type):
                type_name = getattr(expected_type, "__name__", str(expected_type))
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        if "batch_size" in config and config["batch_size"] < 1:
            raise ConfigError(f"batch_size must be >= 1, got {config['batch_size']}")

        if "log_retention_count" in config and config["log_retention_count"] < 0:
            raise ConfigError(
                f"log_retention_count must be >= 0, "
                f"got {config['log_retention_count']}"
            )

        if "empty_value_policy" in config:
            policy = config["empty_value_policy"]
            if policy not in VALID_EMPTY_VALUE_POLICIES:
                raise ConfigError(
                    f"Invalid empty_value_policy '{policy}'. "
                    f"Must be one of: {', '.join(sorted(VALID_EMPTY_VALUE_POLICIES))}"
                )

        for key in ("account", "group_name"):
            if key in config and not config[key].strip():
                raise ConfigError(f"{key} must not be empty")

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Returns:
            Validated configuration dictionary

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config
