"""
Typed reconciliation settings.

Configuration file format (config.yaml):

    db_path: ~/.contact-reconcile/contacts.db
    account: alice@example.com
    group_name: Synced Contacts
    batch_size: 10
    empty_value_policy: clear   # clear | keep | delete
    sync_operation: true
    log_dir: ~/.contact-reconcile/logs
    log_retention_count: 10
    verbose: false
    debug: false

Notes:
    - Every key is optional; missing keys fall back to the defaults below
    - CLI options override values from the file
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Optional

from contact_reconcile.config.loader import ConfigError, ConfigLoader
from contact_reconcile.sync.batch import DEFAULT_BATCH_SIZE
from contact_reconcile.sync.differ import EmptyValuePolicy

logger = logging.getLogger(__name__)

# Default title of the read-only group synced contacts are added to
DEFAULT_GROUP_NAME = "Synced Contacts"

# Default number of log files kept per type
DEFAULT_LOG_RETENTION_COUNT = 10


@dataclass
class ReconcileSettings:
    """
    Settings for the reconcile CLI and engine.

    Attributes:
        db_path: SQLite store path (None for the default in the config dir)
        account: Account scope (None until given in the file or on the CLI)
        group_name: Title of the sync group new contacts are added to
        batch_size: Operation batch flush threshold
        empty_value_policy: Handling of emptied non-address values
        sync_operation: Apply inbound changes with sync-adapter privileges
        log_dir: Log directory (None for the default)
        log_retention_count: Log files kept per type, 0 disables cleanup
        verbose: Verbose console output
        debug: Debug output
    """

    db_path: Optional[str] = None
    account: Optional[str] = None
    group_name: str = DEFAULT_GROUP_NAME
    batch_size: int = DEFAULT_BATCH_SIZE
    empty_value_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR
    sync_operation: bool = True
    log_dir: Optional[str] = None
    log_retention_count: int = DEFAULT_LOG_RETENTION_COUNT
    verbose: bool = False
    debug: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> ReconcileSettings:
        """
        Create settings from a validated configuration dictionary.

        Args:
            data: Dictionary from ConfigLoader, or None

        Returns:
            ReconcileSettings with defaults for missing keys

        Raises:
            ConfigError: If empty_value_policy is not a known policy
        """
        if not data:
            return cls()

        try:
            policy = EmptyValuePolicy(
                data.get("empty_value_policy", EmptyValuePolicy.CLEAR.value)
            )
        except ValueError as e:
            raise ConfigError(
                f"Invalid empty_value_policy '{data.get('empty_value_policy')}'"
            ) from e

        return cls(
            db_path=data.get("db_path"),
            account=data.get("account"),
            group_name=data.get("group_name", DEFAULT_GROUP_NAME),
            batch_size=data.get("batch_size", DEFAULT_BATCH_SIZE),
            empty_value_policy=policy,
            sync_operation=data.get("sync_operation", True),
            log_dir=data.get("log_dir"),
            log_retention_count=data.get(
                "log_retention_count", DEFAULT_LOG_RETENTION_COUNT
            ),
            verbose=data.get("verbose", False),
            debug=data.get("debug", False),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["empty_value_policy"] = self.empty_value_policy.value
        return data

    def with_overrides(self, **overrides: Any) -> ReconcileSettings:
        """Return a copy with every override that is not None applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)


def load_settings(
    config_dir: Optional[Path] = None, config_file: Optional[Path] = None
) -> ReconcileSettings:
    """
    Load and validate settings from YAML.

    Args:
        config_dir: Configuration directory (default: resolved config dir)
        config_file: Explicit configuration file, overrides config_dir

    Returns:
        ReconcileSettings from the file, or defaults if there is none

    Raises:
        ConfigError: If the file cannot be parsed or is invalid
    """
    loader = ConfigLoader(config_dir=config_dir)
    if config_file is not None:
        config = loader.load_from_file(config_file)
        if config:
            loader.validate(config)
    else:
        config = loader.load_and_validate()
    return ReconcileSettings.from_dict(config)
