"""
contact_reconcile.config - Configuration management module

Contains configuration loading, validation, and default settings.
"""

from contact_reconcile.config.loader import (
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ConfigLoader,
)
from contact_reconcile.config.settings import (
    DEFAULT_GROUP_NAME,
    ReconcileSettings,
    load_settings,
)

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_GROUP_NAME",
    "ReconcileSettings",
    "load_settings",
]
