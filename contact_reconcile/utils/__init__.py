"""
contact_reconcile.utils - Utility module

Common utilities including logging configuration and path resolution.
"""

from contact_reconcile.utils.paths import (
    DEFAULT_CONFIG_DIR,
    default_db_path,
    default_log_dir,
    resolve_config_dir,
    resolve_db_path,
    resolve_log_dir,
)

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "default_db_path",
    "default_log_dir",
    "resolve_config_dir",
    "resolve_db_path",
    "resolve_log_dir",
]
