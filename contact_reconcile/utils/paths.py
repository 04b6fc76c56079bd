"""
Path utilities for the contact-reconcile configuration directory.

Everything the tool writes lives below one configuration directory unless
configured otherwise:

    <config-dir>/config.yaml    settings (see contact_reconcile.config)
    <config-dir>/contacts.db    SQLite contact store
    <config-dir>/logs/          run and trace logs

The directory itself comes from --config-dir, then
$CONTACT_RECONCILE_CONFIG_DIR, then ~/.contact-reconcile.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".contact-reconcile"

CONFIG_DIR_ENV_VAR = "CONTACT_RECONCILE_CONFIG_DIR"

DEFAULT_DB_FILE = "contacts.db"
LOG_DIR_NAME = "logs"

# SQLite in-memory database name, never turned into a filesystem path
MEMORY_DB = ":memory:"


def _absolute(path: Path | str) -> Path:
    return Path(path).expanduser().resolve()


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory.

    An empty environment variable counts as unset.
    """
    if config_dir is not None:
        return _absolute(config_dir)

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return _absolute(env_dir)

    return _absolute(DEFAULT_CONFIG_DIR)


def default_db_path(config_dir: Path | str | None = None) -> Path:
    """Path of the SQLite contact store inside the configuration directory."""
    return resolve_config_dir(config_dir) / DEFAULT_DB_FILE


def default_log_dir(config_dir: Path | str | None = None) -> Path:
    return resolve_config_dir(config_dir) / LOG_DIR_NAME


def resolve_db_path(
    db_path: Path | str | None = None, config_dir: Path | str | None = None
) -> Path:
    """
    Resolve the location of the contact store.

    Args:
        db_path: Explicit store path (--db or the db_path setting); "~" is
                 expanded. ":memory:" is returned unchanged.
        config_dir: Configuration directory used when db_path is not set

    Returns:
        Path of the SQLite database
    """
    if db_path is not None and str(db_path) == MEMORY_DB:
        return Path(MEMORY_DB)
    if db_path:
        return _absolute(db_path)
    return default_db_path(config_dir)


def resolve_log_dir(
    log_dir: Path | str | None = None, config_dir: Path | str | None = None
) -> Path:
    """Resolve the log directory: the log_dir setting, else <config-dir>/logs."""
    if log_dir:
        return _absolute(log_dir)
    return default_log_dir(config_dir)
