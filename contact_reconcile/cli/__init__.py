"""CLI package for contact_reconcile."""

from contact_reconcile.cli.formatters import (
    show_batch_errors,
    show_dirty_set,
    show_reconcile_result,
)
from contact_reconcile.cli.main import cli, get_config_dir, get_config_file

__all__ = [
    "cli",
    "get_config_dir",
    "get_config_file",
    "show_batch_errors",
    "show_dirty_set",
    "show_reconcile_result",
]
