"""
Entry point for running contact_reconcile as a module.

Usage:
    python -m contact_reconcile --help
    python -m contact_reconcile reconcile snapshots.json --account alice
    python -m contact_reconcile dirty --account alice --json
"""

from contact_reconcile.cli import cli

if __name__ == "__main__":
    cli()
