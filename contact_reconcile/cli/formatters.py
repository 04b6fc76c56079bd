"""CLI output formatting functions.

This module contains functions for displaying reconcile results, dirty
sets and batch errors on the command line.
"""

from collections.abc import Mapping
from typing import TYPE_CHECKING, Union

import click

if TYPE_CHECKING:
    from contact_reconcile.sync.batch import BatchError
    from contact_reconcile.sync.contact import ContactStub
    from contact_reconcile.sync.engine import ReconcileResult

# Maximum number of items listed per section
MAX_LISTED = 10


def show_batch_errors(errors: list["BatchError"], verbose: bool = False) -> None:
    """
    Display chunks that failed to apply.

    Args:
        errors: Batch errors to display
        verbose: If True, list the operations of every failed chunk
    """
    if not errors:
        return

    click.echo(click.style(f"\n{len(errors)} chunk(s) failed to apply:", fg="red"))
    for error in errors[:MAX_LISTED]:
        click.echo(f"  ! {error}")
        if verbose:
            for entry in error.entries:
                click.echo(f"      {entry.describe()}")
    if len(errors) > MAX_LISTED:
        click.echo(f"  ... and {len(errors) - MAX_LISTED} more")


def show_reconcile_result(result: "ReconcileResult", verbose: bool = False) -> None:
    """
    Display the outcome of a reconcile pass.

    Args:
        result: The ReconcileResult to display
        verbose: If True, list skipped snapshots and failed operations
    """
    click.echo(result.summary())

    if result.skipped:
        click.echo(
            click.style(f"\n{len(result.skipped)} snapshot(s) skipped", fg="yellow")
        )
        if verbose:
            for skipped in result.skipped[:MAX_LISTED]:
                click.echo(f"  - {skipped.snapshot.display_name}: {skipped.reason}")
            if len(result.skipped) > MAX_LISTED:
                click.echo(f"  ... and {len(result.skipped) - MAX_LISTED} more")

    show_batch_errors(result.errors, verbose=verbose)

    if result.success:
        click.echo(click.style("\nReconcile completed successfully.", fg="green"))


def show_dirty_set(stubs: Mapping[Union[int, str], "ContactStub"]) -> None:
    """Display the outbound dirty set, deletions first."""
    if not stubs:
        click.echo("No local changes to upload.")
        return

    deleted = [stub for stub in stubs.values() if stub.deleted]
    modified = [stub for stub in stubs.values() if not stub.deleted]

    click.echo(f"{len(stubs)} contact(s) with local changes:")
    for stub in deleted:
        click.echo(click.style(f"  - {stub.key}  {stub.label}  (deleted)", fg="red"))
    for stub in modified:
        click.echo(f"  ~ {stub.key}  {stub.label}")
