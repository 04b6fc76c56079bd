"""
Command-line interface for contact_reconcile.

Provides CLI commands for applying remote contact snapshots to the local
store, inspecting and acknowledging local changes, and managing the
persisted sync state.

Usage:
    # Show help
    contact-reconcile --help

    # Create the local store
    contact-reconcile init

    # Apply a batch of remote snapshots
    contact-reconcile reconcile snapshots.json --account alice

    # Upload cycle
    contact-reconcile dirty --account alice --json > dirty.json
    contact-reconcile finalize dirty.json --account alice
"""

import json
import sys
from pathlib import Path
from typing import Any, NoReturn, Optional

import click
import yaml

from contact_reconcile import __version__
from contact_reconcile.cli.formatters import (
    show_batch_errors,
    show_dirty_set,
    show_reconcile_result,
)
from contact_reconcile.config.loader import DEFAULT_CONFIG_FILE, ConfigError
from contact_reconcile.config.settings import ReconcileSettings, load_settings
from contact_reconcile.storage.db import SqliteContactStore
from contact_reconcile.storage.store import StoreError
from contact_reconcile.sync.contact import ContactSnapshot, ContactStub
from contact_reconcile.sync.differ import VALID_EMPTY_VALUE_POLICIES, EmptyValuePolicy
from contact_reconcile.sync.engine import ReconcileConfigError, ReconciliationEngine
from contact_reconcile.utils import resolve_config_dir, resolve_db_path, resolve_log_dir
from contact_reconcile.utils.logging import (
    cleanup_old_logs,
    get_logger,
    get_trace_log_path,
    setup_logging,
    setup_trace_logger,
)


def get_config_dir(config_dir: Optional[str]) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: Optional[str]) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / DEFAULT_CONFIG_FILE


def _fail(message: str) -> NoReturn:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def _settings(ctx: click.Context) -> ReconcileSettings:
    settings: ReconcileSettings = ctx.obj["settings"]
    return settings


def _require_account(ctx: click.Context, account: Optional[str]) -> str:
    """Resolve the account from the option or the configuration file."""
    account = account or _settings(ctx).account
    if not account:
        raise click.UsageError(
            "No account given. Use --account or set 'account' in config.yaml."
        )
    return account


def _open_store(ctx: click.Context) -> SqliteContactStore:
    """Open the local store, creating the schema if needed."""
    db_path: Path = ctx.obj["db_path"]
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = SqliteContactStore(str(db_path))
    store.initialize()
    return store


def _create_engine(
    store: SqliteContactStore, settings: ReconcileSettings
) -> ReconciliationEngine:
    return ReconciliationEngine(
        store,
        batch_size=settings.batch_size,
        empty_value_policy=settings.empty_value_policy,
        sync_operation=settings.sync_operation,
    )


def _read_json(path: Path) -> Any:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise click.ClickException(f"{path} is not valid JSON: {e}") from e


@click.group()
@click.version_option(version=__version__, prog_name="contact-reconcile")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CONTACT_RECONCILE_CONFIG_DIR",
    help="Configuration directory path (default: ~/.contact-reconcile).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CONTACT_RECONCILE_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.option(
    "--db",
    "db_path",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    help="SQLite contact store (default: <config-dir>/contacts.db).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: Optional[str],
    config_file: Optional[str],
    db_path: Optional[str],
) -> None:
    """
    Incremental contact reconciliation.

    Applies remote contact snapshots to a local contact store with minimal
    field-level changes, and tracks local changes for upload.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    try:
        settings = load_settings(resolved_config_dir, resolved_config_file)
    except ConfigError as e:
        # Keep working with defaults
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        settings = ReconcileSettings()

    settings = settings.with_overrides(db_path=db_path, verbose=verbose or None)
    ctx.obj["settings"] = settings
    ctx.obj["verbose"] = settings.verbose or settings.debug

    ctx.obj["db_path"] = resolve_db_path(settings.db_path, resolved_config_dir)

    log_dir = resolve_log_dir(settings.log_dir, resolved_config_dir)
    ctx.obj["log_dir"] = log_dir

    setup_logging(verbose=ctx.obj["verbose"], log_dir=log_dir, enable_file_logging=True)
    if settings.log_retention_count > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=settings.log_retention_count)


# =============================================================================
# Init Command
# =============================================================================


@cli.command("init")
@click.option(
    "--write-config",
    is_flag=True,
    help="Also write a configuration file with the current settings.",
)
@click.option("--force", is_flag=True, help="Overwrite an existing configuration file.")
@click.pass_context
def init_command(ctx: click.Context, write_config: bool, force: bool) -> None:
    """
    Create the local contact store.

    Examples:

        contact-reconcile init

        # Also write config.yaml
        contact-reconcile init --write-config
    """
    logger = get_logger(__name__)

    try:
        _open_store(ctx)
    except (StoreError, OSError) as e:
        logger.error(f"Failed to create contact store: {e}")
        _fail(str(e))

    click.echo(click.style(f"Contact store ready: {ctx.obj['db_path']}", fg="green"))

    if not write_config:
        return

    config_file: Path = ctx.obj["config_file"]
    if config_file.exists() and not force:
        _fail(f"Configuration file already exists: {config_file} (use --force)")

    data = {k: v for k, v in _settings(ctx).to_dict().items() if v is not None}
    data["db_path"] = str(ctx.obj["db_path"])
    try:
        config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(config_file, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)
    except OSError as e:
        _fail(f"Could not write configuration file: {e}")

    click.echo(f"Configuration written to {config_file}")
    logger.info(f"Created configuration file: {config_file}")


# =============================================================================
# Reconcile Command
# =============================================================================


@cli.command("reconcile")
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--account", "-a", help="Account scope (default: from config).")
@click.option("--group", "-g", "group_name", help="Title of the sync group.")
@click.option("--batch-size", type=int, help="Flush threshold of the operation batch.")
@click.option(
    "--empty-value-policy",
    type=click.Choice(sorted(VALID_EMPTY_VALUE_POLICIES)),
    help="How emptied values are written (clear, keep or delete).",
)
@click.pass_context
def reconcile_command(
    ctx: click.Context,
    input_file: str,
    account: Optional[str],
    group_name: Optional[str],
    batch_size: Optional[int],
    empty_value_policy: Optional[str],
) -> None:
    """
    Apply remote contact snapshots to the local store.

    INPUT_FILE is a JSON list of contact snapshots. The persisted
    watermark is advanced to the highest syncState seen.

    Examples:

        contact-reconcile reconcile snapshots.json --account alice

        contact-reconcile reconcile snapshots.json -a alice --batch-size 50
    """
    logger = get_logger(__name__)
    account = _require_account(ctx, account)
    settings = _settings(ctx).with_overrides(
        group_name=group_name,
        batch_size=batch_size,
        empty_value_policy=(
            EmptyValuePolicy(empty_value_policy) if empty_value_policy else None
        ),
    )
    verbose = ctx.obj["verbose"]

    payload = _read_json(Path(input_file))
    if not isinstance(payload, list):
        _fail(f"{input_file} must contain a JSON list of snapshots")

    snapshots: list[ContactSnapshot] = []
    for position, item in enumerate(payload):
        try:
            snapshots.append(ContactSnapshot.from_dict(item))
        except (AttributeError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring snapshot #{position}: {e}")
            click.echo(
                click.style(f"Warning: ignoring snapshot #{position}: {e}", "yellow"),
                err=True,
            )

    setup_trace_logger(log_file=get_trace_log_path(ctx.obj["log_dir"]))

    try:
        store = _open_store(ctx)
        engine = _create_engine(store, settings)
        group_id = engine.ensure_group(account, settings.group_name)
        previous = store.get_watermark(account)

        click.echo(
            f"Reconciling {len(snapshots)} snapshots for '{account}' "
            f"(watermark {previous})..."
        )
        result = engine.reconcile(account, group_id, snapshots, previous)
        store.set_watermark(account, result.watermark)
    except ReconcileConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        _fail(str(e))
    except StoreError as e:
        logger.error(f"Reconcile failed: {e}")
        _fail(str(e))

    show_reconcile_result(result, verbose=verbose)
    if not result.success:
        sys.exit(1)


# =============================================================================
# Dirty / Finalize Commands
# =============================================================================


@cli.command("dirty")
@click.option("--account", "-a", help="Account scope (default: from config).")
@click.option("--json", "as_json", is_flag=True, help="Print stubs as JSON.")
@click.pass_context
def dirty_command(ctx: click.Context, account: Optional[str], as_json: bool) -> None:
    """
    Show contacts changed or deleted locally since the last upload.

    With --json the output can be passed to 'finalize' once the server
    accepted the changes.

    Example:

        contact-reconcile dirty --account alice --json > dirty.json
    """
    logger = get_logger(__name__)
    account = _require_account(ctx, account)

    try:
        engine = _create_engine(_open_store(ctx), _settings(ctx))
        stubs = engine.collect_dirty(account)
    except (ReconcileConfigError, StoreError) as e:
        logger.error(f"Dirty scan failed: {e}")
        _fail(str(e))

    if as_json:
        click.echo(json.dumps([stub.to_dict() for stub in stubs.values()], indent=2))
    else:
        show_dirty_set(stubs)


@cli.command("finalize")
@click.argument("ack_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--account", "-a", help="Account scope (default: from config).")
@click.pass_context
def finalize_command(ctx: click.Context, ack_file: str, account: Optional[str]) -> None:
    """
    Clear local sync flags for changes the server accepted.

    ACK_FILE is a JSON list of stubs as printed by 'dirty --json'.
    Deleted contacts are removed for good; modified ones are marked clean.

    Example:

        contact-reconcile finalize dirty.json --account alice
    """
    logger = get_logger(__name__)
    account = _require_account(ctx, account)

    payload = _read_json(Path(ack_file))
    if isinstance(payload, dict):
        payload = list(payload.values())
    if not isinstance(payload, list):
        _fail(f"{ack_file} must contain a JSON list of stubs")

    try:
        stubs = [ContactStub.from_dict(item) for item in payload]
    except (KeyError, TypeError, ValueError) as e:
        _fail(f"Invalid stub in {ack_file}: {e}")

    try:
        engine = _create_engine(_open_store(ctx), _settings(ctx))
        errors = engine.finalize_sync(account, stubs)
    except (ReconcileConfigError, StoreError) as e:
        logger.error(f"Finalize failed: {e}")
        _fail(str(e))

    if errors:
        show_batch_errors(errors, verbose=ctx.obj["verbose"])
        sys.exit(1)

    click.echo(click.style(f"Finalized {len(stubs)} contact(s).", fg="green"))


# =============================================================================
# Status / Reset / Visibility Commands
# =============================================================================


@cli.command("status")
@click.option("--account", "-a", help="Account scope (default: from config).")
@click.pass_context
def status_command(ctx: click.Context, account: Optional[str]) -> None:
    """
    Show the sync state of an account.

    Example:

        contact-reconcile status --account alice
    """
    account = _require_account(ctx, account)

    try:
        store = _open_store(ctx)
        state = store.get_sync_state(account)
        contacts = store.count_contacts(account)
        dirty = store.scan_dirty(account)
        visible = store.get_visibility(account)
    except StoreError as e:
        _fail(str(e))

    click.echo(f"=== Contact Reconcile Status: {account} ===\n")
    click.echo(f"Contact store: {ctx.obj['db_path']}")
    if state:
        click.echo(f"Watermark: {state['watermark']}")
        click.echo(f"Last sync: {state['last_sync_at']}")
    else:
        click.echo(click.style("Never synced", fg="yellow"))
    click.echo(f"Contacts: {contacts}")
    click.echo(f"Pending local changes: {len(dirty)}")
    click.echo(f"Ungrouped contacts visible: {'yes' if visible else 'no'}")


@cli.command("reset")
@click.option("--account", "-a", help="Account scope (default: from config).")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def reset_command(ctx: click.Context, account: Optional[str], yes: bool) -> None:
    """
    Reset the watermark (forces a full resync on next run).

    This does NOT delete any local contacts.

    Example:

        contact-reconcile reset --account alice
    """
    logger = get_logger(__name__)
    account = _require_account(ctx, account)

    if not ctx.obj["db_path"].exists():
        click.echo("No contact store found. Nothing to reset.")
        return

    if not yes:
        click.confirm(
            f"This will clear the watermark of '{account}' and force a full "
            "resync on next run.\nContinue?",
            abort=True,
        )

    try:
        cleared = _open_store(ctx).clear_watermark(account)
    except StoreError as e:
        logger.error(f"Reset failed: {e}")
        _fail(str(e))

    if cleared:
        click.echo(click.style("Sync state has been reset.", fg="green"))
        logger.info(f"Watermark of '{account}' cleared")
    else:
        click.echo("No sync state stored for this account.")


@cli.command("visibility")
@click.option("--account", "-a", help="Account scope (default: from config).")
@click.option(
    "--show/--hide",
    "visible",
    default=None,
    help="Show or hide contacts that are in no group.",
)
@click.pass_context
def visibility_command(
    ctx: click.Context, account: Optional[str], visible: Optional[bool]
) -> None:
    """
    Set whether the account's ungrouped contacts are visible.

    Example:

        contact-reconcile visibility --account alice --show
    """
    account = _require_account(ctx, account)
    if visible is None:
        raise click.UsageError("Use --show or --hide.")

    try:
        engine = _create_engine(_open_store(ctx), _settings(ctx))
        engine.set_visibility(account, visible)
    except (ReconcileConfigError, StoreError) as e:
        _fail(str(e))

    state = "visible" if visible else "hidden"
    click.echo(f"Ungrouped contacts of '{account}' are now {state}.")
