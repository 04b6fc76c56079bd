"""
Reconciliation engine for incremental contact synchronization.

Applies a sequence of remote contact snapshots to the local contact store
with the minimum set of field-level mutations, tracks the high-water mark
of the remote sync state, and builds/clears the outbound dirty set.
"""

import logging
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from contact_reconcile.storage.store import (
    ContactStore,
    StoredAttributeRow,
    StoreError,
)
from contact_reconcile.sync.batch import DEFAULT_BATCH_SIZE, BatchError, OperationBatch
from contact_reconcile.sync.contact import (
    AttributeKind,
    ContactSnapshot,
    ContactStub,
    MalformedSnapshotError,
)
from contact_reconcile.sync.differ import EmptyValuePolicy
from contact_reconcile.sync.operations import ContactOperations
from contact_reconcile.utils.logging import get_trace_logger

logger = logging.getLogger(__name__)


class ReconcileConfigError(Exception):
    """Raised for configuration errors detected before any batch is built."""

    pass


class ReconcilePath:
    """Path a snapshot takes through the engine."""

    CREATE = "create"
    MERGE = "merge"
    TOMBSTONE = "tombstone"
    IGNORE = "ignore"  # Unknown locally and deleted remotely
    SKIP = "skip"  # Malformed or unreadable


@dataclass
class IdentityResolutionFailure:
    """A remote id lookup that failed; the snapshot was treated as unresolved."""

    remote_id: Optional[int]
    message: str


@dataclass
class SkippedSnapshot:
    """A snapshot that was not reconciled, with the reason why."""

    snapshot: ContactSnapshot
    reason: str


@dataclass
class ReconcileStats:
    """
    Statistics from a reconciliation pass.

    Counts snapshots per path and operations per flush.
    """

    received: int = 0
    created: int = 0
    merged: int = 0
    unchanged: int = 0  # Merges that emitted no operation
    tombstoned: int = 0
    ignored: int = 0
    skipped: int = 0
    identity_failures: int = 0

    operations: int = 0
    flushes: int = 0
    failed_chunks: int = 0

    @property
    def processed(self) -> int:
        """Snapshots that went through identity resolution."""
        return self.created + self.merged + self.tombstoned + self.ignored


@dataclass
class ReconcileResult:
    """
    Result of a reconciliation pass.

    Attributes:
        watermark: Highest sync_state seen, never below the previous watermark
        errors: Chunks that failed to apply
        stats: Per-path and per-operation counters
        skipped: Snapshots that were not reconciled
        identity_failures: Remote id lookups that failed
    """

    watermark: int = 0
    errors: list[BatchError] = field(default_factory=list)
    stats: ReconcileStats = field(default_factory=ReconcileStats)
    skipped: list[SkippedSnapshot] = field(default_factory=list)
    identity_failures: list[IdentityResolutionFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        """
        Generate a human-readable summary of the pass.

        Returns:
            Formatted string summary of the reconciliation
        """
        stats = self.stats
        lines = [
            "Reconcile Summary:",
            f"  Snapshots received: {stats.received}",
            f"  Created: {stats.created}",
            f"  Merged: {stats.merged} ({stats.unchanged} unchanged)",
            f"  Deleted: {stats.tombstoned}",
        ]
        if stats.ignored:
            lines.append(f"  Ignored (deleted, unknown locally): {stats.ignored}")
        if stats.skipped:
            lines.append(f"  Skipped: {stats.skipped}")
        if stats.identity_failures:
            lines.append(f"  Identity lookups failed: {stats.identity_failures}")
        lines.extend(
            [
                "",
                f"  Operations: {stats.operations} in {stats.flushes} flushes",
                f"  Watermark: {self.watermark}",
            ]
        )
        if self.errors:
            lines.append(f"  Failed chunks: {len(self.errors)}")
        return "\n".join(lines)


class ReconciliationEngine:
    """
    Inbound reconciliation and outbound dirty-set handling for one store.

    Features:
    - Identity resolution by local id, then by remote id
    - Create/merge/tombstone dispatch with field-level diffs
    - Monotonic watermark tracking across a pass
    - Periodic batch flushing with per-chunk error collection
    - Dirty-set scan and flag clearing after upload

    Usage:
        engine = ReconciliationEngine(SqliteContactStore("/path/contacts.db"))

        result = engine.reconcile("alice", group_id, snapshots, watermark)
        persist(result.watermark)

        dirty = engine.collect_dirty("alice")
        # ... upload ...
        errors = engine.finalize_sync("alice", dirty)

    One pass per account runs at a time; passes for different accounts
    may run concurrently.
    """

    def __init__(
        self,
        store: ContactStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        empty_value_policy: Union[EmptyValuePolicy, str] = EmptyValuePolicy.CLEAR,
        sync_operation: bool = True,
    ):
        """
        Initialize the engine.

        Args:
            store: Local contact store
            batch_size: Pending operations after which the batch is flushed
            empty_value_policy: Handling of emptied non-address values
            sync_operation: Apply inbound changes with sync-adapter privileges

        Raises:
            ReconcileConfigError: If batch_size or empty_value_policy is invalid
        """
        if isinstance(batch_size, bool) or not isinstance(batch_size, int):
            raise ReconcileConfigError(
                f"batch_size must be an integer, got {type(batch_size).__name__}"
            )
        if batch_size < 1:
            raise ReconcileConfigError(f"batch_size must be >= 1, got {batch_size}")
        try:
            self.empty_value_policy = EmptyValuePolicy(empty_value_policy)
        except ValueError as e:
            raise ReconcileConfigError(
                f"Invalid empty_value_policy '{empty_value_policy}'"
            ) from e

        self.store = store
        self.batch_size = batch_size
        self.sync_operation = sync_operation

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _account_lock(self, account: str) -> threading.Lock:
        with self._locks_guard:
            if account not in self._locks:
                self._locks[account] = threading.Lock()
            return self._locks[account]

    @staticmethod
    def _check_account(account: str) -> None:
        if not isinstance(account, str) or not account.strip():
            raise ReconcileConfigError("account must be a non-empty string")

    # =========================================================================
    # Inbound
    # =========================================================================

    def reconcile(
        self,
        account: str,
        group_id: Optional[int],
        incoming: Iterable[ContactSnapshot],
        previous_watermark: int = 0,
    ) -> ReconcileResult:
        """
        Apply remote snapshots to the local store.

        Args:
            account: Account scope of the contacts
            group_id: Group new contacts are added to (None for no membership)
            incoming: Snapshots in the order they are applied
            previous_watermark: Watermark persisted by the last pass

        Returns:
            ReconcileResult with the new watermark, batch errors and stats

        Raises:
            ReconcileConfigError: If the account is empty
        """
        self._check_account(account)

        with self._account_lock(account):
            trace = get_trace_logger()
            trace.info(
                f"Reconcile session: account={account}, group={group_id}, "
                f"previous_watermark={previous_watermark}"
            )
            logger.info(f"Reconciling contacts for account '{account}'")

            batch = OperationBatch(
                self.store,
                batch_size=self.batch_size,
                sync_operation=self.sync_operation,
            )
            result = ReconcileResult(watermark=previous_watermark)
            stats = result.stats
            # Identities with operations queued in the batch
            pending: set[tuple[str, int]] = set()

            for snapshot in incoming:
                stats.received += 1
                try:
                    snapshot.validate()
                except MalformedSnapshotError as e:
                    logger.warning(f"Skipping snapshot: {e}")
                    trace.info(f"SKIP {snapshot!r}: {e}")
                    result.skipped.append(SkippedSnapshot(snapshot, str(e)))
                    stats.skipped += 1
                    continue

                self._reconcile_snapshot(
                    account, group_id, snapshot, batch, result, pending
                )
                result.watermark = max(result.watermark, snapshot.sync_state)

                if len(batch) >= self.batch_size:
                    self._flush(batch, result, pending)

            self._flush(batch, result, pending)

            trace.info(
                f"Reconcile session finished: watermark={result.watermark}, "
                f"operations={stats.operations}, failed_chunks={stats.failed_chunks}"
            )
            logger.info(
                f"Reconciled {stats.received} snapshots: {stats.created} created, "
                f"{stats.merged} merged, {stats.tombstoned} deleted, "
                f"{stats.skipped} skipped"
            )
            return result

    def _flush(
        self,
        batch: OperationBatch,
        result: ReconcileResult,
        pending: Optional[set[tuple[str, int]]] = None,
    ) -> None:
        if pending is not None:
            pending.clear()
        queued = len(batch)
        if not queued:
            return
        errors = batch.execute()
        result.stats.flushes += 1
        result.stats.operations += queued
        result.stats.failed_chunks += len(errors)
        result.errors.extend(errors)
        for error in errors:
            get_trace_logger().info(f"FLUSH ERROR: {error}")

    def _resolve_identity(
        self, account: str, snapshot: ContactSnapshot, result: ReconcileResult
    ) -> Optional[int]:
        """
        Find the local contact a snapshot describes.

        The local id wins when present; otherwise the remote id is looked
        up. A failed lookup is recorded and treated as "not found".
        """
        if snapshot.local_id is not None:
            return snapshot.local_id
        try:
            return self.store.find_local_id_by_remote_id(account, snapshot.remote_id)
        except StoreError as e:
            logger.error(
                f"Identity lookup failed for remote id {snapshot.remote_id}: {e}"
            )
            result.identity_failures.append(
                IdentityResolutionFailure(snapshot.remote_id, str(e))
            )
            result.stats.identity_failures += 1
            return None

    def _reconcile_snapshot(
        self,
        account: str,
        group_id: Optional[int],
        snapshot: ContactSnapshot,
        batch: OperationBatch,
        result: ReconcileResult,
        pending: set[tuple[str, int]],
    ) -> str:
        """
        Dispatch one validated snapshot and return the path it took.

        A snapshot for a contact that already has queued operations flushes
        the batch first, so identity and rows are read after those writes.
        """
        trace = get_trace_logger()
        stats = result.stats
        keys = self._identity_keys(snapshot)
        if pending & keys:
            self._flush(batch, result, pending)
        local_id = self._resolve_identity(account, snapshot, result)
        if local_id is not None and ("local", local_id) in pending:
            self._flush(batch, result, pending)
        queued = len(batch)

        if local_id is None and snapshot.deleted:
            path = ReconcilePath.IGNORE
            trace.info(f"IGNORE {snapshot.display_name}: deleted, not known locally")
            stats.ignored += 1
        elif local_id is None:
            path = ReconcilePath.CREATE
            trace.info(f"CREATE {snapshot.display_name} (remote {snapshot.remote_id})")
            self._create_contact(account, group_id, snapshot, batch)
            stats.created += 1
        elif snapshot.deleted:
            path = ReconcilePath.TOMBSTONE
            trace.info(f"DELETE {snapshot.display_name} (local {local_id})")
            ContactOperations.update_existing_contact(batch, local_id).delete_contact()
            stats.tombstoned += 1
        else:
            trace.info(f"MERGE {snapshot.display_name} (local {local_id})")
            try:
                rows = self.store.fetch_attribute_rows(local_id)
            except StoreError as e:
                logger.error(f"Cannot read rows of local contact {local_id}: {e}")
                result.skipped.append(SkippedSnapshot(snapshot, str(e)))
                stats.skipped += 1
                return ReconcilePath.SKIP
            path = ReconcilePath.MERGE
            emitted = self._merge_contact(account, local_id, snapshot, rows, batch)
            stats.merged += 1
            if emitted == 0:
                stats.unchanged += 1

        if len(batch) > queued:
            pending.update(keys)
            if local_id is not None:
                pending.add(("local", local_id))
        return path

    @staticmethod
    def _identity_keys(snapshot: ContactSnapshot) -> set[tuple[str, int]]:
        keys = set()
        if snapshot.remote_id is not None:
            keys.add(("remote", snapshot.remote_id))
        if snapshot.local_id is not None:
            keys.add(("local", snapshot.local_id))
        return keys

    def _create_contact(
        self,
        account: str,
        group_id: Optional[int],
        snapshot: ContactSnapshot,
        batch: OperationBatch,
    ) -> int:
        ops = ContactOperations.create_new_contact(
            batch,
            account,
            remote_id=snapshot.remote_id,
            empty_policy=self.empty_value_policy,
        )
        for (kind, role), value in snapshot.desired_attributes().items():
            ops.add_attribute(kind, role, value)
        ops.add_group_membership(group_id)
        ops.add_profile_link(snapshot.remote_id)
        return ops.emitted

    def _merge_contact(
        self,
        account: str,
        local_id: int,
        snapshot: ContactSnapshot,
        rows: list[StoredAttributeRow],
        batch: OperationBatch,
    ) -> int:
        """
        Merge a snapshot into an existing contact.

        Each existing row whose (kind, role) the snapshot speaks for is
        diffed against its new value; every slot without a matching row is
        added. Rows of other kinds or roles are left alone, as are further
        rows of an already matched slot.

        Returns:
            Number of operations emitted
        """
        ops = ContactOperations.update_existing_contact(
            batch, local_id, empty_policy=self.empty_value_policy
        )
        desired = snapshot.desired_attributes()
        matched: dict[tuple[str, Optional[str]], bool] = dict.fromkeys(desired, False)
        has_profile_link = False

        for row in rows:
            if row.kind == AttributeKind.PROFILE_LINK:
                has_profile_link = True
                continue
            key = (row.kind, row.role)
            if key not in matched or matched[key]:
                continue
            matched[key] = True
            ops.update_attribute(row, desired[key])

        for (kind, role), value in desired.items():
            if not matched[(kind, role)]:
                ops.add_attribute(kind, role, value)

        if self._needs_remote_id(account, local_id, snapshot):
            ops.update_remote_id(snapshot.remote_id)

        if not has_profile_link:
            ops.add_profile_link(snapshot.remote_id)

        return ops.emitted

    def _needs_remote_id(
        self, account: str, local_id: int, snapshot: ContactSnapshot
    ) -> bool:
        """Check if the local contact still lacks the snapshot's remote id."""
        # Resolved by remote id: the local row carries it already
        if snapshot.remote_id is None or snapshot.local_id is None:
            return False
        try:
            owner = self.store.find_local_id_by_remote_id(account, snapshot.remote_id)
        except StoreError as e:
            logger.warning(
                f"Cannot check remote id {snapshot.remote_id} of local contact "
                f"{local_id}: {e}"
            )
            return False
        return owner != local_id

    # =========================================================================
    # Outbound
    # =========================================================================

    def collect_dirty(self, account: str) -> dict[Union[int, str], ContactStub]:
        """
        Build the outbound dirty set of an account.

        Deleted contacts become deletion stubs (even when also dirty);
        dirty contacts become modification stubs; clean ones are left out.

        Returns:
            Stubs keyed by remote id, or by "local:<id>" for contacts that
            were never uploaded

        Raises:
            ReconcileConfigError: If the account is empty
            StoreError: If the store cannot be scanned
        """
        self._check_account(account)
        dirty: dict[Union[int, str], ContactStub] = {}

        for record in self.store.scan_dirty(account):
            label = record.display_name or f"local:{record.local_id}"
            if record.deleted:
                stub = ContactStub.create_deleted(
                    record.local_id, record.remote_id, label
                )
            elif record.dirty:
                stub = ContactStub.create_modified(
                    record.local_id, record.remote_id, label
                )
            else:
                continue
            logger.debug(
                f"Dirty contact {stub.key}: {'deleted' if stub.deleted else 'modified'}"
                f" (version {record.version})"
            )
            dirty[stub.key] = stub

        logger.info(f"Found {len(dirty)} dirty contacts for account '{account}'")
        return dirty

    def finalize_sync(
        self,
        account: str,
        acknowledged: Union[Mapping[Any, ContactStub], Iterable[ContactStub]],
    ) -> list[BatchError]:
        """
        Clear local sync flags after the server accepted the upload.

        Deletion stubs remove the local contact for good; modification
        stubs get their dirty flag cleared. Everything is flushed once.

        Args:
            account: Account scope of the contacts
            acknowledged: Stubs accepted by the server, as a list or as the
                mapping returned by collect_dirty()

        Returns:
            List of BatchError, empty on success
        """
        self._check_account(account)
        stubs = (
            acknowledged.values() if isinstance(acknowledged, Mapping) else acknowledged
        )

        with self._account_lock(account):
            batch = OperationBatch(
                self.store, batch_size=self.batch_size, sync_operation=True
            )
            for stub in stubs:
                ops = ContactOperations.update_existing_contact(batch, stub.local_id)
                if stub.deleted:
                    ops.delete_contact()
                elif stub.dirty:
                    ops.update_dirty_flag(False)

            pending = len(batch)
            errors = batch.execute()
            logger.info(
                f"Finalized {pending} contacts for account '{account}' "
                f"({len(errors)} failed chunks)"
            )
            return errors

    # =========================================================================
    # Account bookkeeping
    # =========================================================================

    def ensure_group(self, account: str, title: str) -> int:
        """Return the id of the account's sync group, creating it if missing."""
        self._check_account(account)
        return self.store.ensure_group(account, title)

    def set_visibility(self, account: str, visible: bool) -> None:
        self._check_account(account)
        self.store.set_visibility(account, visible)
