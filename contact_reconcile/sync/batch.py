"""
Operation batch for applying contact mutations to the local store.

Collects insert/update/delete operations in order and flushes them to
the store in bounded-size chunks. Operations that target a row created
earlier in the same batch carry a BackReference, which is resolved to a
real row id at flush time.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Union

from contact_reconcile.storage.store import ContactStore, StoreError

logger = logging.getLogger(__name__)

# Number of pending operations after which callers should flush
DEFAULT_BATCH_SIZE = 10


class OperationKind(str, Enum):
    """Kind of store mutation."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class TargetTable(str, Enum):
    """Store table an operation targets."""

    CONTACT = "contact"
    ATTRIBUTE = "attribute"


@dataclass(frozen=True)
class BackReference:
    """
    Reference to the row created by insert #index of a batch.

    Attributes:
        index: Position of the insert operation within the pending batch
            (within the chunk once handed to the store)
        generation: Flush generation of the batch the index belongs to
    """

    index: int
    generation: int = 0


RowRef = Union[int, BackReference]


class UnresolvedReferenceError(LookupError):
    """Raised when a back-reference points at an insert that did not apply."""

    pass


@dataclass
class OperationBatchEntry:
    """
    One pending store mutation.

    Attributes:
        kind: Insert, update or delete
        table: Contact row or attribute row
        row_id: Target row for updates and deletes
        contact_ref: Parent contact for attribute inserts
        attribute_kind: AttributeKind of attribute operations
        role: Role of attribute operations
        values: Payload, keyed by field/column name
        yield_allowed: True on the first operation touching a contact; the
            store may commit before this entry
    """

    kind: OperationKind
    table: TargetTable
    row_id: Optional[RowRef] = None
    contact_ref: Optional[RowRef] = None
    attribute_kind: Optional[str] = None
    role: Optional[str] = None
    values: dict[str, Any] = field(default_factory=dict)
    yield_allowed: bool = False

    def back_references(self) -> list[BackReference]:
        """Return the back-references this entry depends on."""
        return [
            ref
            for ref in (self.row_id, self.contact_ref)
            if isinstance(ref, BackReference)
        ]

    def rebase(
        self, resolved: Mapping[int, int], chunk_start: int
    ) -> OperationBatchEntry:
        """
        Prepare the entry for a chunk starting at chunk_start.

        References to inserts in earlier chunks become concrete row ids;
        references into the same chunk become chunk-relative.

        Raises:
            UnresolvedReferenceError: If a referenced insert in an earlier
                chunk did not produce a row id
        """

        def _rebase(ref: Optional[RowRef]) -> Optional[RowRef]:
            if not isinstance(ref, BackReference):
                return ref
            if ref.index >= chunk_start:
                return BackReference(ref.index - chunk_start, ref.generation)
            if ref.index not in resolved:
                raise UnresolvedReferenceError(
                    f"insert #{ref.index} did not apply; cannot {self.describe()}"
                )
            return resolved[ref.index]

        return replace(
            self, row_id=_rebase(self.row_id), contact_ref=_rebase(self.contact_ref)
        )

    def describe(self) -> str:
        """Short description for log messages."""
        target = self.row_id if self.row_id is not None else self.contact_ref
        what = self.table.value
        if self.attribute_kind:
            what = f"{self.attribute_kind}"
            if self.role:
                what += f"[{self.role}]"
        return f"{self.kind.value} {what} -> {target}"


@dataclass
class BatchError:
    """
    A chunk of operations that could not be applied.

    Attributes:
        message: Human-readable error description
        entries: The offending entries
        cause: Underlying exception, if any
    """

    message: str
    entries: list[OperationBatchEntry] = field(default_factory=list)
    cause: Optional[Exception] = None

    def __str__(self) -> str:
        return f"{self.message} ({len(self.entries)} operations)"


class OperationBatch:
    """
    Ordered queue of store mutations owned by one reconciliation pass.

    Usage:
        batch = OperationBatch(store, batch_size=10)
        index = batch.add(contact_insert)
        batch.add(OperationBatchEntry(..., contact_ref=batch.back_reference(index)))

        if len(batch) >= batch.batch_size:
            errors = batch.execute()

    A batch instance must not be shared between passes or appended to
    from more than one thread.
    """

    def __init__(
        self,
        store: ContactStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
        sync_operation: bool = True,
    ):
        """
        Initialize the batch.

        Args:
            store: Store the operations are applied to
            batch_size: Chunk size threshold used when flushing
            sync_operation: Apply with sync-adapter privileges
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.store = store
        self.batch_size = batch_size
        self.sync_operation = sync_operation
        self._pending: list[OperationBatchEntry] = []
        self._generation = 0

        # Counters for reporting
        self.flush_count = 0
        self.chunk_count = 0
        self.applied_count = 0

    def __len__(self) -> int:
        return len(self._pending)

    def size(self) -> int:
        """Number of pending operations."""
        return len(self._pending)

    @property
    def pending(self) -> list[OperationBatchEntry]:
        """A copy of the pending operations, in order."""
        return list(self._pending)

    def back_reference(self, index: int) -> BackReference:
        """Create a back-reference to pending insert #index."""
        if not 0 <= index < len(self._pending):
            raise IndexError(f"no pending operation #{index}")
        if self._pending[index].kind is not OperationKind.INSERT:
            raise ValueError(f"pending operation #{index} is not an insert")
        return BackReference(index, self._generation)

    def add(self, entry: OperationBatchEntry) -> int:
        """
        Append an operation.

        Args:
            entry: The operation to append

        Returns:
            Index of the operation within the pending batch

        Raises:
            ValueError: If the entry refers to an insert of an already
                flushed batch
        """
        for ref in entry.back_references():
            if ref.generation != self._generation or ref.index >= len(self._pending):
                raise ValueError(
                    f"back-reference to insert #{ref.index} does not belong "
                    "to the pending batch; it was flushed already"
                )
        self._pending.append(entry)
        return len(self._pending) - 1

    def _chunks(
        self, entries: list[OperationBatchEntry]
    ) -> Iterator[tuple[int, list[OperationBatchEntry]]]:
        """
        Split entries into chunks of about batch_size operations.

        Chunks are only cut in front of yield-allowed entries, so the
        operations of one contact always land in the same chunk.
        """
        start = 0
        current: list[OperationBatchEntry] = []
        for index, entry in enumerate(entries):
            if current and entry.yield_allowed and len(current) >= self.batch_size:
                yield start, current
                start, current = index, []
            current.append(entry)
        if current:
            yield start, current

    def execute(self) -> list[BatchError]:
        """
        Flush all pending operations to the store.

        Each chunk is applied atomically. A failed chunk is reported and
        the remaining chunks are still attempted; operations depending on
        an insert of a failed chunk fail as well.

        Returns:
            List of BatchError, empty if everything applied
        """
        if not self._pending:
            return []

        entries = self._pending
        self._pending = []
        self._generation += 1
        self.flush_count += 1

        resolved: dict[int, int] = {}
        errors: list[BatchError] = []

        logger.debug(f"Flushing {len(entries)} operations")

        for start, chunk in self._chunks(entries):
            self.chunk_count += 1
            try:
                ready = [entry.rebase(resolved, start) for entry in chunk]
            except UnresolvedReferenceError as e:
                logger.error(f"Skipping chunk at #{start}: {e}")
                errors.append(BatchError(str(e), list(chunk), cause=e))
                continue

            try:
                results = self.store.apply_batch(ready, self.sync_operation)
            except StoreError as e:
                logger.error(
                    f"Failed to apply {len(chunk)} operations starting at #{start}: {e}"
                )
                errors.append(
                    BatchError(f"Failed to apply chunk: {e}", list(chunk), cause=e)
                )
                continue

            self.applied_count += len(chunk)
            for offset, (entry, result) in enumerate(zip(chunk, results)):
                if entry.kind is OperationKind.INSERT and result is not None:
                    resolved[start + offset] = result

        return errors

    def __repr__(self) -> str:
        """Return a readable string representation."""
        return (
            f"OperationBatch(pending={len(self._pending)}, "
            f"batch_size={self.batch_size}, sync_operation={self.sync_operation})"
        )
