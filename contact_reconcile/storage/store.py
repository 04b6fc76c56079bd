"""
Abstract local contact store consumed by the reconciliation engine.

The engine never talks to a concrete backend; it resolves identities,
reads attribute rows and applies operation batches through this
interface. SqliteContactStore in contact_reconcile.storage.db is the
bundled implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from contact_reconcile.sync.batch import OperationBatchEntry


class StoreError(Exception):
    """Raised when the local store cannot complete a lookup or a mutation."""

    pass


@dataclass
class StoredAttributeRow:
    """
    A child row of a local contact.

    Attributes:
        row_id: Store identifier of the row
        kind: AttributeKind of the row
        role: Role/type discriminator (e.g. "home"), None for single-role kinds
        fields: Stored field values keyed by field name
    """

    row_id: int
    kind: str
    role: Optional[str] = None
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass
class DirtyRecord:
    """
    A local contact row returned by the dirty scan.

    Attributes:
        local_id: Local store identifier
        remote_id: Server-assigned identifier, None if never uploaded
        dirty: Changed locally since the last successful upload
        deleted: Soft-deleted locally
        version: Store-maintained change counter
        display_name: Name for diagnostics, if known
    """

    local_id: int
    remote_id: Optional[int]
    dirty: bool
    deleted: bool
    version: int = 0
    display_name: Optional[str] = None


class ContactStore(ABC):
    """
    Interface of the local contact store.

    All methods are blocking. Implementations raise StoreError for any
    backend failure; the engine collects those errors instead of aborting.
    """

    @abstractmethod
    def find_local_id_by_remote_id(
        self, account: str, remote_id: int
    ) -> Optional[int]:
        """Look up the local contact that carries a remote identifier."""

    @abstractmethod
    def fetch_attribute_rows(self, local_id: int) -> list[StoredAttributeRow]:
        """Return every attribute row of a local contact, in store order."""

    @abstractmethod
    def apply_batch(
        self, entries: Sequence[OperationBatchEntry], sync_operation: bool
    ) -> list[Optional[int]]:
        """
        Apply one chunk of operations atomically.

        Args:
            entries: Operations of one chunk; any remaining BackReference
                indexes point at inserts earlier in the same chunk
            sync_operation: True when acting with sync-adapter privileges
                (hard deletes, no implicit dirty marking)

        Returns:
            One result per entry: the new row id for inserts, None otherwise

        Raises:
            StoreError: If any entry fails; no entry of the chunk is applied
        """

    @abstractmethod
    def scan_dirty(self, account: str) -> list[DirtyRecord]:
        """Return the account's contacts that are dirty or deleted."""

    @abstractmethod
    def set_visibility(self, account: str, visible: bool) -> None:
        """Set whether the account's ungrouped contacts are visible."""

    @abstractmethod
    def ensure_group(self, account: str, title: str) -> int:
        """Return the id of the account's group with this title, creating it."""
