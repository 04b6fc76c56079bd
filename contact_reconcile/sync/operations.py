"""
Per-contact builder of store operations.

ContactOperations turns attribute values and Field Differ verdicts into
OperationBatch entries for a single contact, either a contact that is
being created in the same batch (rows point at it via a back-reference)
or an existing local contact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from contact_reconcile.sync import differ
from contact_reconcile.sync.batch import (
    OperationBatch,
    OperationBatchEntry,
    OperationKind,
    RowRef,
    TargetTable,
)
from contact_reconcile.sync.contact import (
    ADDRESS_LABEL_FIELD,
    AVATAR_FIELD,
    EMAIL_FIELD,
    GROUP_FIELD,
    NOTE_FIELD,
    ORGANIZATION_ROLE,
    PHONE_FIELD,
    POSTAL_ADDRESS_LABEL,
    WEBSITE_FIELD,
    Address,
    AddressRole,
    AttributeKind,
    Name,
    Organization,
    PhoneRole,
    is_blank,
)
from contact_reconcile.sync.differ import EmptyValuePolicy, Verdict, VerdictKind
from contact_reconcile.storage.store import StoredAttributeRow
from contact_reconcile.utils.logging import get_trace_logger

logger = logging.getLogger(__name__)

# Texts of the profile link row shown next to synced contacts
PROFILE_SUMMARY = "Remote profile"
PROFILE_DETAIL = "View profile"


@dataclass
class YieldState:
    """
    Tracks whether the store may commit before the next operation.

    Only the first operation emitted for a contact is yield-allowed, so a
    commit boundary never falls in the middle of one contact.
    """

    allowed: bool = True

    def consume(self) -> bool:
        """Return the current permission and revoke it for later operations."""
        allowed = self.allowed
        self.allowed = False
        return allowed


class ContactOperations:
    """
    Chainable builder of operations for one contact.

    Usage:
        # New contact: rows refer to the contact insert by back-reference
        ops = ContactOperations.create_new_contact(batch, "alice", remote_id=42)
        ops.add_name("Ann", "Lee").add_email("ann@x.com", EmailRole.WORK)

        # Existing contact: update_* only emits when the value changed
        ops = ContactOperations.update_existing_contact(batch, local_id=7)
        ops.update_phone("555-2", existing_phone_row)

    Attributes:
        batch: Batch receiving the operations
        contact_ref: Local id of an existing contact, or a BackReference to
            the contact insert of a new one
        is_new_contact: True when the contact is created in this batch
        empty_policy: How emptied non-address values are written
        emitted: Number of operations appended so far
    """

    def __init__(
        self,
        batch: OperationBatch,
        contact_ref: RowRef,
        is_new_contact: bool = False,
        empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
        yield_state: Optional[YieldState] = None,
    ):
        self.batch = batch
        self.contact_ref = contact_ref
        self.is_new_contact = is_new_contact
        self.empty_policy = empty_policy
        self.yield_state = yield_state or YieldState()
        self.emitted = 0
        self._trace = get_trace_logger()

    @classmethod
    def create_new_contact(
        cls,
        batch: OperationBatch,
        account: str,
        remote_id: Optional[int] = None,
        empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
    ) -> ContactOperations:
        """
        Start a new local contact.

        Appends the contact insert to the batch right away; every row added
        afterwards refers to it by back-reference.

        Args:
            batch: Batch receiving the operations
            account: Account scope the contact belongs to
            remote_id: Server-assigned identifier, if already known
            empty_policy: How emptied non-address values are written
        """
        yield_state = YieldState()
        entry = OperationBatchEntry(
            kind=OperationKind.INSERT,
            table=TargetTable.CONTACT,
            values={"account": account, "remote_id": remote_id},
            yield_allowed=yield_state.consume(),
        )
        index = batch.add(entry)
        ops = cls(
            batch,
            contact_ref=batch.back_reference(index),
            is_new_contact=True,
            empty_policy=empty_policy,
            yield_state=yield_state,
        )
        ops.emitted = 1
        ops._trace.debug(f"  {entry.describe()}")
        return ops

    @classmethod
    def update_existing_contact(
        cls,
        batch: OperationBatch,
        local_id: int,
        empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
    ) -> ContactOperations:
        """Start operations on an existing local contact."""
        return cls(batch, contact_ref=local_id, empty_policy=empty_policy)

    @property
    def sync_operation(self) -> bool:
        """Whether the operations are applied with sync-adapter privileges."""
        return self.batch.sync_operation

    @property
    def yield_allowed(self) -> bool:
        return self.yield_state.allowed

    # =========================================================================
    # Emitting
    # =========================================================================

    def _emit(self, entry: OperationBatchEntry) -> None:
        entry.yield_allowed = self.yield_state.consume()
        self.batch.add(entry)
        self.emitted += 1
        self._trace.debug(f"  {entry.describe()} {sorted(entry.values)}")

    def _add_insert_op(
        self, kind: str, role: Optional[str], values: dict[str, Any]
    ) -> None:
        self._emit(
            OperationBatchEntry(
                kind=OperationKind.INSERT,
                table=TargetTable.ATTRIBUTE,
                contact_ref=self.contact_ref,
                attribute_kind=kind,
                role=role,
                values=values,
            )
        )

    def _add_update_op(self, row: StoredAttributeRow, values: dict[str, Any]) -> None:
        self._emit(
            OperationBatchEntry(
                kind=OperationKind.UPDATE,
                table=TargetTable.ATTRIBUTE,
                row_id=row.row_id,
                attribute_kind=row.kind,
                role=row.role,
                values=values,
            )
        )

    def _add_delete_op(self, row: StoredAttributeRow) -> None:
        self._emit(
            OperationBatchEntry(
                kind=OperationKind.DELETE,
                table=TargetTable.ATTRIBUTE,
                row_id=row.row_id,
                attribute_kind=row.kind,
                role=row.role,
            )
        )

    def _apply_verdict(self, verdict: Verdict, row: StoredAttributeRow) -> None:
        if verdict.kind is VerdictKind.REPLACE:
            self._add_update_op(row, verdict.fields)
        elif verdict.kind is VerdictKind.DELETE:
            self._add_delete_op(row)
        elif verdict.kind is VerdictKind.INSERT:
            self._add_insert_op(row.kind, row.role, verdict.fields)

    # =========================================================================
    # Insert path
    # =========================================================================

    def add_name(
        self, first_name: Optional[str], last_name: Optional[str]
    ) -> ContactOperations:
        """Add a structured name; no-op if both parts are empty."""
        values = {
            field_name: value
            for field_name, value in Name(first_name, last_name).to_fields().items()
            if not is_blank(value)
        }
        if values:
            self._add_insert_op(AttributeKind.NAME, None, values)
        return self

    def add_phone(self, number: Optional[str], role: str) -> ContactOperations:
        if not is_blank(number):
            self._add_insert_op(AttributeKind.PHONE, role, {PHONE_FIELD: number})
        return self

    def add_fax(self, number: Optional[str]) -> ContactOperations:
        return self.add_phone(number, PhoneRole.WORK_FAX)

    def add_email(self, address: Optional[str], role: str) -> ContactOperations:
        if not is_blank(address):
            self._add_insert_op(AttributeKind.EMAIL, role, {EMAIL_FIELD: address})
        return self

    def add_website(self, url: Optional[str]) -> ContactOperations:
        if not is_blank(url):
            self._add_insert_op(AttributeKind.WEBSITE, None, {WEBSITE_FIELD: url})
        return self

    def add_note(self, note: Optional[str]) -> ContactOperations:
        if not is_blank(note):
            self._add_insert_op(AttributeKind.NOTE, None, {NOTE_FIELD: note})
        return self

    def add_address(
        self, address: Optional[Address], role: str, label: Optional[str] = None
    ) -> ContactOperations:
        """
        Add a postal address.

        Args:
            address: The address; no-op if None or empty
            role: AddressRole of the row
            label: Display label for custom-role addresses
        """
        if address is None or address.is_empty():
            return self
        values = {k: v for k, v in address.to_fields().items() if not is_blank(v)}
        if label is not None:
            values[ADDRESS_LABEL_FIELD] = label
        self._add_insert_op(AttributeKind.ADDRESS, role, values)
        return self

    def add_organization(
        self, organization: Optional[Organization]
    ) -> ContactOperations:
        if organization is None or organization.is_empty():
            return self
        values = {
            k: v for k, v in organization.to_fields().items() if not is_blank(v)
        }
        self._add_insert_op(AttributeKind.ORGANIZATION, ORGANIZATION_ROLE, values)
        return self

    def add_group_membership(self, group_id: Optional[int]) -> ContactOperations:
        if group_id is not None:
            self._add_insert_op(
                AttributeKind.GROUP_MEMBERSHIP, None, {GROUP_FIELD: group_id}
            )
        return self

    def add_avatar(self, data: Optional[bytes]) -> ContactOperations:
        if not is_blank(data):
            self._add_insert_op(AttributeKind.AVATAR, None, {AVATAR_FIELD: data})
        return self

    def add_profile_link(self, remote_id: Optional[int]) -> ContactOperations:
        """Add the row linking the contact to its remote profile."""
        if remote_id is not None:
            self._add_insert_op(
                AttributeKind.PROFILE_LINK,
                None,
                {
                    "remote_id": remote_id,
                    "summary": PROFILE_SUMMARY,
                    "detail": PROFILE_DETAIL,
                },
            )
        return self

    def add_attribute(
        self, kind: str, role: Optional[str], value: Any
    ) -> ContactOperations:
        """
        Add a row for any (kind, role) slot of a snapshot.

        Dispatches to the matching add_* method; every kind is handled on
        its own, none is nested under another.
        """
        if kind == AttributeKind.NAME:
            name = value or Name()
            return self.add_name(name.first, name.last)
        if kind == AttributeKind.PHONE:
            return self.add_phone(value, role or PhoneRole.MOBILE)
        if kind == AttributeKind.EMAIL:
            return self.add_email(value, role or "")
        if kind == AttributeKind.ADDRESS:
            label = POSTAL_ADDRESS_LABEL if role == AddressRole.CUSTOM else None
            return self.add_address(value, role or AddressRole.HOME, label)
        if kind == AttributeKind.ORGANIZATION:
            return self.add_organization(value)
        if kind == AttributeKind.WEBSITE:
            return self.add_website(value)
        if kind == AttributeKind.NOTE:
            return self.add_note(value)
        if kind == AttributeKind.AVATAR:
            return self.add_avatar(value)
        raise ValueError(f"Unsupported attribute kind: {kind}")

    # =========================================================================
    # Merge path
    # =========================================================================

    def update_name(
        self,
        existing: StoredAttributeRow,
        first_name: Optional[str],
        last_name: Optional[str],
    ) -> ContactOperations:
        verdict = differ.diff_name(
            Name(first_name, last_name), existing.fields, self.empty_policy
        )
        self._apply_verdict(verdict, existing)
        return self

    def update_phone(
        self, number: Optional[str], existing: StoredAttributeRow
    ) -> ContactOperations:
        verdict = differ.diff_phone(number, existing.fields, self.empty_policy)
        self._apply_verdict(verdict, existing)
        return self

    def update_email(
        self, address: Optional[str], existing: StoredAttributeRow
    ) -> ContactOperations:
        verdict = differ.diff_email(address, existing.fields, self.empty_policy)
        self._apply_verdict(verdict, existing)
        return self

    def update_address(
        self, address: Optional[Address], existing: StoredAttributeRow
    ) -> ContactOperations:
        """Update only the changed address parts, or delete an emptied address."""
        verdict = differ.diff_address(address, existing.fields)
        self._apply_verdict(verdict, existing)
        return self

    def update_organization(
        self, organization: Optional[Organization], existing: StoredAttributeRow
    ) -> ContactOperations:
        verdict = differ.diff_organization(
            organization, existing.fields, self.empty_policy
        )
        self._apply_verdict(verdict, existing)
        return self

    def update_website(
        self, url: Optional[str], existing: StoredAttributeRow
    ) -> ContactOperations:
        verdict = differ.diff_website(url, existing.fields, self.empty_policy)
        self._apply_verdict(verdict, existing)
        return self

    def update_note(
        self, note: Optional[str], existing: StoredAttributeRow
    ) -> ContactOperations:
        verdict = differ.diff_note(note, existing.fields, self.empty_policy)
        self._apply_verdict(verdict, existing)
        return self

    def update_avatar(
        self, data: Optional[bytes], existing: StoredAttributeRow
    ) -> ContactOperations:
        verdict = differ.diff_avatar(data, existing.fields, self.empty_policy)
        self._apply_verdict(verdict, existing)
        return self

    def update_attribute(
        self, existing: StoredAttributeRow, value: Any
    ) -> ContactOperations:
        """Diff an existing row against its new value and emit the result."""
        kind = existing.kind
        if kind == AttributeKind.NAME:
            name = value or Name()
            return self.update_name(existing, name.first, name.last)
        if kind == AttributeKind.PHONE:
            return self.update_phone(value, existing)
        if kind == AttributeKind.EMAIL:
            return self.update_email(value, existing)
        if kind == AttributeKind.ADDRESS:
            return self.update_address(value, existing)
        if kind == AttributeKind.ORGANIZATION:
            return self.update_organization(value, existing)
        if kind == AttributeKind.WEBSITE:
            return self.update_website(value, existing)
        if kind == AttributeKind.NOTE:
            return self.update_note(value, existing)
        if kind == AttributeKind.AVATAR:
            return self.update_avatar(value, existing)
        raise ValueError(f"Unsupported attribute kind: {kind}")

    # =========================================================================
    # Contact row
    # =========================================================================

    def _add_contact_op(
        self, kind: OperationKind, values: Optional[dict[str, Any]] = None
    ) -> None:
        self._emit(
            OperationBatchEntry(
                kind=kind,
                table=TargetTable.CONTACT,
                row_id=self.contact_ref,
                values=values or {},
            )
        )

    def update_remote_id(self, remote_id: int) -> ContactOperations:
        """Store the server-assigned identifier on the contact row."""
        self._add_contact_op(OperationKind.UPDATE, {"remote_id": remote_id})
        return self

    def update_dirty_flag(self, dirty: bool) -> ContactOperations:
        self._add_contact_op(OperationKind.UPDATE, {"dirty": 1 if dirty else 0})
        return self

    def delete_contact(self) -> ContactOperations:
        """
        Delete the contact row.

        With sync-adapter privileges the store removes the row and all its
        attribute rows; otherwise it only marks the contact deleted.
        """
        self._add_contact_op(OperationKind.DELETE)
        return self

    def __repr__(self) -> str:
        """Return a readable string representation."""
        return (
            f"ContactOperations(contact_ref={self.contact_ref!r}, "
            f"new={self.is_new_contact}, emitted={self.emitted})"
        )
