"""
Field-level diffing of contact attributes.

Compares one new value against the fields of one existing attribute row
and decides what, if anything, has to be written to the local store.
All functions are pure; they never touch the store or the batch.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from contact_reconcile.sync.contact import (
    AVATAR_FIELD,
    EMAIL_FIELD,
    NOTE_FIELD,
    PHONE_FIELD,
    WEBSITE_FIELD,
    Address,
    Name,
    Organization,
    is_blank,
)


class VerdictKind(str, Enum):
    """Outcome of comparing a new value with an existing row."""

    UNCHANGED = "unchanged"
    REPLACE = "replace"
    DELETE = "delete"
    INSERT = "insert"


class EmptyValuePolicy(str, Enum):
    """
    What to do with an existing non-address row whose new value is empty.

    Address rows are always deleted when they become empty.
    """

    CLEAR = "clear"  # Update the row in place to "no value"
    KEEP = "keep"  # Leave the stale value untouched
    DELETE = "delete"  # Delete the row


VALID_EMPTY_VALUE_POLICIES = {policy.value for policy in EmptyValuePolicy}


@dataclass(frozen=True)
class Verdict:
    """
    Result of a field diff.

    Attributes:
        kind: What should happen to the row
        fields: Payload for REPLACE (only the differing sub-fields) and
            INSERT (the non-empty sub-fields); empty otherwise
    """

    kind: VerdictKind
    fields: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def unchanged(cls) -> Verdict:
        return cls(VerdictKind.UNCHANGED)

    @classmethod
    def replace(cls, fields: dict[str, Any]) -> Verdict:
        return cls(VerdictKind.REPLACE, fields)

    @classmethod
    def delete(cls) -> Verdict:
        return cls(VerdictKind.DELETE)

    @classmethod
    def insert(cls, fields: dict[str, Any]) -> Verdict:
        return cls(VerdictKind.INSERT, fields)

    @property
    def is_unchanged(self) -> bool:
        return self.kind is VerdictKind.UNCHANGED


def values_equal(new: Any, existing: Any) -> bool:
    """
    Compare two sub-field values.

    Blank values (None, "" and b"") are equal to each other; anything else
    is compared exactly, so string comparison is case-sensitive.
    """
    if is_blank(new) and is_blank(existing):
        return True
    return bool(new == existing)


def diff_fields(
    new: Mapping[str, Any],
    existing: Optional[Mapping[str, Any]],
    delete_when_empty: bool = False,
    empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
) -> Verdict:
    """
    Diff a new multi-field value against an existing row.

    Args:
        new: New sub-field values, keyed by row field name
        existing: Fields of the existing row, or None if there is no row
        delete_when_empty: Always delete the row when the new value is empty
            (composite attributes such as addresses)
        empty_policy: Handling of an emptied value when delete_when_empty
            is False

    Returns:
        The Verdict for this attribute instance
    """
    new_is_empty = all(is_blank(value) for value in new.values())

    if existing is None:
        if new_is_empty:
            return Verdict.unchanged()
        return Verdict.insert(
            {name: value for name, value in new.items() if not is_blank(value)}
        )

    if new_is_empty:
        existing_is_empty = all(is_blank(existing.get(name)) for name in new)
        if delete_when_empty or empty_policy is EmptyValuePolicy.DELETE:
            return Verdict.delete()
        if existing_is_empty or empty_policy is EmptyValuePolicy.KEEP:
            return Verdict.unchanged()

    changed = {
        name: (None if is_blank(value) else value)
        for name, value in new.items()
        if not values_equal(value, existing.get(name))
    }
    if not changed:
        return Verdict.unchanged()
    return Verdict.replace(changed)


def diff_single(
    field_name: str,
    new: Any,
    existing: Optional[Mapping[str, Any]],
    empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
) -> Verdict:
    """Diff a single-field attribute (phone, email, website, note, avatar)."""
    return diff_fields({field_name: new}, existing, empty_policy=empty_policy)


def diff_name(
    name: Name,
    existing: Optional[Mapping[str, Any]],
    empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
) -> Verdict:
    return diff_fields(name.to_fields(), existing, empty_policy=empty_policy)


def diff_phone(
    number: Optional[str],
    existing: Optional[Mapping[str, Any]],
    empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
) -> Verdict:
    return diff_single(PHONE_FIELD, number, existing, empty_policy)


def diff_email(
    address: Optional[str],
    existing: Optional[Mapping[str, Any]],
    empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
) -> Verdict:
    return diff_single(EMAIL_FIELD, address, existing, empty_policy)


def diff_website(
    url: Optional[str],
    existing: Optional[Mapping[str, Any]],
    empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
) -> Verdict:
    return diff_single(WEBSITE_FIELD, url, existing, empty_policy)


def diff_note(
    note: Optional[str],
    existing: Optional[Mapping[str, Any]],
    empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
) -> Verdict:
    return diff_single(NOTE_FIELD, note, existing, empty_policy)


def diff_avatar(
    avatar: Optional[bytes],
    existing: Optional[Mapping[str, Any]],
    empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
) -> Verdict:
    return diff_single(AVATAR_FIELD, avatar, existing, empty_policy)


def diff_organization(
    organization: Optional[Organization],
    existing: Optional[Mapping[str, Any]],
    empty_policy: EmptyValuePolicy = EmptyValuePolicy.CLEAR,
) -> Verdict:
    organization = organization or Organization()
    return diff_fields(organization.to_fields(), existing, empty_policy=empty_policy)


def diff_address(
    address: Optional[Address],
    existing: Optional[Mapping[str, Any]],
) -> Verdict:
    """
    Diff a postal address.

    An address that becomes entirely empty deletes the existing row,
    independent of the empty-value policy.
    """
    address = address or Address()
    return diff_fields(address.to_fields(), existing, delete_when_empty=True)
