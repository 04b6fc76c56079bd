"""
Contact data model for incremental contact reconciliation.

Provides the ContactSnapshot representation with methods for:
- Converting from/to the JSON payload delivered by the remote directory
- Enumerating the desired attribute rows keyed by (kind, role)
- Validating snapshot identity before reconciliation

Also defines the outbound ContactStub produced by the dirty-set scan.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Optional


class MalformedSnapshotError(ValueError):
    """Raised when a snapshot carries neither a local nor a remote identifier."""

    pass


class AttributeKind:
    """Kinds of child rows stored under a local contact."""

    NAME = "name"
    PHONE = "phone"
    EMAIL = "email"
    ADDRESS = "address"
    ORGANIZATION = "organization"
    WEBSITE = "website"
    NOTE = "note"
    AVATAR = "avatar"
    GROUP_MEMBERSHIP = "group_membership"
    PROFILE_LINK = "profile_link"


class PhoneRole:
    """Phone number roles."""

    MOBILE = "mobile"
    HOME = "home"
    WORK = "work"
    WORK_MOBILE = "work_mobile"
    WORK_FAX = "work_fax"

    ALL = (MOBILE, HOME, WORK, WORK_MOBILE, WORK_FAX)


class EmailRole:
    """Email address roles."""

    HOME = "home"
    WORK = "work"

    ALL = (HOME, WORK)


class AddressRole:
    """Postal address roles."""

    WORK = "work"
    HOME = "home"
    CUSTOM = "custom"

    ALL = (WORK, HOME, CUSTOM)


# Organization rows are always stored with the work role
ORGANIZATION_ROLE = "work"

# Label attached to the custom-role postal address
POSTAL_ADDRESS_LABEL = "Postal"

# Row field names per attribute kind
NAME_FIELDS = ("given_name", "family_name")
PHONE_FIELD = "number"
EMAIL_FIELD = "address"
WEBSITE_FIELD = "url"
NOTE_FIELD = "note"
AVATAR_FIELD = "photo"
ADDRESS_FIELDS = ("street", "city", "region", "postcode", "country")
ADDRESS_LABEL_FIELD = "label"
ORGANIZATION_FIELDS = ("company", "division", "position")
GROUP_FIELD = "group_id"
PROFILE_FIELDS = ("remote_id", "summary", "detail")


def is_blank(value: Any) -> bool:
    """Return True for values that count as "no value" (None, "" or b"")."""
    return value is None or (isinstance(value, (str, bytes)) and len(value) == 0)


@dataclass
class Name:
    """Structured first/last name."""

    first: Optional[str] = None
    last: Optional[str] = None

    def is_empty(self) -> bool:
        return is_blank(self.first) and is_blank(self.last)

    def to_fields(self) -> dict[str, Any]:
        return {"given_name": self.first, "family_name": self.last}


@dataclass
class Address:
    """
    Postal address.

    Attributes:
        street: Street and house number
        city: City name
        region: State or region
        postcode: Postal/zip code
        country: Country name
    """

    street: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None

    def is_empty(self) -> bool:
        """Check if every component of the address is blank."""
        return all(is_blank(value) for value in self.to_fields().values())

    def to_fields(self) -> dict[str, Any]:
        return {
            "street": self.street,
            "city": self.city,
            "region": self.region,
            "postcode": self.postcode,
            "country": self.country,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> Optional[Address]:
        if not data:
            return None
        return cls(
            street=data.get("street"),
            city=data.get("city"),
            region=data.get("region") or data.get("state"),
            postcode=data.get("postcode") or data.get("zipCode"),
            country=data.get("country"),
        )


@dataclass
class Organization:
    """Company, division and position of a contact."""

    company: Optional[str] = None
    division: Optional[str] = None
    position: Optional[str] = None

    def is_empty(self) -> bool:
        return all(is_blank(value) for value in self.to_fields().values())

    def to_fields(self) -> dict[str, Any]:
        return {
            "company": self.company,
            "division": self.division,
            "position": self.position,
        }


@dataclass
class ContactSnapshot:
    """
    One remote-side representation of a contact at a point in time.

    Attributes:
        local_id: Local store identifier (None for contacts not yet known locally)
        remote_id: Server-assigned identifier (None for contacts created locally
            and not yet uploaded)
        sync_state: Sequence number assigned by the remote source; higher values
            are more recent changes
        deleted: Tombstone flag
        first_name: Given name
        last_name: Family name
        phones: Phone numbers keyed by PhoneRole
        emails: Email addresses keyed by EmailRole
        addresses: Postal addresses keyed by AddressRole
        organization: Company/division/position
        website: Website URL
        note: Free-text note
        avatar: Opaque image bytes

    Usage:
        # Create from a remote payload
        snapshot = ContactSnapshot.from_dict(payload)

        # Reject snapshots without identity before reconciling
        snapshot.validate()

        # Enumerate the rows the local store should hold
        for (kind, role), value in snapshot.desired_attributes().items():
            ...
    """

    local_id: Optional[int] = None
    remote_id: Optional[int] = None
    sync_state: int = 0
    deleted: bool = False

    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phones: dict[str, str] = field(default_factory=dict)
    emails: dict[str, str] = field(default_factory=dict)
    addresses: dict[str, Address] = field(default_factory=dict)
    organization: Optional[Organization] = None
    website: Optional[str] = None
    note: Optional[str] = None
    avatar: Optional[bytes] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContactSnapshot:
        """
        Create a ContactSnapshot from a remote directory payload.

        Args:
            data: Dictionary decoded from the remote JSON payload

        Returns:
            ContactSnapshot populated from the payload

        Example payload structure::

            {
                'remoteId': 42,
                'syncState': 100,
                'deleted': False,
                'firstName': 'Ann',
                'lastName': 'Lee',
                'phones': {'mobile': '555-1', 'work_fax': '555-9'},
                'emails': {'work': 'ann@example.com'},
                'addresses': {'home': {'street': 'Main St 1', 'city': 'Kassel'}},
                'organization': {'company': 'Acme', 'position': 'CTO'},
                'website': 'https://example.com',
                'note': 'met at conference',
                'avatar': '<base64>'
            }
        """
        phones = {
            role: value
            for role, value in (data.get("phones") or {}).items()
            if role in PhoneRole.ALL and not is_blank(value)
        }
        emails = {
            role: value
            for role, value in (data.get("emails") or {}).items()
            if role in EmailRole.ALL and not is_blank(value)
        }

        addresses: dict[str, Address] = {}
        for role, value in (data.get("addresses") or {}).items():
            if role not in AddressRole.ALL:
                continue
            address = Address.from_dict(value)
            if address is not None:
                addresses[role] = address

        organization = None
        org_data = data.get("organization")
        if org_data:
            organization = Organization(
                company=org_data.get("company"),
                division=org_data.get("division"),
                position=org_data.get("position"),
            )

        avatar = None
        avatar_data = data.get("avatar")
        if avatar_data:
            try:
                avatar = base64.b64decode(avatar_data, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError(f"avatar is not valid base64: {e}") from e

        return cls(
            local_id=data.get("localId"),
            remote_id=data.get("remoteId"),
            sync_state=int(data.get("syncState") or 0),
            deleted=bool(data.get("deleted", False)),
            first_name=data.get("firstName"),
            last_name=data.get("lastName"),
            phones=phones,
            emails=emails,
            addresses=addresses,
            organization=organization,
            website=data.get("website"),
            note=data.get("note"),
            avatar=avatar,
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the snapshot back to the remote payload format.

        Only non-empty attributes are included.
        """
        data: dict[str, Any] = {"syncState": self.sync_state}
        if self.local_id is not None:
            data["localId"] = self.local_id
        if self.remote_id is not None:
            data["remoteId"] = self.remote_id
        if self.deleted:
            data["deleted"] = True
        if self.first_name:
            data["firstName"] = self.first_name
        if self.last_name:
            data["lastName"] = self.last_name
        if self.phones:
            data["phones"] = dict(self.phones)
        if self.emails:
            data["emails"] = dict(self.emails)
        if self.addresses:
            data["addresses"] = {
                role: {k: v for k, v in address.to_fields().items() if v}
                for role, address in self.addresses.items()
                if not address.is_empty()
            }
        if self.organization and not self.organization.is_empty():
            data["organization"] = {
                k: v for k, v in self.organization.to_fields().items() if v
            }
        if self.website:
            data["website"] = self.website
        if self.note:
            data["note"] = self.note
        if self.avatar:
            data["avatar"] = base64.b64encode(self.avatar).decode("ascii")
        return data

    @property
    def name(self) -> Name:
        return Name(first=self.first_name, last=self.last_name)

    @property
    def display_name(self) -> str:
        """Best human-readable name for log messages."""
        parts = [p for p in (self.first_name, self.last_name) if p]
        if parts:
            return " ".join(parts)
        if self.remote_id is not None:
            return f"remote:{self.remote_id}"
        return f"local:{self.local_id}"

    def has_identity(self) -> bool:
        """Check if the snapshot carries a local or a remote identifier."""
        return self.local_id is not None or self.remote_id is not None

    def validate(self) -> None:
        """
        Ensure the snapshot can enter reconciliation.

        Raises:
            MalformedSnapshotError: If neither identifier is present
        """
        if not self.has_identity():
            raise MalformedSnapshotError(
                f"Snapshot with sync_state {self.sync_state} has neither "
                "a local nor a remote identifier"
            )

    def desired_attributes(self) -> dict[tuple[str, Optional[str]], Any]:
        """
        Enumerate every (kind, role) slot this snapshot speaks for.

        Every slot is present, including empty ones, so that merges can
        decide between update, delete and no-op for existing rows. The
        insertion order is the order new rows are created in.

        Returns:
            Mapping of (kind, role) to the new value for that slot
        """
        desired: dict[tuple[str, Optional[str]], Any] = {
            (AttributeKind.NAME, None): self.name,
        }
        for role in EmailRole.ALL:
            desired[(AttributeKind.EMAIL, role)] = self.emails.get(role)
        for role in (
            PhoneRole.WORK_FAX,
            PhoneRole.MOBILE,
            PhoneRole.HOME,
            PhoneRole.WORK_MOBILE,
            PhoneRole.WORK,
        ):
            desired[(AttributeKind.PHONE, role)] = self.phones.get(role)
        desired[(AttributeKind.ORGANIZATION, ORGANIZATION_ROLE)] = (
            self.organization or Organization()
        )
        desired[(AttributeKind.WEBSITE, None)] = self.website
        desired[(AttributeKind.NOTE, None)] = self.note
        for role in AddressRole.ALL:
            desired[(AttributeKind.ADDRESS, role)] = (
                self.addresses.get(role) or Address()
            )
        desired[(AttributeKind.AVATAR, None)] = self.avatar
        return desired

    def __repr__(self) -> str:
        """Return a readable string representation."""
        return (
            f"ContactSnapshot(local_id={self.local_id!r}, "
            f"remote_id={self.remote_id!r}, sync_state={self.sync_state!r}, "
            f"deleted={self.deleted!r})"
        )


@dataclass
class ContactStub:
    """
    Minimal outbound record produced by the dirty-set scan.

    Attributes:
        local_id: Local store identifier
        remote_id: Server-assigned identifier (None if never uploaded)
        deleted: True for a deletion stub
        dirty: True for a modification stub
        label: Human-readable label for diagnostics
    """

    local_id: int
    remote_id: Optional[int]
    deleted: bool = False
    dirty: bool = False
    label: str = ""

    @classmethod
    def create_deleted(
        cls, local_id: int, remote_id: Optional[int], label: str = ""
    ) -> ContactStub:
        return cls(local_id=local_id, remote_id=remote_id, deleted=True, label=label)

    @classmethod
    def create_modified(
        cls, local_id: int, remote_id: Optional[int], label: str = ""
    ) -> ContactStub:
        return cls(local_id=local_id, remote_id=remote_id, dirty=True, label=label)

    @property
    def key(self) -> int | str:
        """Dirty-set key: the remote id, or "local:<id>" if never uploaded."""
        if self.remote_id is not None:
            return self.remote_id
        return f"local:{self.local_id}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContactStub:
        return cls(
            local_id=int(data["localId"]),
            remote_id=data.get("remoteId"),
            deleted=bool(data.get("deleted", False)),
            dirty=bool(data.get("dirty", False)),
            label=data.get("label", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "localId": self.local_id,
            "remoteId": self.remote_id,
            "deleted": self.deleted,
            "dirty": self.dirty,
            "label": self.label,
        }
