"""
Unit tests for the storage module.

Tests the SqliteContactStore class: applying operation chunks, dirty
tracking, groups, visibility and the persisted watermark.
"""

from datetime import datetime, timezone

import pytest

from contact_reconcile.storage.db import SqliteContactStore
from contact_reconcile.storage.store import StoreError
from contact_reconcile.sync.batch import (
    BackReference,
    OperationBatchEntry,
    OperationKind,
    TargetTable,
)
from contact_reconcile.sync.contact import AttributeKind

ACCOUNT = "alice@example.com"


@pytest.fixture
def store():
    """Create an initialized in-memory store."""
    store = SqliteContactStore(":memory:")
    store.initialize()
    yield store
    store.close()


def contact_insert(remote_id=None, account=ACCOUNT) -> OperationBatchEntry:
    return OperationBatchEntry(
        kind=OperationKind.INSERT,
        table=TargetTable.CONTACT,
        values={"account": account, "remote_id": remote_id},
        yield_allowed=True,
    )


def row_insert(contact_ref, kind, values, role=None) -> OperationBatchEntry:
    return OperationBatchEntry(
        kind=OperationKind.INSERT,
        table=TargetTable.ATTRIBUTE,
        contact_ref=contact_ref,
        attribute_kind=kind,
        role=role,
        values=values,
    )


def row_update(row_id, values) -> OperationBatchEntry:
    return OperationBatchEntry(
        kind=OperationKind.UPDATE,
        table=TargetTable.ATTRIBUTE,
        row_id=row_id,
        values=values,
    )


def create_contact(store, remote_id=42, sync_operation=True) -> int:
    """Insert a contact named Ann Lee with a mobile phone; return its id."""
    results = store.apply_batch(
        [
            contact_insert(remote_id),
            row_insert(
                BackReference(0),
                AttributeKind.NAME,
                {"given_name": "Ann", "family_name": "Lee"},
            ),
            row_insert(
                BackReference(0), AttributeKind.PHONE, {"number": "1"}, "mobile"
            ),
        ],
        sync_operation,
    )
    return results[0]


class TestSqliteContactStoreInitialization:
    """Tests for store initialization."""

    def test_initialize_creates_tables(self, store):
        """Test that initialize creates the required tables."""
        with store.connection() as conn:
            names = {
                row["name"]
                for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                )
            }
        assert {
            "contacts",
            "contact_data",
            "contact_groups",
            "account_settings",
            "sync_state",
        } <= names

    def test_initialize_is_idempotent(self, store):
        store.initialize()
        assert store.count_contacts(ACCOUNT) == 0

    def test_file_database_persists(self, tmp_path):
        """Test that a file database keeps data across store instances."""
        db_path = str(tmp_path / "contacts.db")
        first = SqliteContactStore(db_path)
        first.initialize()
        create_contact(first)

        second = SqliteContactStore(db_path)
        assert second.find_local_id_by_remote_id(ACCOUNT, 42) == 1


class TestApplyBatch:
    """Tests for applying operation chunks."""

    def test_insert_returns_row_ids(self, store):
        results = store.apply_batch(
            [
                contact_insert(42),
                row_insert(BackReference(0), AttributeKind.NOTE, {"note": "hi"}),
                contact_insert(43),
            ],
            True,
        )
        assert results == [1, 1, 2]
        assert store.find_local_id_by_remote_id(ACCOUNT, 43) == 2

    def test_rows_are_read_back(self, store):
        local_id = create_contact(store)

        rows = store.fetch_attribute_rows(local_id)

        assert [(row.kind, row.role) for row in rows] == [
            (AttributeKind.NAME, None),
            (AttributeKind.PHONE, "mobile"),
        ]
        assert rows[0].fields == {"given_name": "Ann", "family_name": "Lee"}

    def test_display_name_follows_name_row(self, store):
        local_id = create_contact(store)
        assert store.get_contact(local_id)["display_name"] == "Ann Lee"

        store.apply_batch([row_update(1, {"family_name": None})], True)

        assert store.get_contact(local_id)["display_name"] == "Ann"

    def test_update_merges_fields(self, store):
        """Test that an update only replaces the given fields."""
        local_id = create_contact(store)

        store.apply_batch([row_update(1, {"family_name": "Smith"})], True)

        name = store.fetch_attribute_rows(local_id)[0]
        assert name.fields == {"given_name": "Ann", "family_name": "Smith"}

    def test_blank_fields_are_dropped(self, store):
        local_id = create_contact(store)

        store.apply_batch([row_update(2, {"number": ""})], True)

        assert store.fetch_attribute_rows(local_id)[1].fields == {}

    def test_avatar_is_stored_as_blob(self, store):
        local_id = create_contact(store)
        store.apply_batch(
            [row_insert(local_id, AttributeKind.AVATAR, {"photo": b"\x00\x01"})], True
        )

        with store.connection() as conn:
            row = conn.execute(
                "SELECT fields, photo FROM contact_data WHERE kind = 'avatar'"
            ).fetchone()
        assert row["fields"] == "{}"
        assert bytes(row["photo"]) == b"\x00\x01"
        assert store.fetch_attribute_rows(local_id)[2].fields == {"photo": b"\x00\x01"}

    def test_delete_row(self, store):
        local_id = create_contact(store)

        store.apply_batch(
            [
                OperationBatchEntry(
                    kind=OperationKind.DELETE, table=TargetTable.ATTRIBUTE, row_id=1
                )
            ],
            True,
        )

        assert [row.kind for row in store.fetch_attribute_rows(local_id)] == [
            AttributeKind.PHONE
        ]
        assert store.get_contact(local_id)["display_name"] is None

    def test_every_mutation_bumps_version(self, store):
        local_id = create_contact(store)
        version = store.get_contact(local_id)["version"]

        store.apply_batch([row_update(2, {"number": "2"})], True)

        assert store.get_contact(local_id)["version"] == version + 1

    def test_update_contact_columns(self, store):
        local_id = create_contact(store, remote_id=None)

        store.apply_batch(
            [
                OperationBatchEntry(
                    kind=OperationKind.UPDATE,
                    table=TargetTable.CONTACT,
                    row_id=local_id,
                    values={"remote_id": 77},
                )
            ],
            True,
        )

        assert store.find_local_id_by_remote_id(ACCOUNT, 77) == local_id

    def test_unknown_contact_column_is_rejected(self, store):
        local_id = create_contact(store)
        with pytest.raises(StoreError, match="columns"):
            store.apply_batch(
                [
                    OperationBatchEntry(
                        kind=OperationKind.UPDATE,
                        table=TargetTable.CONTACT,
                        row_id=local_id,
                        values={"account": "mallory"},
                    )
                ],
                True,
            )

    def test_failed_chunk_is_rolled_back(self, store):
        """Test that a failing operation undoes the whole chunk."""
        with pytest.raises(StoreError):
            store.apply_batch(
                [contact_insert(42), row_update(999, {"note": "x"})], True
            )

        assert store.count_contacts(ACCOUNT) == 0

    def test_duplicate_remote_id_is_store_error(self, store):
        create_contact(store, remote_id=42)
        with pytest.raises(StoreError, match="Database error"):
            store.apply_batch([contact_insert(42)], True)

    def test_same_remote_id_in_other_account(self, store):
        create_contact(store, remote_id=42)
        store.apply_batch([contact_insert(42, account="bob")], True)
        assert store.find_local_id_by_remote_id("bob", 42) == 2

    def test_dangling_back_reference(self, store):
        with pytest.raises(StoreError, match="Back-reference"):
            store.apply_batch(
                [row_insert(BackReference(3), AttributeKind.NOTE, {"note": "x"})], True
            )


class TestDirtyTracking:
    """Tests for sync-adapter versus local mutations."""

    def test_sync_operations_stay_clean(self, store):
        create_contact(store, sync_operation=True)
        assert store.scan_dirty(ACCOUNT) == []

    def test_local_operations_mark_dirty(self, store):
        local_id = create_contact(store, sync_operation=False)

        (record,) = store.scan_dirty(ACCOUNT)

        assert record.local_id == local_id
        assert record.remote_id == 42
        assert record.dirty is True
        assert record.deleted is False
        assert record.display_name == "Ann Lee"

    def test_local_delete_is_soft(self, store):
        local_id = create_contact(store)
        delete = OperationBatchEntry(
            kind=OperationKind.DELETE, table=TargetTable.CONTACT, row_id=local_id
        )

        store.apply_batch([delete], False)

        contact = store.get_contact(local_id)
        assert contact["deleted"] is True
        assert contact["dirty"] is True
        assert store.count_contacts(ACCOUNT) == 0
        assert store.count_contacts(ACCOUNT, include_deleted=True) == 1
        assert store.scan_dirty(ACCOUNT)[0].deleted is True

    def test_sync_delete_removes_rows(self, store):
        """Test that a sync delete removes the contact and cascades to its rows."""
        local_id = create_contact(store)
        delete = OperationBatchEntry(
            kind=OperationKind.DELETE, table=TargetTable.CONTACT, row_id=local_id
        )

        store.apply_batch([delete], True)

        assert store.get_contact(local_id) is None
        assert store.fetch_attribute_rows(local_id) == []

    def test_delete_missing_contact(self, store):
        delete = OperationBatchEntry(
            kind=OperationKind.DELETE, table=TargetTable.CONTACT, row_id=5
        )
        with pytest.raises(StoreError, match="No contact"):
            store.apply_batch([delete], True)

    def test_scan_dirty_is_per_account(self, store):
        create_contact(store, sync_operation=False)
        assert store.scan_dirty("bob") == []


class TestGroupsAndVisibility:
    """Tests for sync groups and account settings."""

    def test_ensure_group_creates_read_only_group(self, store):
        group_id = store.ensure_group(ACCOUNT, "Synced Contacts")

        assert store.ensure_group(ACCOUNT, "Synced Contacts") == group_id
        with store.connection() as conn:
            row = conn.execute(
                "SELECT read_only FROM contact_groups WHERE id = ?", (group_id,)
            ).fetchone()
        assert row["read_only"] == 1

    def test_visibility_defaults_to_hidden(self, store):
        assert store.get_visibility(ACCOUNT) is False

    def test_set_visibility_upserts(self, store):
        store.set_visibility(ACCOUNT, True)
        store.set_visibility(ACCOUNT, False)
        store.set_visibility(ACCOUNT, True)
        assert store.get_visibility(ACCOUNT) is True


class TestSyncState:
    """Tests for the persisted watermark."""

    def test_watermark_defaults_to_zero(self, store):
        assert store.get_watermark(ACCOUNT) == 0
        assert store.get_sync_state(ACCOUNT) is None

    def test_set_and_get_watermark(self, store):
        synced_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        store.set_watermark(ACCOUNT, 100, synced_at)
        store.set_watermark(ACCOUNT, 150, synced_at)

        state = store.get_sync_state(ACCOUNT)
        assert state["watermark"] == 150
        assert state["last_sync_at"] == synced_at.isoformat()
        assert store.get_watermark(ACCOUNT) == 150

    def test_set_watermark_defaults_timestamp(self, store):
        store.set_watermark(ACCOUNT, 5)
        assert store.get_sync_state(ACCOUNT)["last_sync_at"] is not None

    def test_clear_watermark(self, store):
        store.set_watermark(ACCOUNT, 5)
        assert store.clear_watermark(ACCOUNT) is True
        assert store.clear_watermark(ACCOUNT) is False
        assert store.get_watermark(ACCOUNT) == 0
