"""
Tests for the reconciliation engine.

Covers the create/merge/tombstone dispatch, watermark tracking, batch
flushing and the outbound dirty set. Most tests run against an in-memory
SqliteContactStore; tests that inspect the exact operations use a mocked
ContactStore instead.
"""

from unittest.mock import MagicMock

import pytest

from contact_reconcile.storage.db import SqliteContactStore
from contact_reconcile.storage.store import (
    ContactStore,
    DirtyRecord,
    StoredAttributeRow,
    StoreError,
)
from contact_reconcile.sync.batch import (
    BackReference,
    OperationBatch,
    OperationKind,
    TargetTable,
)
from contact_reconcile.sync.contact import (
    Address,
    AddressRole,
    AttributeKind,
    ContactSnapshot,
    ContactStub,
    EmailRole,
    Organization,
    PhoneRole,
)
from contact_reconcile.sync.differ import EmptyValuePolicy
from contact_reconcile.sync.engine import (
    ReconcileConfigError,
    ReconcileResult,
    ReconciliationEngine,
)
from contact_reconcile.sync.operations import ContactOperations

ACCOUNT = "alice@example.com"


@pytest.fixture
def store():
    store = SqliteContactStore(":memory:")
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def engine(store):
    return ReconciliationEngine(store)


def mock_store(local_id=None) -> MagicMock:
    """ContactStore double that knows no contacts and numbers inserts."""
    store = MagicMock(spec=ContactStore)
    store.find_local_id_by_remote_id.return_value = local_id
    store.fetch_attribute_rows.return_value = []
    counter = iter(range(100, 10000))

    def apply_batch(entries, sync_operation):
        return [
            next(counter) if entry.kind is OperationKind.INSERT else None
            for entry in entries
        ]

    store.apply_batch.side_effect = apply_batch
    return store


def applied_entries(store: MagicMock) -> list:
    return [entry for call in store.apply_batch.call_args_list for entry in call[0][0]]


def rows_by_slot(store: SqliteContactStore, local_id: int) -> dict:
    return {(row.kind, row.role): row for row in store.fetch_attribute_rows(local_id)}


class TestEngineConfiguration:
    """Tests for configuration validation."""

    @pytest.mark.parametrize("batch_size", [0, -3, True, "10", 2.5])
    def test_invalid_batch_size(self, batch_size):
        with pytest.raises(ReconcileConfigError, match="batch_size"):
            ReconciliationEngine(MagicMock(spec=ContactStore), batch_size=batch_size)

    def test_invalid_empty_value_policy(self):
        with pytest.raises(ReconcileConfigError, match="empty_value_policy"):
            ReconciliationEngine(
                MagicMock(spec=ContactStore), empty_value_policy="forget"
            )

    def test_policy_accepts_string_value(self):
        engine = ReconciliationEngine(
            MagicMock(spec=ContactStore), empty_value_policy="keep"
        )
        assert engine.empty_value_policy is EmptyValuePolicy.KEEP

    @pytest.mark.parametrize("account", ["", "   "])
    def test_empty_account_is_rejected(self, account):
        store = MagicMock(spec=ContactStore)
        engine = ReconciliationEngine(store)

        with pytest.raises(ReconcileConfigError, match="account"):
            engine.reconcile(account, None, [ContactSnapshot(remote_id=1)])
        with pytest.raises(ReconcileConfigError):
            engine.collect_dirty(account)
        with pytest.raises(ReconcileConfigError):
            engine.finalize_sync(account, [])
        store.apply_batch.assert_not_called()


class TestCreatePath:
    """Tests for snapshots unknown to the local store."""

    def test_new_contact_operations(self):
        """Test the exact operations emitted for a brand-new contact."""
        store = mock_store()
        engine = ReconciliationEngine(store)
        snapshot = ContactSnapshot(
            remote_id=42,
            sync_state=100,
            first_name="Ann",
            emails={EmailRole.WORK: "ann@x.com"},
        )

        result = engine.reconcile(ACCOUNT, 3, [snapshot], previous_watermark=0)

        entries = applied_entries(store)
        assert [entry.describe().split(" -> ")[0] for entry in entries] == [
            "insert contact",
            "insert name",
            "insert email[work]",
            "insert group_membership",
            "insert profile_link",
        ]
        assert entries[0].values == {"account": ACCOUNT, "remote_id": 42}
        assert entries[2].values == {"address": "ann@x.com"}
        assert entries[3].values == {"group_id": 3}
        assert all(entry.contact_ref == BackReference(0, 0) for entry in entries[1:])
        assert result.watermark == 100
        assert result.stats.created == 1
        assert result.success

    def test_new_contact_is_stored(self, store, engine):
        group_id = engine.ensure_group(ACCOUNT, "Synced Contacts")
        snapshot = ContactSnapshot(
            remote_id=42,
            first_name="Ann",
            last_name="Lee",
            phones={PhoneRole.MOBILE: "555-1"},
            organization=Organization(company="Acme"),
        )

        engine.reconcile(ACCOUNT, group_id, [snapshot])

        local_id = store.find_local_id_by_remote_id(ACCOUNT, 42)
        contact = store.get_contact(local_id)
        assert contact["display_name"] == "Ann Lee"
        assert contact["dirty"] is False
        rows = rows_by_slot(store, local_id)
        assert rows[(AttributeKind.PHONE, PhoneRole.MOBILE)].fields == {
            "number": "555-1"
        }
        assert rows[(AttributeKind.ORGANIZATION, "work")].fields == {
            "company": "Acme"
        }
        assert rows[(AttributeKind.GROUP_MEMBERSHIP, None)].fields == {
            "group_id": group_id
        }
        assert AttributeKind.PROFILE_LINK in {kind for kind, _ in rows}

    def test_email_roles_are_kept_apart(self, store, engine):
        """Test that home and work emails are stored under their own roles."""
        snapshot = ContactSnapshot(
            remote_id=5,
            emails={EmailRole.HOME: "a@home.example", EmailRole.WORK: "a@work.example"},
        )

        engine.reconcile(ACCOUNT, None, [snapshot])

        rows = rows_by_slot(store, store.find_local_id_by_remote_id(ACCOUNT, 5))
        assert rows[(AttributeKind.EMAIL, EmailRole.HOME)].fields == {
            "address": "a@home.example"
        }
        assert rows[(AttributeKind.EMAIL, EmailRole.WORK)].fields == {
            "address": "a@work.example"
        }

    def test_custom_address_and_avatar_are_stored(self, store, engine):
        snapshot = ContactSnapshot(
            remote_id=6,
            addresses={AddressRole.CUSTOM: Address(street="PO Box 7")},
            avatar=b"\x89PNG",
        )

        engine.reconcile(ACCOUNT, None, [snapshot])

        rows = rows_by_slot(store, store.find_local_id_by_remote_id(ACCOUNT, 6))
        assert rows[(AttributeKind.ADDRESS, AddressRole.CUSTOM)].fields == {
            "street": "PO Box 7",
            "label": "Postal",
        }
        assert rows[(AttributeKind.AVATAR, None)].fields == {"photo": b"\x89PNG"}

    def test_identity_lookup_failure_creates_contact(self):
        """Test that a failed lookup is recorded and treated as not found."""
        store = mock_store()
        store.find_local_id_by_remote_id.side_effect = StoreError("locked")
        engine = ReconciliationEngine(store)

        result = engine.reconcile(ACCOUNT, None, [ContactSnapshot(remote_id=9)])

        assert result.stats.created == 1
        assert result.stats.identity_failures == 1
        assert result.identity_failures[0].remote_id == 9
        assert "locked" in result.identity_failures[0].message


class TestMergePath:
    """Tests for snapshots of contacts that exist locally."""

    def test_reconcile_is_idempotent(self, store, engine):
        """Test that a second pass with the same snapshot changes nothing."""
        snapshot = ContactSnapshot(
            remote_id=42,
            sync_state=10,
            first_name="Ann",
            phones={PhoneRole.HOME: "555-1"},
            emails={EmailRole.WORK: "ann@x.com"},
            addresses={AddressRole.HOME: Address(city="Kassel")},
            organization=Organization(position="CTO"),
            website="https://ann.example",
            note="hi",
            avatar=b"img",
        )
        engine.reconcile(ACCOUNT, 1, [snapshot])
        version = store.get_contact(1)["version"]

        result = engine.reconcile(ACCOUNT, 1, [snapshot], previous_watermark=10)

        assert result.stats.merged == 1
        assert result.stats.unchanged == 1
        assert result.stats.operations == 0
        assert store.get_contact(1)["version"] == version

    def test_only_changed_fields_are_written(self, store, engine):
        engine.reconcile(
            ACCOUNT,
            None,
            [
                ContactSnapshot(
                    remote_id=42,
                    phones={PhoneRole.MOBILE: "555-1"},
                    emails={EmailRole.HOME: "a@x.com"},
                )
            ],
        )

        result = engine.reconcile(
            ACCOUNT,
            None,
            [
                ContactSnapshot(
                    remote_id=42,
                    phones={PhoneRole.MOBILE: "555-2"},
                    emails={EmailRole.HOME: "a@x.com"},
                )
            ],
        )

        assert result.stats.operations == 1
        rows = rows_by_slot(store, 1)
        assert rows[(AttributeKind.PHONE, PhoneRole.MOBILE)].fields == {
            "number": "555-2"
        }

    def test_partial_address_update_keeps_label(self, store, engine):
        engine.reconcile(
            ACCOUNT,
            None,
            [
                ContactSnapshot(
                    remote_id=42,
                    addresses={
                        AddressRole.CUSTOM: Address(street="PO Box 7", city="Kassel")
                    },
                    avatar=b"old",
                )
            ],
        )

        result = engine.reconcile(
            ACCOUNT,
            None,
            [
                ContactSnapshot(
                    remote_id=42,
                    addresses={
                        AddressRole.CUSTOM: Address(street="PO Box 7", city="Berlin")
                    },
                    avatar=b"new",
                )
            ],
        )

        assert result.stats.operations == 2
        rows = rows_by_slot(store, 1)
        assert rows[(AttributeKind.ADDRESS, AddressRole.CUSTOM)].fields == {
            "street": "PO Box 7",
            "city": "Berlin",
            "label": "Postal",
        }
        assert rows[(AttributeKind.AVATAR, None)].fields == {"photo": b"new"}

    def test_emptied_address_is_removed(self, store, engine):
        engine.reconcile(
            ACCOUNT,
            None,
            [ContactSnapshot(remote_id=42, addresses={"home": Address(city="Kassel")})],
        )

        engine.reconcile(ACCOUNT, None, [ContactSnapshot(remote_id=42)])

        assert (AttributeKind.ADDRESS, AddressRole.HOME) not in rows_by_slot(store, 1)

    def test_new_attribute_is_added_to_existing_contact(self):
        store = mock_store(local_id=7)
        engine = ReconciliationEngine(store)

        engine.reconcile(
            ACCOUNT, None, [ContactSnapshot(remote_id=42, note="met at conference")]
        )

        note, profile = applied_entries(store)
        assert note.kind is OperationKind.INSERT
        assert note.attribute_kind == AttributeKind.NOTE
        assert note.contact_ref == 7
        assert profile.attribute_kind == AttributeKind.PROFILE_LINK

    def test_unrelated_rows_are_left_alone(self):
        """Test that rows of roles the snapshot does not list are not touched."""
        store = mock_store(local_id=7)
        store.fetch_attribute_rows.return_value = [
            StoredAttributeRow(1, AttributeKind.PHONE, "pager", {"number": "1"}),
            StoredAttributeRow(2, "event", "birthday", {"date": "1990-01-01"}),
            StoredAttributeRow(3, AttributeKind.PROFILE_LINK, None, {"remote_id": 42}),
        ]
        engine = ReconciliationEngine(store)

        result = engine.reconcile(ACCOUNT, None, [ContactSnapshot(remote_id=42)])

        assert result.stats.unchanged == 1
        store.apply_batch.assert_not_called()

    def test_merge_by_local_id_stores_remote_id(self, store, engine):
        batch = OperationBatch(store, sync_operation=True)
        ContactOperations.create_new_contact(batch, ACCOUNT).add_name("Bo", None)
        assert batch.execute() == []

        engine.reconcile(
            ACCOUNT, None, [ContactSnapshot(local_id=1, remote_id=77, first_name="Bo")]
        )

        assert store.find_local_id_by_remote_id(ACCOUNT, 77) == 1

    def test_fetch_failure_skips_snapshot(self):
        store = mock_store(local_id=7)
        store.fetch_attribute_rows.side_effect = StoreError("corrupt")
        engine = ReconciliationEngine(store)

        result = engine.reconcile(
            ACCOUNT, None, [ContactSnapshot(remote_id=42, sync_state=5)]
        )

        assert result.stats.skipped == 1
        assert result.skipped[0].reason.endswith("corrupt")
        store.apply_batch.assert_not_called()


class TestTombstonePath:
    """Tests for remotely deleted contacts."""

    def test_deleted_contact_is_removed(self, store, engine):
        engine.reconcile(
            ACCOUNT, None, [ContactSnapshot(remote_id=42, first_name="Ann")]
        )

        result = engine.reconcile(
            ACCOUNT, None, [ContactSnapshot(remote_id=42, deleted=True)]
        )

        assert result.stats.tombstoned == 1
        assert store.get_contact(1) is None
        assert store.fetch_attribute_rows(1) == []

    def test_deletion_wins_over_attributes(self):
        """Test that a deleted snapshot emits only the contact delete."""
        store = mock_store(local_id=7)
        engine = ReconciliationEngine(store)

        engine.reconcile(
            ACCOUNT,
            None,
            [ContactSnapshot(remote_id=42, deleted=True, first_name="Ann", note="x")],
        )

        (entry,) = applied_entries(store)
        assert entry.kind is OperationKind.DELETE
        assert entry.table is TargetTable.CONTACT
        assert entry.row_id == 7
        store.fetch_attribute_rows.assert_not_called()

    def test_unknown_deleted_contact_is_ignored(self):
        store = mock_store()
        engine = ReconciliationEngine(store)

        result = engine.reconcile(
            ACCOUNT, None, [ContactSnapshot(remote_id=42, deleted=True, sync_state=8)]
        )

        assert result.stats.ignored == 1
        assert result.watermark == 8
        store.apply_batch.assert_not_called()


class TestRepeatedContactInOnePass:
    """Tests for one contact appearing more than once in a single pass."""

    def test_repeated_remote_id_creates_one_contact(self, store, engine):
        snapshots = [
            ContactSnapshot(remote_id=7, sync_state=1, first_name="Bob"),
            ContactSnapshot(remote_id=42, sync_state=2, first_name="Ann"),
            ContactSnapshot(remote_id=42, sync_state=3, first_name="Anne"),
        ]

        result = engine.reconcile(ACCOUNT, None, snapshots)

        assert result.success
        assert result.errors == []
        assert result.stats.created == 2
        assert result.stats.merged == 1
        assert result.watermark == 3
        assert store.count_contacts(ACCOUNT) == 2
        local_id = store.find_local_id_by_remote_id(ACCOUNT, 42)
        rows = store.fetch_attribute_rows(local_id)
        assert len(rows) == len(rows_by_slot(store, local_id))
        name = rows_by_slot(store, local_id)[(AttributeKind.NAME, None)]
        assert name.fields == {"given_name": "Anne"}
        assert store.find_local_id_by_remote_id(ACCOUNT, 7) is not None

    def test_repeated_merge_adds_row_once(self, store, engine):
        engine.reconcile(
            ACCOUNT, None, [ContactSnapshot(remote_id=42, first_name="Ann")]
        )
        snapshot = ContactSnapshot(
            remote_id=42, first_name="Ann", phones={PhoneRole.HOME: "555-1"}
        )

        result = engine.reconcile(ACCOUNT, None, [snapshot, snapshot])

        assert result.errors == []
        assert result.stats.merged == 2
        assert result.stats.unchanged == 1
        rows = store.fetch_attribute_rows(1)
        phones = [row for row in rows if row.kind == AttributeKind.PHONE]
        assert len(phones) == 1
        assert phones[0].fields == {"number": "555-1"}
        assert len(rows) == len(rows_by_slot(store, 1))

    def test_local_id_then_remote_id_resolve_to_same_contact(self, store, engine):
        """Test that a queued remote id is seen by a later lookup."""
        batch = OperationBatch(store, sync_operation=True)
        ContactOperations.create_new_contact(batch, ACCOUNT).add_name("Bo", None)
        assert batch.execute() == []

        result = engine.reconcile(
            ACCOUNT,
            None,
            [
                ContactSnapshot(local_id=1, remote_id=77, first_name="Bo"),
                ContactSnapshot(remote_id=77, first_name="Bob"),
            ],
        )

        assert result.errors == []
        assert result.stats.created == 0
        assert result.stats.merged == 2
        assert store.count_contacts(ACCOUNT) == 1
        name = rows_by_slot(store, 1)[(AttributeKind.NAME, None)]
        assert name.fields == {"given_name": "Bob"}

    def test_distinct_contacts_share_one_flush(self):
        store = mock_store()
        engine = ReconciliationEngine(store)

        result = engine.reconcile(
            ACCOUNT,
            None,
            [ContactSnapshot(remote_id=1), ContactSnapshot(remote_id=2)],
        )

        assert result.stats.flushes == 1
        assert store.apply_batch.call_count == 1

    def test_zero_remote_id_gets_profile_link_once(self, store, engine):
        snapshot = ContactSnapshot(remote_id=0, first_name="Zed")
        engine.reconcile(ACCOUNT, None, [snapshot])

        result = engine.reconcile(ACCOUNT, None, [snapshot])

        assert result.stats.operations == 0
        links = [
            row
            for row in store.fetch_attribute_rows(1)
            if row.kind == AttributeKind.PROFILE_LINK
        ]
        assert len(links) == 1
        assert links[0].fields["remote_id"] == 0


class TestWatermarkAndFlushing:
    """Tests for watermark tracking and batch flushing."""

    def test_watermark_never_decreases(self):
        engine = ReconciliationEngine(mock_store())
        snapshots = [
            ContactSnapshot(remote_id=1, sync_state=30),
            ContactSnapshot(remote_id=2, sync_state=70),
            ContactSnapshot(remote_id=3, sync_state=50),
        ]

        assert engine.reconcile(ACCOUNT, None, snapshots).watermark == 70
        assert (
            engine.reconcile(ACCOUNT, None, snapshots, previous_watermark=90).watermark
            == 90
        )

    def test_empty_input_keeps_watermark(self):
        store = mock_store()
        result = ReconciliationEngine(store).reconcile(
            ACCOUNT, None, [], previous_watermark=12
        )
        assert result.watermark == 12
        assert result.stats.flushes == 0
        store.apply_batch.assert_not_called()

    def test_malformed_snapshot_is_skipped(self):
        """Test that a snapshot without identity is skipped and not folded."""
        engine = ReconciliationEngine(mock_store())
        snapshots = [
            ContactSnapshot(sync_state=900, first_name="Nobody"),
            ContactSnapshot(remote_id=1, sync_state=5),
        ]

        result = engine.reconcile(ACCOUNT, None, snapshots)

        assert result.stats.received == 2
        assert result.stats.skipped == 1
        assert result.stats.created == 1
        assert result.watermark == 5

    def test_large_input_is_flushed_in_parts(self):
        store = mock_store()
        engine = ReconciliationEngine(store, batch_size=10)
        snapshots = [
            ContactSnapshot(remote_id=i, sync_state=i, first_name=f"N{i}")
            for i in range(1, 26)
        ]

        result = engine.reconcile(ACCOUNT, None, snapshots)

        sizes = [len(call[0][0]) for call in store.apply_batch.call_args_list]
        assert len(sizes) >= 2
        assert sizes[-1] < 10
        assert sum(sizes) == result.stats.operations == 75
        assert result.stats.flushes == len(sizes)
        assert result.stats.created == 25
        assert result.watermark == 25

    def test_flushed_contacts_are_all_stored(self, store):
        engine = ReconciliationEngine(store, batch_size=4)
        snapshots = [ContactSnapshot(remote_id=i, first_name="X") for i in range(12)]

        result = engine.reconcile(ACCOUNT, None, snapshots)

        assert result.success
        assert store.count_contacts(ACCOUNT) == 12

    def test_failed_chunk_is_reported(self):
        store = mock_store()
        store.apply_batch.side_effect = StoreError("disk full")
        engine = ReconciliationEngine(store)

        result = engine.reconcile(
            ACCOUNT, None, [ContactSnapshot(remote_id=1, sync_state=3)]
        )

        assert not result.success
        assert result.stats.failed_chunks == 1
        assert "disk full" in result.errors[0].message
        assert result.watermark == 3

    def test_summary(self):
        result = ReconcileResult(watermark=7)
        result.stats.received = 2
        result.stats.created = 2

        summary = result.summary()

        assert "Snapshots received: 2" in summary
        assert "Watermark: 7" in summary
        assert "Failed chunks" not in summary


class TestOutbound:
    """Tests for the dirty set and finalize_sync."""

    def test_collect_dirty_builds_stubs(self):
        store = MagicMock(spec=ContactStore)
        store.scan_dirty.return_value = [
            DirtyRecord(local_id=7, remote_id=42, dirty=True, deleted=False),
            DirtyRecord(local_id=8, remote_id=None, dirty=True, deleted=True),
            DirtyRecord(local_id=9, remote_id=50, dirty=False, deleted=False),
        ]
        engine = ReconciliationEngine(store)

        dirty = engine.collect_dirty(ACCOUNT)

        assert set(dirty) == {42, "local:8"}
        assert dirty[42].dirty and not dirty[42].deleted
        assert dirty["local:8"].deleted

    def test_collect_dirty_propagates_store_errors(self):
        store = MagicMock(spec=ContactStore)
        store.scan_dirty.side_effect = StoreError("locked")

        with pytest.raises(StoreError):
            ReconciliationEngine(store).collect_dirty(ACCOUNT)

    def test_finalize_clears_dirty_flag(self):
        """Test that a modification stub only clears the dirty flag."""
        store = mock_store()
        store.scan_dirty.return_value = [
            DirtyRecord(local_id=7, remote_id=42, dirty=True, deleted=False)
        ]
        engine = ReconciliationEngine(store)

        errors = engine.finalize_sync(ACCOUNT, engine.collect_dirty(ACCOUNT))

        assert errors == []
        store.apply_batch.assert_called_once()
        (entry,) = applied_entries(store)
        assert entry.kind is OperationKind.UPDATE
        assert entry.table is TargetTable.CONTACT
        assert entry.row_id == 7
        assert entry.values == {"dirty": 0}
        assert store.apply_batch.call_args[0][1] is True

    def test_finalize_deletes_tombstones(self):
        store = mock_store()
        engine = ReconciliationEngine(store)

        engine.finalize_sync(ACCOUNT, [ContactStub.create_deleted(8, 50)])

        (entry,) = applied_entries(store)
        assert entry.kind is OperationKind.DELETE
        assert entry.row_id == 8

    def test_finalize_nothing(self):
        store = mock_store()
        assert ReconciliationEngine(store).finalize_sync(ACCOUNT, {}) == []
        store.apply_batch.assert_not_called()

    def test_local_edits_round_trip(self, store):
        """Test local edits becoming dirty and finalize_sync clearing them."""
        local = ReconciliationEngine(store, sync_operation=False)
        local.reconcile(ACCOUNT, None, [ContactSnapshot(remote_id=42, first_name="A")])
        local.reconcile(ACCOUNT, None, [ContactSnapshot(remote_id=43, first_name="B")])
        local.reconcile(ACCOUNT, None, [ContactSnapshot(remote_id=43, deleted=True)])

        dirty = local.collect_dirty(ACCOUNT)

        assert set(dirty) == {42, 43}
        assert dirty[43].deleted
        assert store.count_contacts(ACCOUNT) == 1

        assert local.finalize_sync(ACCOUNT, dirty) == []

        assert local.collect_dirty(ACCOUNT) == {}
        assert store.get_contact(1)["dirty"] is False
        assert store.get_contact(2) is None


class TestAccountBookkeeping:
    """Tests for group and visibility helpers."""

    def test_ensure_group_is_stable(self, store, engine):
        first = engine.ensure_group(ACCOUNT, "Synced Contacts")
        assert engine.ensure_group(ACCOUNT, "Synced Contacts") == first
        assert engine.ensure_group("bob", "Synced Contacts") != first

    def test_set_visibility(self, store, engine):
        assert store.get_visibility(ACCOUNT) is False
        engine.set_visibility(ACCOUNT, True)
        assert store.get_visibility(ACCOUNT) is True
