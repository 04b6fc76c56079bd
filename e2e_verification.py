#!/usr/bin/env python3
"""
End-to-End Verification Script for the Reconcile/Upload Cycle

This script verifies the reconciliation flow against a real SQLite store:
1. A new remote snapshot creates a local contact
2. Re-applying the same snapshot changes nothing
3. A partial change updates only the changed field
4. A remote deletion removes the contact
5. The persisted watermark never moves backwards
6. Local edits show up in the dirty set and are cleared by finalize
"""

from __future__ import annotations

import sys
import tempfile
from pathlib import Path

# Add current directory to path
sys.path.insert(0, str(Path(__file__).parent))

from contact_reconcile.storage.db import SqliteContactStore
from contact_reconcile.sync.contact import ContactSnapshot, EmailRole, PhoneRole
from contact_reconcile.sync.engine import ReconciliationEngine

ACCOUNT = "e2e@example.com"


def print_step(step_num: int, description: str) -> None:
    """Print a test step header."""
    print(f"\n{'=' * 70}")
    print(f"STEP {step_num}: {description}")
    print("=" * 70)


def open_store(tmpdir: str) -> SqliteContactStore:
    store = SqliteContactStore(str(Path(tmpdir) / "contacts.db"))
    store.initialize()
    return store


def ann(sync_state: int = 100, mobile: str = "555-1") -> ContactSnapshot:
    return ContactSnapshot(
        remote_id=42,
        sync_state=sync_state,
        first_name="Ann",
        last_name="Lee",
        phones={PhoneRole.MOBILE: mobile},
        emails={EmailRole.WORK: "ann@example.com"},
    )


def verify_step_1_create() -> bool:
    """Verify that an unknown snapshot creates a local contact."""
    print_step(1, "Verify a new snapshot creates a local contact")

    with tempfile.TemporaryDirectory() as tmpdir:
        store = open_store(tmpdir)
        engine = ReconciliationEngine(store)
        group_id = engine.ensure_group(ACCOUNT, "Synced Contacts")

        result = engine.reconcile(ACCOUNT, group_id, [ann()])

        local_id = store.find_local_id_by_remote_id(ACCOUNT, 42)
        kinds = sorted(row.kind for row in store.fetch_attribute_rows(local_id or 0))
        print(f"  Local id: {local_id}")
        print(f"  Rows: {kinds}")
        print(f"  Operations: {result.stats.operations}")

        if local_id is not None and result.stats.created == 1 and len(kinds) == 5:
            print("  ✓ PASS: Contact created with name, phone, email, group, link")
            return True
        print("  ✗ FAIL: Contact not created as expected")
        return False


def verify_step_2_idempotent() -> bool:
    """Verify that the same snapshot applied twice emits nothing."""
    print_step(2, "Verify re-applying a snapshot is a no-op")

    with tempfile.TemporaryDirectory() as tmpdir:
        engine = ReconciliationEngine(open_store(tmpdir))
        engine.reconcile(ACCOUNT, None, [ann()])

        result = engine.reconcile(ACCOUNT, None, [ann()], previous_watermark=100)

        print(f"  Operations on second pass: {result.stats.operations}")
        if result.stats.operations == 0 and result.stats.unchanged == 1:
            print("  ✓ PASS: Second pass changed nothing")
            return True
        print("  ✗ FAIL: Second pass emitted operations")
        return False


def verify_step_3_partial_update() -> bool:
    """Verify that only the changed field is written."""
    print_step(3, "Verify a partial change updates one field")

    with tempfile.TemporaryDirectory() as tmpdir:
        store = open_store(tmpdir)
        engine = ReconciliationEngine(store)
        engine.reconcile(ACCOUNT, None, [ann()])

        result = engine.reconcile(ACCOUNT, None, [ann(sync_state=120, mobile="555-2")])

        rows = store.fetch_attribute_rows(1)
        phone = next(row for row in rows if row.kind == "phone")
        print(f"  Operations: {result.stats.operations}")
        print(f"  Stored phone: {phone.fields}")

        if result.stats.operations == 1 and phone.fields == {"number": "555-2"}:
            print("  ✓ PASS: Exactly one update was applied")
            return True
        print("  ✗ FAIL: Unexpected operations for a single-field change")
        return False


def verify_step_4_remote_delete() -> bool:
    """Verify that a remote deletion removes the local contact."""
    print_step(4, "Verify a remote deletion removes the contact")

    with tempfile.TemporaryDirectory() as tmpdir:
        store = open_store(tmpdir)
        engine = ReconciliationEngine(store)
        engine.reconcile(ACCOUNT, None, [ann()])

        tombstone = ContactSnapshot(remote_id=42, sync_state=130, deleted=True)
        result = engine.reconcile(ACCOUNT, None, [tombstone])

        remaining = store.count_contacts(ACCOUNT, include_deleted=True)
        print(f"  Contacts left: {remaining}")
        if result.stats.tombstoned == 1 and remaining == 0:
            print("  ✓ PASS: Contact and its rows were removed")
            return True
        print("  ✗ FAIL: Contact still present")
        return False


def verify_step_5_watermark() -> bool:
    """Verify the watermark is persisted and never decreases."""
    print_step(5, "Verify the watermark only moves forward")

    with tempfile.TemporaryDirectory() as tmpdir:
        store = open_store(tmpdir)
        engine = ReconciliationEngine(store)

        first = engine.reconcile(ACCOUNT, None, [ann(sync_state=100)])
        store.set_watermark(ACCOUNT, first.watermark)

        second = engine.reconcile(
            ACCOUNT, None, [ann(sync_state=60)], store.get_watermark(ACCOUNT)
        )
        store.set_watermark(ACCOUNT, second.watermark)

        persisted = store.get_watermark(ACCOUNT)
        print(f"  Watermarks: {first.watermark} -> {second.watermark}")
        print(f"  Persisted: {persisted}")
        if persisted == 100:
            print("  ✓ PASS: Older snapshots did not lower the watermark")
            return True
        print("  ✗ FAIL: Watermark moved backwards")
        return False


def verify_step_6_dirty_cycle() -> bool:
    """Verify the dirty set and finalize_sync."""
    print_step(6, "Verify local edits are uploaded and finalized")

    with tempfile.TemporaryDirectory() as tmpdir:
        store = open_store(tmpdir)
        local_edits = ReconciliationEngine(store, sync_operation=False)
        local_edits.reconcile(ACCOUNT, None, [ann()])

        dirty = local_edits.collect_dirty(ACCOUNT)
        print(f"  Dirty set: {sorted(dirty)}")
        if set(dirty) != {42}:
            print("  ✗ FAIL: Expected contact 42 in the dirty set")
            return False

        errors = local_edits.finalize_sync(ACCOUNT, dirty)
        after = local_edits.collect_dirty(ACCOUNT)
        print(f"  Finalize errors: {len(errors)}")
        print(f"  Dirty set after finalize: {sorted(after)}")

        if not errors and not after:
            print("  ✓ PASS: Dirty flags were cleared")
            return True
        print("  ✗ FAIL: Dirty set not cleared")
        return False


def main() -> int:
    """Run all verification steps."""
    print("\n" + "=" * 70)
    print("END-TO-END VERIFICATION: Reconcile/Upload Cycle")
    print("=" * 70)

    results = [
        ("Create", verify_step_1_create()),
        ("Idempotent reapply", verify_step_2_idempotent()),
        ("Partial update", verify_step_3_partial_update()),
        ("Remote delete", verify_step_4_remote_delete()),
        ("Watermark", verify_step_5_watermark()),
        ("Dirty cycle", verify_step_6_dirty_cycle()),
    ]

    # Print summary
    print("\n" + "=" * 70)
    print("VERIFICATION SUMMARY")
    print("=" * 70)

    failed = 0
    for name, result in results:
        status = "✓ PASS" if result else "✗ FAIL"
        print(f"  {status}: {name}")
        if not result:
            failed += 1

    print(f"\nTotal: {len(results) - failed} passed, {failed} failed")

    if failed == 0:
        print("\nALL VERIFICATION STEPS PASSED")
        return 0
    print(f"\n{failed} VERIFICATION STEP(S) FAILED")
    return 1


if __name__ == "__main__":
    sys.exit(main())
