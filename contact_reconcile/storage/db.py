"""
SQLite contact store.

Provides the bundled ContactStore implementation: local contacts with
their attribute rows, sync groups, per-account settings and the persisted
reconciliation watermark.
"""

import json
import sqlite3
from collections.abc import Generator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from contact_reconcile.storage.store import (
    ContactStore,
    DirtyRecord,
    StoredAttributeRow,
    StoreError,
)
from contact_reconcile.sync.batch import (
    BackReference,
    OperationBatchEntry,
    OperationKind,
    RowRef,
    TargetTable,
)
from contact_reconcile.sync.contact import AVATAR_FIELD, AttributeKind, is_blank

# SQL Schema for contacts, attribute rows, groups and sync state
SCHEMA = """
CREATE TABLE IF NOT EXISTS contacts (
    id INTEGER PRIMARY KEY,
    account TEXT NOT NULL,
    remote_id INTEGER,
    dirty INTEGER NOT NULL DEFAULT 0,
    deleted INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 1,
    display_name TEXT,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_contacts_remote ON contacts(account, remote_id);
CREATE INDEX IF NOT EXISTS idx_contacts_account ON contacts(account);

CREATE TABLE IF NOT EXISTS contact_data (
    id INTEGER PRIMARY KEY,
    contact_id INTEGER NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    kind TEXT NOT NULL,
    role TEXT,
    fields TEXT NOT NULL DEFAULT '{}',
    photo BLOB
);

CREATE INDEX IF NOT EXISTS idx_contact_data_contact ON contact_data(contact_id);

CREATE TABLE IF NOT EXISTS contact_groups (
    id INTEGER PRIMARY KEY,
    account TEXT NOT NULL,
    title TEXT NOT NULL,
    read_only INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(account, title)
);

CREATE TABLE IF NOT EXISTS account_settings (
    account TEXT PRIMARY KEY,
    ungrouped_visible INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS sync_state (
    id INTEGER PRIMARY KEY,
    account TEXT NOT NULL,
    watermark INTEGER NOT NULL DEFAULT 0,
    last_sync_at TEXT,
    UNIQUE(account)
);
"""

# Contact columns an update operation may set
CONTACT_COLUMNS = ("remote_id", "dirty", "deleted", "display_name")


def _encode_fields(fields: dict[str, Any]) -> tuple[str, Optional[bytes]]:
    """Split row fields into the JSON column and the photo blob."""
    values = {k: v for k, v in fields.items() if not is_blank(v)}
    photo = values.pop(AVATAR_FIELD, None)
    return json.dumps(values, sort_keys=True), photo


def _decode_fields(row: sqlite3.Row) -> dict[str, Any]:
    fields: dict[str, Any] = json.loads(row["fields"] or "{}")
    if row["photo"] is not None:
        fields[AVATAR_FIELD] = bytes(row["photo"])
    return fields


def _display_name(fields: dict[str, Any]) -> Optional[str]:
    parts = [fields.get("given_name"), fields.get("family_name")]
    name = " ".join(part for part in parts if part)
    return name or None


class SqliteContactStore(ContactStore):
    """
    SQLite implementation of the local contact store.

    Provides methods for:
    - Resolving contacts by remote identifier
    - Applying operation chunks in a single transaction
    - Scanning dirty and deleted contacts
    - Persisting the reconciliation watermark per account

    Mutations applied without sync-adapter privileges mark the contact
    dirty, and their contact deletes only flag the contact as deleted.
    Every mutation bumps the contact's version.

    Usage:
        store = SqliteContactStore('/path/to/contacts.db')
        store.initialize()

        # Or use in-memory for testing:
        store = SqliteContactStore(':memory:')
        store.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        the data persists across operations. For file databases, creates
        a new connection each time.
        """
        if self.db_path == ":memory:":
            if self._shared_connection is None:
                self._shared_connection = self._connect()
            return self._shared_connection
        return self._connect()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for one transaction.

        Commits on success and rolls back on any exception; sqlite3 errors
        are re-raised as StoreError.

        Usage:
            with store.connection() as conn:
                conn.execute("SELECT * FROM contacts")
        """
        conn = self._get_connection()
        is_shared = self.db_path == ":memory:"
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"Database error: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            if not is_shared:
                conn.close()

    def initialize(self) -> None:
        """Create the schema if it does not exist yet."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the shared in-memory connection, discarding its data."""
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None

    # =========================================================================
    # ContactStore interface
    # =========================================================================

    def find_local_id_by_remote_id(
        self, account: str, remote_id: int
    ) -> Optional[int]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT id FROM contacts WHERE account = ? AND remote_id = ?",
                (account, remote_id),
            ).fetchone()
            return row["id"] if row else None

    def fetch_attribute_rows(self, local_id: int) -> list[StoredAttributeRow]:
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT id, kind, role, fields, photo FROM contact_data
                WHERE contact_id = ? ORDER BY id
                """,
                (local_id,),
            )
            return [
                StoredAttributeRow(
                    row_id=row["id"],
                    kind=row["kind"],
                    role=row["role"],
                    fields=_decode_fields(row),
                )
                for row in cursor.fetchall()
            ]

    def apply_batch(
        self, entries: Sequence[OperationBatchEntry], sync_operation: bool
    ) -> list[Optional[int]]:
        """
        Apply one chunk of operations in a single transaction.

        Args:
            entries: Operations of the chunk, in order
            sync_operation: True when acting with sync-adapter privileges

        Returns:
            New row ids for inserts, None for updates and deletes

        Raises:
            StoreError: If any operation fails; the whole chunk is rolled back
        """
        results: list[Optional[int]] = []
        with self.connection() as conn:
            for entry in entries:
                results.append(self._apply_entry(conn, entry, results, sync_operation))
        return results

    def scan_dirty(self, account: str) -> list[DirtyRecord]:
        with self.connection() as conn:
            cursor = conn.execute(
                """
                SELECT id, remote_id, dirty, deleted, version, display_name
                FROM contacts
                WHERE account = ? AND (dirty = 1 OR deleted = 1)
                ORDER BY id
                """,
                (account,),
            )
            return [
                DirtyRecord(
                    local_id=row["id"],
                    remote_id=row["remote_id"],
                    dirty=bool(row["dirty"]),
                    deleted=bool(row["deleted"]),
                    version=row["version"],
                    display_name=row["display_name"],
                )
                for row in cursor.fetchall()
            ]

    def set_visibility(self, account: str, visible: bool) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO account_settings (account, ungrouped_visible)
                VALUES (?, ?)
                ON CONFLICT(account) DO UPDATE SET
                    ungrouped_visible = excluded.ungrouped_visible
                """,
                (account, 1 if visible else 0),
            )

    def get_visibility(self, account: str) -> bool:
        """Whether ungrouped contacts of the account are visible (default False)."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT ungrouped_visible FROM account_settings WHERE account = ?",
                (account,),
            ).fetchone()
            return bool(row["ungrouped_visible"]) if row else False

    def ensure_group(self, account: str, title: str) -> int:
        """
        Return the id of the account's group with this title.

        A missing group is created read-only, as sync groups are managed
        by the remote side only.
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT id FROM contact_groups WHERE account = ? AND title = ?",
                (account, title),
            ).fetchone()
            if row:
                return int(row["id"])
            cursor = conn.execute(
                "INSERT INTO contact_groups (account, title, read_only) "
                "VALUES (?, ?, 1)",
                (account, title),
            )
            return int(cursor.lastrowid)

    # =========================================================================
    # Operation handling
    # =========================================================================

    @staticmethod
    def _resolve(ref: Optional[RowRef], results: list[Optional[int]]) -> int:
        """Turn a row reference into a row id using the chunk's insert results."""
        if isinstance(ref, BackReference):
            if ref.index >= len(results) or results[ref.index] is None:
                raise StoreError(
                    f"Back-reference #{ref.index} does not point at an earlier insert"
                )
            return int(results[ref.index])  # type: ignore[arg-type]
        if ref is None:
            raise StoreError("Operation has no target row")
        return int(ref)

    def _apply_entry(
        self,
        conn: sqlite3.Connection,
        entry: OperationBatchEntry,
        results: list[Optional[int]],
        sync_operation: bool,
    ) -> Optional[int]:
        if entry.table is TargetTable.CONTACT:
            if entry.kind is OperationKind.INSERT:
                return self._insert_contact(conn, entry, sync_operation)
            contact_id = self._resolve(entry.row_id, results)
            if entry.kind is OperationKind.UPDATE:
                self._update_contact(conn, contact_id, entry.values, sync_operation)
            else:
                self._delete_contact(conn, contact_id, sync_operation)
            return None

        if entry.kind is OperationKind.INSERT:
            contact_id = self._resolve(entry.contact_ref, results)
            return self._insert_row(conn, contact_id, entry, sync_operation)
        row_id = self._resolve(entry.row_id, results)
        if entry.kind is OperationKind.UPDATE:
            self._update_row(conn, row_id, entry.values, sync_operation)
        else:
            self._delete_row(conn, row_id, sync_operation)
        return None

    def _insert_contact(
        self,
        conn: sqlite3.Connection,
        entry: OperationBatchEntry,
        sync_operation: bool,
    ) -> int:
        account = entry.values.get("account")
        if not account:
            raise StoreError("Contact insert without account")
        cursor = conn.execute(
            "INSERT INTO contacts (account, remote_id, dirty) VALUES (?, ?, ?)",
            (account, entry.values.get("remote_id"), 0 if sync_operation else 1),
        )
        return int(cursor.lastrowid)

    def _touch_contact(
        self,
        conn: sqlite3.Connection,
        contact_id: int,
        sync_operation: bool,
        **columns: Any,
    ) -> None:
        """Bump the contact's version, set columns and mark local changes dirty."""
        if not sync_operation:
            columns.setdefault("dirty", 1)
        assignments = "".join(f"{name} = ?, " for name in columns)
        cursor = conn.execute(
            f"UPDATE contacts SET {assignments}version = version + 1, "
            "updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (*columns.values(), contact_id),
        )
        if cursor.rowcount == 0:
            raise StoreError(f"No contact with id {contact_id}")

    def _update_contact(
        self,
        conn: sqlite3.Connection,
        contact_id: int,
        values: dict[str, Any],
        sync_operation: bool,
    ) -> None:
        unknown = set(values) - set(CONTACT_COLUMNS)
        if unknown:
            raise StoreError(f"Cannot update contact columns: {sorted(unknown)}")
        self._touch_contact(conn, contact_id, sync_operation, **values)

    def _delete_contact(
        self, conn: sqlite3.Connection, contact_id: int, sync_operation: bool
    ) -> None:
        if not sync_operation:
            self._touch_contact(conn, contact_id, False, deleted=1)
            return
        cursor = conn.execute("DELETE FROM contacts WHERE id = ?", (contact_id,))
        if cursor.rowcount == 0:
            raise StoreError(f"No contact with id {contact_id}")

    def _insert_row(
        self,
        conn: sqlite3.Connection,
        contact_id: int,
        entry: OperationBatchEntry,
        sync_operation: bool,
    ) -> int:
        if not entry.attribute_kind:
            raise StoreError("Attribute insert without kind")
        fields_json, photo = _encode_fields(entry.values)
        columns: dict[str, Any] = {}
        if entry.attribute_kind == AttributeKind.NAME:
            columns["display_name"] = _display_name(entry.values)
        self._touch_contact(conn, contact_id, sync_operation, **columns)
        cursor = conn.execute(
            """
            INSERT INTO contact_data (contact_id, kind, role, fields, photo)
            VALUES (?, ?, ?, ?, ?)
            """,
            (contact_id, entry.attribute_kind, entry.role, fields_json, photo),
        )
        return int(cursor.lastrowid)

    def _fetch_row(self, conn: sqlite3.Connection, row_id: int) -> sqlite3.Row:
        row = conn.execute(
            "SELECT id, contact_id, kind, fields, photo FROM contact_data WHERE id = ?",
            (row_id,),
        ).fetchone()
        if row is None:
            raise StoreError(f"No attribute row with id {row_id}")
        return row

    def _update_row(
        self,
        conn: sqlite3.Connection,
        row_id: int,
        values: dict[str, Any],
        sync_operation: bool,
    ) -> None:
        """Merge changed sub-fields into an attribute row."""
        row = self._fetch_row(conn, row_id)
        fields = _decode_fields(row)
        fields.update(values)
        fields_json, photo = _encode_fields(fields)
        conn.execute(
            "UPDATE contact_data SET fields = ?, photo = ? WHERE id = ?",
            (fields_json, photo, row_id),
        )
        columns: dict[str, Any] = {}
        if row["kind"] == AttributeKind.NAME:
            columns["display_name"] = _display_name(fields)
        self._touch_contact(conn, row["contact_id"], sync_operation, **columns)

    def _delete_row(
        self, conn: sqlite3.Connection, row_id: int, sync_operation: bool
    ) -> None:
        row = self._fetch_row(conn, row_id)
        conn.execute("DELETE FROM contact_data WHERE id = ?", (row_id,))
        columns: dict[str, Any] = {}
        if row["kind"] == AttributeKind.NAME:
            columns["display_name"] = None
        self._touch_contact(conn, row["contact_id"], sync_operation, **columns)

    # =========================================================================
    # Contact queries
    # =========================================================================

    def get_contact(self, local_id: int) -> Optional[dict[str, Any]]:
        """
        Get a contact row.

        Args:
            local_id: Local contact id

        Returns:
            Dictionary of the contact columns, or None if not found
        """
        with self.connection() as conn:
            row = conn.execute(
                """
                SELECT id, account, remote_id, dirty, deleted, version, display_name
                FROM contacts WHERE id = ?
                """,
                (local_id,),
            ).fetchone()
            if row is None:
                return None
            return {
                "id": row["id"],
                "account": row["account"],
                "remote_id": row["remote_id"],
                "dirty": bool(row["dirty"]),
                "deleted": bool(row["deleted"]),
                "version": row["version"],
                "display_name": row["display_name"],
            }

    def count_contacts(self, account: str, include_deleted: bool = False) -> int:
        """Count the account's contacts, soft-deleted ones only if asked to."""
        query = "SELECT COUNT(*) FROM contacts WHERE account = ?"
        if not include_deleted:
            query += " AND deleted = 0"
        with self.connection() as conn:
            result: int = conn.execute(query, (account,)).fetchone()[0]
            return result

    # =========================================================================
    # Sync State Operations
    # =========================================================================

    def get_sync_state(self, account: str) -> Optional[dict[str, Any]]:
        """
        Get sync state for an account.

        Returns:
            Dictionary with watermark and last_sync_at, or None if not found
        """
        with self.connection() as conn:
            row = conn.execute(
                "SELECT watermark, last_sync_at FROM sync_state WHERE account = ?",
                (account,),
            ).fetchone()
            if row:
                return {
                    "watermark": row["watermark"],
                    "last_sync_at": row["last_sync_at"],
                }
            return None

    def get_watermark(self, account: str) -> int:
        """Persisted watermark of the account, 0 if it never synced."""
        state = self.get_sync_state(account)
        return int(state["watermark"]) if state else 0

    def set_watermark(
        self,
        account: str,
        watermark: int,
        last_sync_at: Optional[datetime] = None,
    ) -> None:
        """
        Persist the watermark returned by a reconciliation pass.

        Args:
            account: The account scope
            watermark: New watermark
            last_sync_at: Timestamp of the pass (defaults to current time)
        """
        if last_sync_at is None:
            last_sync_at = datetime.now(timezone.utc)

        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (account, watermark, last_sync_at)
                VALUES (?, ?, ?)
                ON CONFLICT(account) DO UPDATE SET
                    watermark = excluded.watermark,
                    last_sync_at = excluded.last_sync_at
                """,
                (account, watermark, last_sync_at.isoformat()),
            )

    def clear_watermark(self, account: str) -> bool:
        """
        Forget the account's watermark (forces a full resync).

        Returns:
            True if a watermark was stored
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_state WHERE account = ?", (account,)
            )
            return cursor.rowcount > 0
