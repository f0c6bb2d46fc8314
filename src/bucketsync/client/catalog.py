"""Local metadata catalog for the sync agent.

This module provides:
- LocalCatalog: SQLite store mirroring tenants, accounts, buckets and file
  objects, plus the durable sync activity log
- Row dataclasses returned by catalog queries

Architecture:
    Every engine-side write is an idempotent upsert keyed by the remote id,
    so re-applying the same manifest entry any number of times is safe and
    concurrent readers never need more than SQLite's own transactions.

    Server-provided timestamps are kept verbatim as TEXT; timestamps produced
    locally (created_at, last_synced_at) are epoch seconds (REAL).
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from bucketsync.core.types import ActivityAction, ActivityStatus, SyncCursorStatus

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS tenants (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at REAL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    access_key_id TEXT,
    secret_access_key TEXT,
    tenant_id TEXT NOT NULL REFERENCES tenants(id),
    is_active INTEGER DEFAULT 1,
    created_at REAL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS buckets (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    region TEXT NOT NULL,
    account_id TEXT NOT NULL REFERENCES accounts(id),
    storage_class TEXT DEFAULT 'STANDARD',
    versioning INTEGER DEFAULT 0,
    encryption INTEGER DEFAULT 0,
    created_at REAL,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS file_objects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    key TEXT NOT NULL,
    is_folder INTEGER DEFAULT 0,
    size INTEGER,
    mime_type TEXT,
    bucket_id TEXT NOT NULL REFERENCES buckets(id),
    parent_id TEXT REFERENCES file_objects(id) ON DELETE SET NULL,
    created_at REAL,
    updated_at TEXT,
    is_synced INTEGER DEFAULT 1,
    last_synced_at REAL
);

CREATE TABLE IF NOT EXISTS sync_state (
    id TEXT PRIMARY KEY,
    resource_id TEXT UNIQUE NOT NULL,
    last_sync_timestamp REAL,
    status TEXT
);

CREATE TABLE IF NOT EXISTS sync_activities (
    id TEXT PRIMARY KEY,
    action TEXT NOT NULL,
    file_name TEXT NOT NULL,
    status TEXT NOT NULL,
    error TEXT,
    created_at REAL NOT NULL,
    synced INTEGER DEFAULT 0
);
"""

INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_file_objects_bucket_key
    ON file_objects (bucket_id, key);
CREATE INDEX IF NOT EXISTS idx_file_objects_name ON file_objects (name);
CREATE INDEX IF NOT EXISTS idx_sync_activities_created ON sync_activities (created_at);
"""

# Columns added after the first release. Applied to pre-existing databases
# with ALTER TABLE so no data is lost.
COLUMN_MIGRATIONS: dict[str, list[tuple[str, str]]] = {
    "accounts": [
        ("access_key_id", "TEXT"),
        ("secret_access_key", "TEXT"),
        ("is_active", "INTEGER DEFAULT 1"),
    ],
    "buckets": [
        ("storage_class", "TEXT DEFAULT 'STANDARD'"),
        ("versioning", "INTEGER DEFAULT 0"),
        ("encryption", "INTEGER DEFAULT 0"),
    ],
    "file_objects": [
        ("parent_id", "TEXT"),
        ("is_synced", "INTEGER DEFAULT 1"),
        ("last_synced_at", "REAL"),
    ],
    "sync_activities": [
        ("error", "TEXT"),
        ("synced", "INTEGER DEFAULT 0"),
    ],
}


class CatalogInitializationError(Exception):
    """The catalog schema could not be created or migrated.

    Sync must not proceed when this is raised.
    """


@dataclass
class CatalogFile:
    """A file or folder row of the catalog."""

    id: str
    bucket_id: str
    key: str
    name: str
    is_folder: bool
    size: int | None
    mime_type: str | None
    parent_id: str | None
    updated_at: str | None
    is_synced: bool
    last_synced_at: float | None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> CatalogFile:
        """Create CatalogFile from database row."""
        return cls(
            id=row["id"],
            bucket_id=row["bucket_id"],
            key=row["key"],
            name=row["name"],
            is_folder=bool(row["is_folder"]),
            size=row["size"],
            mime_type=row["mime_type"],
            parent_id=row["parent_id"],
            updated_at=row["updated_at"],
            is_synced=bool(row["is_synced"]),
            last_synced_at=row["last_synced_at"],
        )


@dataclass
class SearchResult:
    """A catalog search hit, with the name of its bucket."""

    file: CatalogFile
    bucket_name: str


@dataclass
class CatalogAccount:
    """An account row, including the stored (possibly encrypted) credentials."""

    id: str
    name: str
    tenant_id: str
    access_key_id: str | None
    secret_access_key: str | None
    is_active: bool
    updated_at: str | None


@dataclass
class CatalogBucket:
    """A bucket row joined with the credentials of its owning account."""

    id: str
    name: str
    region: str
    account_id: str
    storage_class: str
    versioning: bool
    encryption: bool
    access_key_id: str | None
    secret_access_key: str | None


@dataclass
class SyncCursor:
    """Coarse per-resource sync cursor."""

    resource_id: str
    last_sync_timestamp: float | None
    status: SyncCursorStatus | None


@dataclass
class SyncActivity:
    """One row of the local sync activity log."""

    id: str
    action: ActivityAction
    file_name: str
    status: ActivityStatus
    created_at: float
    error: str | None = None
    synced: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SyncActivity:
        """Create SyncActivity from database row."""
        return cls(
            id=row["id"],
            action=ActivityAction(row["action"]),
            file_name=row["file_name"],
            status=ActivityStatus(row["status"]),
            created_at=row["created_at"],
            error=row["error"],
            synced=bool(row["synced"]),
        )


class LocalCatalog:
    """SQLite-based mirror of the remote metadata.

    Safe to share between the sync engine and UI-facing readers: all access
    goes through one connection guarded by a re-entrant lock, and WAL mode
    lets other processes read while the engine writes.
    """

    def __init__(self, db_path: Path) -> None:
        """Open (or create) the catalog database.

        Args:
            db_path: Path to SQLite database file.

        Raises:
            CatalogInitializationError: If the schema cannot be created or migrated.
        """
        self._db_path = Path(db_path)
        self._lock = threading.RLock()

        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self._db_path),
                check_same_thread=False,
                isolation_level=None,  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._create_tables()
        except (OSError, sqlite3.Error) as e:
            raise CatalogInitializationError(
                f"Cannot initialize catalog at {self._db_path}: {e}"
            ) from e

        logger.debug("Catalog ready at %s", self._db_path)

    @property
    def db_path(self) -> Path:
        """Path of the database file."""
        return self._db_path

    def _create_tables(self) -> None:
        """Create tables, apply column migrations, then create indexes."""
        self._conn.executescript(SCHEMA)
        with self._transaction():
            for table, columns in COLUMN_MIGRATIONS.items():
                for column, declaration in columns:
                    self._add_column_if_missing(table, column, declaration)
        self._conn.executescript(INDEXES)

    def _add_column_if_missing(self, table: str, column: str, declaration: str) -> None:
        existing = {row["name"] for row in self._conn.execute(f"PRAGMA table_info({table})")}
        if column not in existing:
            logger.info("Migrating catalog: adding %s.%s", table, column)
            self._conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {declaration}")

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically under the catalog lock."""
        with self._lock:
            self._conn.execute("BEGIN")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()

    # === Tenants and accounts ===

    def upsert_tenant(self, tenant_id: str, name: str, updated_at: str | None = None) -> None:
        """Insert or update a tenant."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO tenants (id, name, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    updated_at = excluded.updated_at
                """,
                (tenant_id, name, time.time(), updated_at),
            )

    def list_tenant_ids(self) -> list[str]:
        """List ids of all known tenants."""
        with self._lock:
            rows = self._conn.execute("SELECT id FROM tenants ORDER BY id").fetchall()
        return [row["id"] for row in rows]

    def upsert_account(
        self,
        account_id: str,
        name: str,
        tenant_id: str,
        *,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        is_active: bool = True,
        updated_at: str | None = None,
    ) -> None:
        """Insert or update an account, including its storage credentials."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO accounts (
                    id, name, access_key_id, secret_access_key, tenant_id,
                    is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    access_key_id = excluded.access_key_id,
                    secret_access_key = excluded.secret_access_key,
                    tenant_id = excluded.tenant_id,
                    is_active = excluded.is_active,
                    updated_at = excluded.updated_at
                """,
                (
                    account_id, name, access_key_id, secret_access_key, tenant_id,
                    int(is_active), time.time(), updated_at,
                ),
            )

    def get_account(self, account_id: str) -> CatalogAccount | None:
        """Get an account by id."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM accounts WHERE id = ?", (account_id,)
            ).fetchone()
        if row is None:
            return None
        return CatalogAccount(
            id=row["id"],
            name=row["name"],
            tenant_id=row["tenant_id"],
            access_key_id=row["access_key_id"],
            secret_access_key=row["secret_access_key"],
            is_active=bool(row["is_active"]),
            updated_at=row["updated_at"],
        )

    # === Buckets ===

    def upsert_bucket(
        self,
        bucket_id: str,
        name: str,
        region: str,
        account_id: str,
        *,
        storage_class: str = "STANDARD",
        versioning: bool = False,
        encryption: bool = False,
        updated_at: str | None = None,
    ) -> None:
        """Insert or update a bucket."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO buckets (
                    id, name, region, account_id, storage_class,
                    versioning, encryption, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    region = excluded.region,
                    storage_class = excluded.storage_class,
                    versioning = excluded.versioning,
                    encryption = excluded.encryption,
                    updated_at = excluded.updated_at
                """,
                (
                    bucket_id, name, region, account_id, storage_class,
                    int(versioning), int(encryption), time.time(), updated_at,
                ),
            )

    def get_bucket(self, bucket_id: str) -> CatalogBucket | None:
        """Get a bucket together with its account credentials."""
        with self._lock:
            row = self._conn.execute(
                """
                SELECT b.*, a.access_key_id, a.secret_access_key
                FROM buckets b
                JOIN accounts a ON b.account_id = a.id
                WHERE b.id = ?
                """,
                (bucket_id,),
            ).fetchone()
        if row is None:
            return None
        return CatalogBucket(
            id=row["id"],
            name=row["name"],
            region=row["region"],
            account_id=row["account_id"],
            storage_class=row["storage_class"],
            versioning=bool(row["versioning"]),
            encryption=bool(row["encryption"]),
            access_key_id=row["access_key_id"],
            secret_access_key=row["secret_access_key"],
        )

    # === File objects ===

    def upsert_file_object(
        self,
        file_id: str,
        bucket_id: str,
        key: str,
        name: str,
        *,
        is_folder: bool = False,
        size: int | None = None,
        mime_type: str | None = None,
        updated_at: str | None = None,
    ) -> None:
        """Insert or update a file object and mark it synced.

        A different row already holding the same key in the bucket (the
        remote id changed) is replaced, keeping keys unique per bucket.
        """
        now = time.time()
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM file_objects WHERE bucket_id = ? AND key = ? AND id != ?",
                (bucket_id, key, file_id),
            )
            conn.execute(
                """
                INSERT INTO file_objects (
                    id, name, key, is_folder, size, mime_type, bucket_id,
                    created_at, updated_at, is_synced, last_synced_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    key = excluded.key,
                    is_folder = excluded.is_folder,
                    size = excluded.size,
                    mime_type = excluded.mime_type,
                    updated_at = excluded.updated_at,
                    is_synced = 1,
                    last_synced_at = excluded.last_synced_at
                """,
                (
                    file_id, name, key, int(is_folder), None if is_folder else size,
                    mime_type, bucket_id, now, updated_at, now,
                ),
            )

    def get_file_object(self, file_id: str) -> CatalogFile | None:
        """Get a file object by id."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM file_objects WHERE id = ?", (file_id,)
            ).fetchone()
        return CatalogFile.from_row(row) if row else None

    def get_file_by_key(self, bucket_id: str, key: str) -> CatalogFile | None:
        """Get a file object by bucket and key."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM file_objects WHERE bucket_id = ? AND key = ?",
                (bucket_id, key),
            ).fetchone()
        return CatalogFile.from_row(row) if row else None

    def list_file_objects(self, bucket_id: str) -> list[CatalogFile]:
        """List all file objects of a bucket, ordered by key."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM file_objects WHERE bucket_id = ? ORDER BY key",
                (bucket_id,),
            ).fetchall()
        return [CatalogFile.from_row(row) for row in rows]

    def link_parents(self, bucket_id: str) -> int:
        """Point each row of a bucket at the folder row of its parent prefix.

        Returns:
            Number of rows whose parent changed.
        """
        files = self.list_file_objects(bucket_id)
        folders = {f.key.rstrip("/"): f.id for f in files if f.is_folder}
        changed = 0
        with self._transaction() as conn:
            for f in files:
                stripped = f.key.rstrip("/")
                parent_key = stripped.rsplit("/", 1)[0] if "/" in stripped else None
                parent_id = folders.get(parent_key) if parent_key else None
                if parent_id == f.id:
                    parent_id = None
                if parent_id != f.parent_id:
                    conn.execute(
                        "UPDATE file_objects SET parent_id = ? WHERE id = ?",
                        (parent_id, f.id),
                    )
                    changed += 1
        return changed

    def delete_file_objects(self, bucket_id: str, key: str, *, prefix: bool = False) -> int:
        """Delete a file object, or every object under a folder prefix.

        Children are not cascaded automatically; with ``prefix=True`` the
        folder row and all rows whose key starts with it are removed.

        Returns:
            Number of rows deleted.
        """
        with self._lock:
            if prefix:
                folder = key.rstrip("/")
                escaped = folder.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
                cursor = self._conn.execute(
                    """
                    DELETE FROM file_objects
                    WHERE bucket_id = ? AND (key = ? OR key = ? OR key LIKE ? ESCAPE '\\')
                    """,
                    (bucket_id, folder, folder + "/", escaped + "/%"),
                )
            else:
                cursor = self._conn.execute(
                    "DELETE FROM file_objects WHERE bucket_id = ? AND key = ?",
                    (bucket_id, key),
                )
            return cursor.rowcount

    def search_files(self, query: str, limit: int = 30) -> list[SearchResult]:
        """Search file objects by name (case-insensitive substring).

        Folders come first, then results are ordered by name.
        """
        query = query.strip()
        if not query:
            return []
        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT fo.*, b.name AS bucket_name
                FROM file_objects fo
                JOIN buckets b ON fo.bucket_id = b.id
                WHERE fo.name LIKE ? ESCAPE '\\'
                ORDER BY fo.is_folder DESC, fo.name ASC
                LIMIT ?
                """,
                (f"%{escaped}%", limit),
            ).fetchall()
        return [
            SearchResult(file=CatalogFile.from_row(row), bucket_name=row["bucket_name"])
            for row in rows
        ]

    # === Sync cursors ===

    def set_sync_cursor(
        self,
        resource_id: str,
        status: SyncCursorStatus,
        timestamp: float | None = None,
    ) -> None:
        """Record the last sync of a resource."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sync_state (id, resource_id, last_sync_timestamp, status)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (resource_id) DO UPDATE SET
                    last_sync_timestamp = excluded.last_sync_timestamp,
                    status = excluded.status
                """,
                (resource_id, resource_id, timestamp or time.time(), status.value),
            )

    def get_sync_cursor(self, resource_id: str) -> SyncCursor | None:
        """Get the sync cursor of a resource."""
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM sync_state WHERE resource_id = ?", (resource_id,)
            ).fetchone()
        if row is None:
            return None
        return SyncCursor(
            resource_id=row["resource_id"],
            last_sync_timestamp=row["last_sync_timestamp"],
            status=SyncCursorStatus(row["status"]) if row["status"] else None,
        )

    # === Sync activities ===

    def insert_activity(self, activity: SyncActivity) -> None:
        """Append one activity row."""
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO sync_activities (id, action, file_name, status, error, created_at, synced)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    activity.id, activity.action.value, activity.file_name,
                    activity.status.value, activity.error, activity.created_at,
                    int(activity.synced),
                ),
            )

    def list_activities(
        self, limit: int = 200, *, unsynced_only: bool = False
    ) -> list[SyncActivity]:
        """List activity rows, newest first."""
        sql = "SELECT * FROM sync_activities"
        if unsynced_only:
            sql += " WHERE synced = 0"
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ?"
        with self._lock:
            rows = self._conn.execute(sql, (limit,)).fetchall()
        return [SyncActivity.from_row(row) for row in rows]

    def mark_activities_synced(self, activity_ids: list[str]) -> int:
        """Mark activity rows as pushed to the coordination service."""
        if not activity_ids:
            return 0
        placeholders = ", ".join("?" for _ in activity_ids)
        with self._lock:
            cursor = self._conn.execute(
                f"UPDATE sync_activities SET synced = 1 WHERE id IN ({placeholders})",
                activity_ids,
            )
            return cursor.rowcount

    def prune_activities(self, cutoff: float) -> int:
        """Prune the activity log.

        Removes SKIP rows, keeps only the newest row per
        (action, file_name, status) and drops rows created before ``cutoff``.

        Args:
            cutoff: Epoch seconds; older rows are deleted.

        Returns:
            Number of rows deleted.
        """
        with self._transaction() as conn:
            deleted = conn.execute(
                "DELETE FROM sync_activities WHERE action = ?",
                (ActivityAction.SKIP.value,),
            ).rowcount
            deleted += conn.execute(
                """
                DELETE FROM sync_activities
                WHERE EXISTS (
                    SELECT 1 FROM sync_activities newer
                    WHERE newer.action = sync_activities.action
                      AND newer.file_name = sync_activities.file_name
                      AND newer.status = sync_activities.status
                      AND (
                          newer.created_at > sync_activities.created_at
                          OR (newer.created_at = sync_activities.created_at
                              AND newer.rowid > sync_activities.rowid)
                      )
                )
                """
            ).rowcount
            deleted += conn.execute(
                "DELETE FROM sync_activities WHERE created_at < ?", (cutoff,)
            ).rowcount
        return deleted
