"""SQLite-based metadata store."""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from dateutil.parser import isoparse

from ..errors import ConfigError
from ..models import File, Folder, Replica, ReplicaFragment, Status
from ..path_utils import normalize_path, path_key
from .base import MetadataStore

logger = logging.getLogger(__name__)


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return isoparse(value) if value else None


class SqliteMetadataStore(MetadataStore):
    """SQLite database-based metadata store.

    One connection shared by all worker threads; every statement runs
    under ``_lock`` so readers never observe a half-applied scan.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path):
        """Initialize SQLite store.

        Args:
            db_path: Path to SQLite database file (``":memory:"`` for tests)
        """
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._depth = 0
        self._scans = set()
        self._scan_cond = threading.Condition()
        self._ensure_connection()
        self._init_schema()

    def _ensure_connection(self) -> None:
        """Ensure database connection is established."""
        if self.conn is not None:
            return

        in_memory = str(self.db_path) == ':memory:'
        if not in_memory:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        except sqlite3.Error as e:
            raise ConfigError(f"Cannot open metadata database {self.db_path}: {e}", cause=e)
        self.conn.row_factory = sqlite3.Row  # Dict-like row access
        self.conn.execute("PRAGMA foreign_keys=ON")

        if not in_memory:
            self.conn.execute("PRAGMA journal_mode=WAL")  # Write-Ahead Logging for concurrent reads
            self.conn.execute("PRAGMA synchronous=NORMAL")

        logger.info(f"SQLite metadata store connected: {self.db_path}")

    def _init_schema(self) -> None:
        """Initialize database schema if needed."""
        try:
            result = self.conn.execute(
                "SELECT value FROM metadata WHERE key = 'schema_version'"
            ).fetchone()
            if result and int(result[0]) >= self.SCHEMA_VERSION:
                return  # Schema up to date
        except sqlite3.OperationalError:
            pass  # Tables don't exist yet

        logger.info("Initializing SQLite schema...")

        with self.conn:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    path TEXT NOT NULL,
                    path_key TEXT NOT NULL,
                    name TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    calculated_id TEXT NOT NULL,
                    mod_time TEXT,
                    status TEXT NOT NULL
                )
            """)
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_files_path_key ON files(path_key)")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_files_calculated_id ON files(calculated_id)")

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS replicas (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    file_id INTEGER REFERENCES files(id) ON DELETE CASCADE,
                    calculated_id TEXT NOT NULL,
                    path TEXT NOT NULL,
                    path_key TEXT NOT NULL,
                    name TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    provider TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    native_id TEXT NOT NULL,
                    native_hash TEXT,
                    mod_time TEXT,
                    status TEXT NOT NULL,
                    fragmented INTEGER DEFAULT 0,
                    parent_folder_id TEXT,
                    UNIQUE (provider, account_id, native_id)
                )
            """)
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_replicas_file ON replicas(file_id)")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_replicas_account ON replicas(provider, account_id)")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_replicas_path_key ON replicas(provider, path_key)")
            self.conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_replicas_calculated_id
                ON replicas(provider, calculated_id)
            """)

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS replica_fragments (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    replica_id INTEGER NOT NULL REFERENCES replicas(id) ON DELETE CASCADE,
                    fragment_number INTEGER NOT NULL,
                    fragments_total INTEGER NOT NULL,
                    size INTEGER NOT NULL,
                    native_fragment_id TEXT NOT NULL,
                    UNIQUE (replica_id, fragment_number)
                )
            """)

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS folders (
                    id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    path TEXT NOT NULL,
                    path_key TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    owner_account_id TEXT NOT NULL,
                    parent_folder_id TEXT,
                    PRIMARY KEY (provider, owner_account_id, id)
                )
            """)
            self.conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_folders_path
                ON folders(provider, owner_account_id, path_key)
            """)

            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS metadata (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            self.conn.execute("""
                INSERT OR REPLACE INTO metadata (key, value)
                VALUES ('schema_version', ?)
            """, (str(self.SCHEMA_VERSION),))

        logger.info("SQLite schema initialized")

    @contextmanager
    def transaction(self):
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            try:
                with self.conn:
                    yield
            finally:
                self._depth = 0

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        """Run a write statement, committing unless inside a transaction."""
        with self._lock:
            if self._depth:
                return self.conn.execute(sql, params)
            with self.conn:
                return self.conn.execute(sql, params)

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    # Files

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> File:
        return File(
            id=row['id'],
            path=row['path'],
            name=row['name'],
            size=row['size'],
            calculated_id=row['calculated_id'],
            mod_time=_from_text(row['mod_time']),
            status=Status(row['status']),
        )

    def upsert_file(self, file: File) -> File:
        file.path = normalize_path(file.path)
        params = (
            file.path, path_key(file.path), file.name, file.size,
            file.calculated_id, _to_text(file.mod_time), Status(file.status).value,
        )
        with self._lock:
            if file.id is None:
                cursor = self._execute("""
                    INSERT INTO files (path, path_key, name, size, calculated_id, mod_time, status)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, params)
                file.id = cursor.lastrowid
            else:
                self._execute("""
                    UPDATE files SET path = ?, path_key = ?, name = ?, size = ?,
                        calculated_id = ?, mod_time = ?, status = ?
                    WHERE id = ?
                """, params + (file.id,))
        return file

    def get_file(self, file_id: int) -> Optional[File]:
        rows = self._query("SELECT * FROM files WHERE id = ?", (file_id,))
        return self._row_to_file(rows[0]) if rows else None

    def get_files(self, status: Optional[Status] = None) -> List[File]:
        if status is None:
            rows = self._query("SELECT * FROM files ORDER BY path_key, id")
        else:
            rows = self._query(
                "SELECT * FROM files WHERE status = ? ORDER BY path_key, id",
                (Status(status).value,),
            )
        return [self._row_to_file(row) for row in rows]

    def get_files_by_path(self, path: str, include_deleted: bool = False) -> List[File]:
        sql = "SELECT * FROM files WHERE path_key = ?"
        if not include_deleted:
            sql += f" AND status != '{Status.DELETED.value}'"
        rows = self._query(sql + " ORDER BY id", (path_key(path),))
        return [self._row_to_file(row) for row in rows]

    def delete_file(self, file_id: int) -> None:
        with self.transaction():
            self._execute("DELETE FROM files WHERE id = ?", (file_id,))

    # Replicas

    @staticmethod
    def _row_to_replica(row: sqlite3.Row) -> Replica:
        return Replica(
            id=row['id'],
            file_id=row['file_id'],
            calculated_id=row['calculated_id'],
            path=row['path'],
            name=row['name'],
            size=row['size'],
            provider=row['provider'],
            account_id=row['account_id'],
            native_id=row['native_id'],
            native_hash=row['native_hash'],
            mod_time=_from_text(row['mod_time']),
            status=Status(row['status']),
            fragmented=bool(row['fragmented']),
            parent_folder_id=row['parent_folder_id'],
        )

    def upsert_replica(self, replica: Replica) -> Replica:
        replica.path = normalize_path(replica.path)
        with self._lock:
            self._execute("""
                INSERT INTO replicas (file_id, calculated_id, path, path_key, name, size, provider, account_id,
                    native_id, native_hash, mod_time, status, fragmented, parent_folder_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (provider, account_id, native_id) DO UPDATE SET
                    file_id = excluded.file_id,
                    calculated_id = excluded.calculated_id,
                    path = excluded.path,
                    path_key = excluded.path_key,
                    name = excluded.name,
                    size = excluded.size,
                    native_hash = excluded.native_hash,
                    mod_time = excluded.mod_time,
                    status = excluded.status,
                    fragmented = excluded.fragmented,
                    parent_folder_id = excluded.parent_folder_id
            """, (
                replica.file_id, replica.calculated_id, replica.path, path_key(replica.path), replica.name, replica.size,
                replica.provider, replica.account_id, replica.native_id, replica.native_hash,
                _to_text(replica.mod_time), Status(replica.status).value, int(replica.fragmented),
                replica.parent_folder_id,
            ))
            row = self.conn.execute(
                "SELECT id FROM replicas WHERE provider = ? AND account_id = ? AND native_id = ?",
                (replica.provider, replica.account_id, replica.native_id),
            ).fetchone()
        replica.id = row['id']
        return replica

    def get_replica(self, provider: str, account_id: str, native_id: str) -> Optional[Replica]:
        rows = self._query(
            "SELECT * FROM replicas WHERE provider = ? AND account_id = ? AND native_id = ?",
            (provider, account_id, native_id),
        )
        return self._row_to_replica(rows[0]) if rows else None

    def get_replica_by_id(self, replica_id: int) -> Optional[Replica]:
        rows = self._query("SELECT * FROM replicas WHERE id = ?", (replica_id,))
        return self._row_to_replica(rows[0]) if rows else None

    def get_replicas_by_account(
        self, provider: str, account_id: str, status: Optional[Status] = None
    ) -> List[Replica]:
        sql = "SELECT * FROM replicas WHERE provider = ? AND account_id = ?"
        params: tuple = (provider, account_id)
        if status is not None:
            sql += " AND status = ?"
            params += (Status(status).value,)
        rows = self._query(sql + " ORDER BY path, id", params)
        return [self._row_to_replica(row) for row in rows]

    def get_replicas_for_file(self, file_id: int, status: Optional[Status] = None) -> List[Replica]:
        sql = "SELECT * FROM replicas WHERE file_id = ?"
        params: tuple = (file_id,)
        if status is not None:
            sql += " AND status = ?"
            params += (Status(status).value,)
        rows = self._query(sql + " ORDER BY provider, account_id, id", params)
        return [self._row_to_replica(row) for row in rows]

    def get_replicas_by_path(self, provider: str, path: str, status: Optional[Status] = None) -> List[Replica]:
        sql = "SELECT * FROM replicas WHERE provider = ? AND path_key = ?"
        params: tuple = (provider, path_key(path))
        if status is not None:
            sql += " AND status = ?"
            params += (Status(status).value,)
        rows = self._query(sql + " ORDER BY id", params)
        return [self._row_to_replica(row) for row in rows]

    def find_by_calculated_id(self, calculated_id: str, provider: Optional[str] = None) -> List[Replica]:
        sql = "SELECT * FROM replicas WHERE calculated_id = ?"
        params: tuple = (calculated_id,)
        if provider is not None:
            sql += " AND provider = ?"
            params += (provider,)
        rows = self._query(sql + " ORDER BY id", params)
        return [self._row_to_replica(row) for row in rows]

    def find_duplicate_groups(self, provider: str) -> List[List[Replica]]:
        active = Status.ACTIVE.value
        rows = self._query("""
            SELECT r.* FROM replicas r
            JOIN (
                SELECT calculated_id, native_hash FROM replicas
                WHERE provider = ? AND status = ? AND native_hash IS NOT NULL
                GROUP BY calculated_id, native_hash
                HAVING COUNT(*) > 1
            ) d ON r.calculated_id = d.calculated_id AND r.native_hash = d.native_hash
            WHERE r.provider = ? AND r.status = ?
            ORDER BY r.calculated_id, r.native_hash, r.id
        """, (provider, active, provider, active))

        groups: List[List[Replica]] = []
        current_key = None
        for row in rows:
            replica = self._row_to_replica(row)
            key = (replica.calculated_id, replica.native_hash)
            if key != current_key:
                groups.append([])
                current_key = key
            groups[-1].append(replica)
        return groups

    def get_largest_files_exclusive(self, provider: str, account_id: str) -> List[Tuple[File, Replica]]:
        active = Status.ACTIVE.value
        rows = self._query("""
            SELECT r.id AS replica_id, f.id AS file_id FROM replicas r
            JOIN files f ON f.id = r.file_id
            WHERE r.provider = ? AND r.account_id = ? AND r.status = ? AND f.status = ?
              AND NOT EXISTS (
                  SELECT 1 FROM replicas o
                  WHERE o.provider = r.provider AND o.account_id != r.account_id
                    AND o.calculated_id = r.calculated_id AND o.status = ?
              )
            ORDER BY r.size DESC, r.path
        """, (provider, account_id, active, active, active))
        return [
            (self.get_file(row['file_id']), self.get_replica_by_id(row['replica_id']))
            for row in rows
        ]

    def mark_missing(self, replica: Replica, status: Status) -> None:
        replica.status = Status(status)
        self._execute(
            "UPDATE replicas SET status = ? WHERE id = ?",
            (replica.status.value, replica.id),
        )

    def delete_replica(self, replica_id: int) -> None:
        self._execute("DELETE FROM replicas WHERE id = ?", (replica_id,))

    # Fragments

    def upsert_fragment(self, fragment: ReplicaFragment) -> ReplicaFragment:
        with self._lock:
            self._execute("""
                INSERT INTO replica_fragments
                    (replica_id, fragment_number, fragments_total, size, native_fragment_id)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (replica_id, fragment_number) DO UPDATE SET
                    fragments_total = excluded.fragments_total,
                    size = excluded.size,
                    native_fragment_id = excluded.native_fragment_id
            """, (
                fragment.replica_id, fragment.fragment_number, fragment.fragments_total,
                fragment.size, fragment.native_fragment_id,
            ))
            row = self.conn.execute(
                "SELECT id FROM replica_fragments WHERE replica_id = ? AND fragment_number = ?",
                (fragment.replica_id, fragment.fragment_number),
            ).fetchone()
        fragment.id = row['id']
        return fragment

    def get_fragments(self, replica_id: int) -> List[ReplicaFragment]:
        rows = self._query(
            "SELECT * FROM replica_fragments WHERE replica_id = ? ORDER BY fragment_number",
            (replica_id,),
        )
        return [
            ReplicaFragment(
                id=row['id'],
                replica_id=row['replica_id'],
                fragment_number=row['fragment_number'],
                fragments_total=row['fragments_total'],
                size=row['size'],
                native_fragment_id=row['native_fragment_id'],
            )
            for row in rows
        ]

    def delete_fragments(self, replica_id: int) -> None:
        self._execute("DELETE FROM replica_fragments WHERE replica_id = ?", (replica_id,))

    # Folders

    @staticmethod
    def _row_to_folder(row: sqlite3.Row) -> Folder:
        return Folder(
            id=row['id'],
            name=row['name'],
            path=row['path'],
            provider=row['provider'],
            owner_account_id=row['owner_account_id'],
            parent_folder_id=row['parent_folder_id'],
        )

    def upsert_folder(self, folder: Folder) -> None:
        folder.path = normalize_path(folder.path)
        self._execute("""
            INSERT OR REPLACE INTO folders
                (id, name, path, path_key, provider, owner_account_id, parent_folder_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            folder.id, folder.name, folder.path, path_key(folder.path),
            folder.provider, folder.owner_account_id, folder.parent_folder_id,
        ))

    def get_folder_by_path(self, provider: str, account_id: str, path: str) -> Optional[Folder]:
        rows = self._query(
            "SELECT * FROM folders WHERE provider = ? AND owner_account_id = ? AND path_key = ?",
            (provider, account_id, path_key(path)),
        )
        return self._row_to_folder(rows[0]) if rows else None

    def get_folders(self, provider: str, account_id: str) -> List[Folder]:
        rows = self._query(
            "SELECT * FROM folders WHERE provider = ? AND owner_account_id = ? ORDER BY path_key",
            (provider, account_id),
        )
        return [self._row_to_folder(row) for row in rows]

    def delete_folders(self, provider: str, account_id: str, keep_ids: Iterable[str]) -> None:
        keep = set(keep_ids)
        with self.transaction():
            for folder in self.get_folders(provider, account_id):
                if folder.id not in keep:
                    self._execute(
                        "DELETE FROM folders WHERE provider = ? AND owner_account_id = ? AND id = ?",
                        (provider, account_id, folder.id),
                    )

    # Metadata

    def get_metadata(self, key: str) -> Optional[str]:
        rows = self._query("SELECT value FROM metadata WHERE key = ?", (key,))
        return rows[0]['value'] if rows else None

    def set_metadata(self, key: str, value: str) -> None:
        self._execute("INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value))

    # Scan coordination

    @contextmanager
    def scan_marker(self, account_key: tuple):
        with self._scan_cond:
            self._scans.add(account_key)
        try:
            yield
        finally:
            with self._scan_cond:
                self._scans.discard(account_key)
                self._scan_cond.notify_all()

    def wait_for_scans(self, account_keys: Iterable[tuple], timeout: float = 0.0) -> List[tuple]:
        wanted = set(account_keys)
        deadline = time.monotonic() + timeout
        with self._scan_cond:
            while True:
                busy = wanted & self._scans
                remaining = deadline - time.monotonic()
                if not busy or remaining <= 0:
                    return sorted(busy)
                self._scan_cond.wait(remaining)

    def backup_to(self, target: Path) -> None:
        """Write a consistent copy of the database to another file."""
        with self._lock:
            destination = sqlite3.connect(str(target))
            try:
                self.conn.backup(destination)
            finally:
                destination.close()
        logger.info(f"Metadata database backed up to {target}")

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
                logger.debug("SQLite metadata store closed")
