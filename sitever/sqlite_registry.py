"""
===============================================================================
SqliteVersionRegistry: SQLite-backed version registry
-------------------------------------------------------------------------------
Purpose:
    Embedded relational store for version metadata and per-file digests.
    Tables are created on first use.

Design:
    - Timestamps are stored as ISO8601 UTC strings, so text order is time
      order; rowid breaks ties (newest inserted first).
    - A partial unique index allows at most one active version per project.
    - Activation runs in one transaction (deactivate all, activate one).
===============================================================================
"""
from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from .errors import RegistryError, VersionAlreadyExists, VersionError, VersionNotFound
from .models import SnapshotEntry, Version, VersionedFile, VersionInsert, utc_now
from .registry import new_version_id

_DDL = [
    """
    CREATE TABLE IF NOT EXISTS versions (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        version_number TEXT NOT NULL,
        snapshot_path TEXT NOT NULL,
        created_at TEXT NOT NULL,
        tokens_json TEXT,
        quality_score REAL,
        changelog TEXT,
        is_active INTEGER NOT NULL DEFAULT 0,
        parent_version_id TEXT,
        UNIQUE (project_id, version_number),
        FOREIGN KEY (parent_version_id) REFERENCES versions(id) ON DELETE SET NULL
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS version_files (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        version_id TEXT NOT NULL,
        file_path TEXT NOT NULL,
        file_hash TEXT NOT NULL,
        file_size INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (version_id, file_path),
        FOREIGN KEY (version_id) REFERENCES versions(id) ON DELETE CASCADE
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_versions_project ON versions(project_id);",
    "CREATE INDEX IF NOT EXISTS idx_version_files_version ON version_files(version_id);",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_versions_one_active
        ON versions(project_id) WHERE is_active = 1;
    """,
]

_COLUMNS = (
    "id, project_id, version_number, snapshot_path, created_at, tokens_json, "
    "quality_score, changelog, is_active, parent_version_id"
)


def _integrity_error(error: sqlite3.IntegrityError, insert: VersionInsert) -> VersionError:
    """Map a constraint failure on a version insert to the matching error."""
    message = str(error)
    if "versions.version_number" in message:
        return VersionAlreadyExists(
            f"Version {insert.version_number} already registered for {insert.project_id}"
        )
    if "FOREIGN KEY" in message:
        return VersionNotFound(f"Parent version not found: {insert.parent_version_id}")
    return RegistryError(f"Could not create version {insert.version_number}: {message}")


def _row_to_version(r: sqlite3.Row) -> Version:
    return Version(
        id=r["id"],
        project_id=r["project_id"],
        version_number=r["version_number"],
        snapshot_path=r["snapshot_path"],
        is_active=bool(r["is_active"]),
        parent_version_id=r["parent_version_id"],
        created_at=datetime.fromisoformat(r["created_at"]),
        changelog=r["changelog"],
        quality_score=r["quality_score"],
        tokens_json=r["tokens_json"],
    )


class SqliteVersionRegistry:
    """
    SQLite implementation of VersionRegistry.

    Properties
    ----------
    conn : sqlite3.Connection
        Lazily created connection with foreign keys enforced and Row factory.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        try:
            with self.conn:
                for ddl in _DDL:
                    self.conn.execute(ddl)
        except sqlite3.Error as e:
            raise RegistryError(f"Could not initialise registry {self._db_path}: {e}") from e

    @property
    def conn(self) -> sqlite3.Connection:
        """Return a shared sqlite3.Connection; create it on first use."""
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self._db_path)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA synchronous = FULL")
        return self._conn

    def close(self) -> None:
        """Close the current connection if present and clear the handle."""
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_versions(self, project_id: str) -> List[Version]:
        rows = self._query(
            f"SELECT {_COLUMNS} FROM versions WHERE project_id=? "
            "ORDER BY created_at DESC, rowid DESC",
            (project_id,),
        )
        return [_row_to_version(r) for r in rows]

    def get_version_by_id(self, version_id: str) -> Optional[Version]:
        rows = self._query(f"SELECT {_COLUMNS} FROM versions WHERE id=?", (version_id,))
        return _row_to_version(rows[0]) if rows else None

    def get_active_version(self, project_id: str) -> Optional[Version]:
        rows = self._query(
            f"SELECT {_COLUMNS} FROM versions WHERE project_id=? AND is_active=1 LIMIT 1",
            (project_id,),
        )
        return _row_to_version(rows[0]) if rows else None

    def get_version_files(self, version_id: str) -> List[VersionedFile]:
        rows = self._query(
            "SELECT version_id, file_path, file_hash, file_size FROM version_files "
            "WHERE version_id=? ORDER BY file_path",
            (version_id,),
        )
        return [
            VersionedFile(
                version_id=r["version_id"],
                file_path=r["file_path"],
                file_hash=r["file_hash"],
                file_size=int(r["file_size"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create_version(
        self, insert: VersionInsert, files: Sequence[SnapshotEntry] = ()
    ) -> Version:
        version_id = new_version_id()
        now = utc_now().isoformat()
        try:
            with self.conn:
                if insert.is_active:
                    self.conn.execute(
                        "UPDATE versions SET is_active=0 WHERE project_id=?",
                        (insert.project_id,),
                    )
                self.conn.execute(
                    f"INSERT INTO versions ({_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?)",
                    (
                        version_id,
                        insert.project_id,
                        insert.version_number,
                        insert.snapshot_path,
                        now,
                        insert.tokens_json,
                        insert.quality_score,
                        insert.changelog,
                        1 if insert.is_active else 0,
                        insert.parent_version_id,
                    ),
                )
                self._insert_files(
                    [(version_id, e.file_path, e.file_hash, e.file_size, now) for e in files]
                )
        except sqlite3.IntegrityError as e:
            raise _integrity_error(e, insert) from e
        except sqlite3.Error as e:
            raise RegistryError(f"Could not create version: {e}") from e

        created = self.get_version_by_id(version_id)
        if created is None:
            raise RegistryError(f"Version {version_id} vanished after insert")
        return created

    def set_active_version(self, version_id: str) -> Optional[Version]:
        version = self.get_version_by_id(version_id)
        if version is None:
            return None
        try:
            with self.conn:
                self.conn.execute(
                    "UPDATE versions SET is_active=0 WHERE project_id=?",
                    (version.project_id,),
                )
                self.conn.execute("UPDATE versions SET is_active=1 WHERE id=?", (version_id,))
        except sqlite3.Error as e:
            raise RegistryError(f"Could not activate {version_id}: {e}") from e
        return self.get_version_by_id(version_id)

    def create_version_files(self, entries: Sequence[VersionedFile]) -> None:
        if not entries:
            return
        now = utc_now().isoformat()
        try:
            with self.conn:
                self._insert_files(
                    [(e.version_id, e.file_path, e.file_hash, e.file_size, now) for e in entries]
                )
        except sqlite3.IntegrityError as e:
            if "FOREIGN KEY" in str(e):
                raise VersionNotFound(f"Cannot record files for an unknown version: {e}") from e
            raise RegistryError(f"Could not record files: {e}") from e
        except sqlite3.Error as e:
            raise RegistryError(f"Could not record files: {e}") from e

    def _insert_files(self, rows) -> None:
        if rows:
            self.conn.executemany(
                "INSERT INTO version_files(version_id, file_path, file_hash, file_size, created_at) "
                "VALUES (?,?,?,?,?)",
                rows,
            )

    def _query(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        try:
            return self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise RegistryError(f"Registry query failed: {e}") from e
