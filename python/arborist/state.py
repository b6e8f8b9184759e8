"""
State - Persistent staleness cache.

Maps each indexed path to the content hash and point id last committed to
the vector store. A path whose current hash matches its cached hash is
skipped entirely; a cache miss always means "needs indexing", so losing the
cache only costs a re-index.
"""

import logging
import os
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional


logger = logging.getLogger(__name__)

STATUS_INDEXED = "indexed"
STATUS_SKIPPED = "skipped"


@dataclass
class CacheEntry:
    """A row in the state table."""
    path: str
    content_hash: str
    point_id: Optional[str]
    kind: str
    status: str
    indexed_at: datetime


def _to_entry(row: sqlite3.Row) -> CacheEntry:
    return CacheEntry(
        path=row["path"],
        content_hash=row["content_hash"],
        point_id=row["point_id"],
        kind=row["kind"],
        status=row["status"],
        indexed_at=datetime.fromtimestamp(row["indexed_at"]),
    )


class StateCache:
    """
    SQLite-backed path -> last committed hash store.

    Reads may happen from any worker; writes are serialised with a lock.
    Each path is owned by exactly one worker during a run.
    """

    def __init__(self, db_path: Path | str):
        self.db_path = str(db_path)
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
                self._conn.execute("PRAGMA synchronous = NORMAL")
            self._init_tables()
        return self._conn

    def _init_tables(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS indexed (
                path TEXT PRIMARY KEY,
                content_hash TEXT NOT NULL,
                point_id TEXT,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                indexed_at INTEGER NOT NULL
            );
        """)
        self._conn.commit()

    def get(self, path: Path | str) -> Optional[CacheEntry]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT * FROM indexed WHERE path = ?", (str(path),)
        ).fetchone()
        return _to_entry(row) if row is not None else None

    def is_current(self, path: Path | str, content_hash: Optional[str]) -> bool:
        """True when path was committed with exactly this hash."""
        if content_hash is None:
            return False
        entry = self.get(path)
        return entry is not None and entry.content_hash == content_hash

    def mark_indexed(self, path: Path | str, content_hash: str, point_id: str, kind: str) -> None:
        """Record a successful upsert."""
        self._write(path, content_hash, point_id, kind, STATUS_INDEXED)

    def mark_skipped(self, path: Path | str, content_hash: str, kind: str) -> None:
        """Record a deliberate skip so unchanged skips cost nothing next run."""
        self._write(path, content_hash, None, kind, STATUS_SKIPPED)

    def _write(
        self,
        path: Path | str,
        content_hash: str,
        point_id: Optional[str],
        kind: str,
        status: str,
    ) -> None:
        now = int(datetime.now().timestamp())
        with self._lock:
            conn = self._get_connection()
            with conn:
                conn.execute(
                    """
                    INSERT INTO indexed (path, content_hash, point_id, kind, status, indexed_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(path) DO UPDATE SET
                        content_hash = excluded.content_hash,
                        point_id = excluded.point_id,
                        kind = excluded.kind,
                        status = excluded.status,
                        indexed_at = excluded.indexed_at
                    """,
                    (str(path), content_hash, point_id, kind, status, now),
                )

    def remove(self, paths: Iterable[Path | str]) -> int:
        """Forget paths; returns how many rows were deleted."""
        keys = [(str(p),) for p in paths]
        if not keys:
            return 0
        with self._lock:
            conn = self._get_connection()
            with conn:
                cursor = conn.executemany("DELETE FROM indexed WHERE path = ?", keys)
        return cursor.rowcount

    def paths_under(self, root: Path | str) -> List[CacheEntry]:
        """Entries for root itself and everything beneath it."""
        root = str(root)
        prefix = root.rstrip(os.sep) + os.sep
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM indexed WHERE path = ? OR substr(path, 1, ?) = ? ORDER BY path",
            (root, len(prefix), prefix),
        ).fetchall()
        return [_to_entry(row) for row in rows]

    def count(self, status: Optional[str] = None) -> int:
        conn = self._get_connection()
        if status is None:
            return conn.execute("SELECT COUNT(*) FROM indexed").fetchone()[0]
        return conn.execute(
            "SELECT COUNT(*) FROM indexed WHERE status = ?", (status,)
        ).fetchone()[0]

    def close(self):
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
