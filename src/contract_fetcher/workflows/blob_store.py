"""Keyed blob storage backends for the contract cache.

The cache policy (byte budget, LRU eviction, single writer) lives in
``contract_cache``; a ``BlobStore`` only knows how to keep records and report
which one was touched least recently.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class BlobStoreError(RuntimeError):
    """Raised when a backend cannot service a request (unavailable, quota, corruption)."""


@dataclass(frozen=True)
class CachedBlob:
    key: str
    data: bytes
    source_url: str
    size_bytes: int
    content_type: Optional[str]
    fetched_at: float
    last_accessed_at: float


class BlobStore(ABC):
    """Capability interface shared by every cache backend."""

    @abstractmethod
    def get(self, key: str) -> Optional[CachedBlob]:
        """Return the record for ``key`` without touching it."""

    @abstractmethod
    def put(self, blob: CachedBlob) -> None:
        """Insert or replace ``blob``."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def touch(self, key: str, accessed_at: float) -> None:
        ...

    @abstractmethod
    def clear(self) -> int:
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    @abstractmethod
    def stats(self) -> Tuple[int, int]:
        """Return ``(count, total_bytes)``."""

    @abstractmethod
    def oldest_key(self) -> Optional[str]:
        """Key of the least recently accessed record, or None when empty."""

    def evict_lru(self, needed_bytes: int, max_bytes: int) -> List[str]:
        """Drop least-recently-accessed records until ``needed_bytes`` more fit."""

        evicted: List[str] = []
        _, total = self.stats()
        while total + needed_bytes > max_bytes:
            key = self.oldest_key()
            if key is None:
                break
            blob = self.get(key)
            self.delete(key)
            evicted.append(key)
            total -= blob.size_bytes if blob else 0
            logger.debug("Evicted cached contract %s", key)
        return evicted

    def close(self) -> None:
        return None


class MemoryBlobStore(BlobStore):
    """Process-local store, mainly for tests and one-shot CLI runs."""

    def __init__(self) -> None:
        self._items: Dict[str, CachedBlob] = {}
        self._order: Dict[str, int] = {}
        self._seq = 0
        self._lock = threading.Lock()

    def _bump(self, key: str) -> None:
        self._seq += 1
        self._order[key] = self._seq

    def get(self, key: str) -> Optional[CachedBlob]:
        with self._lock:
            return self._items.get(key)

    def put(self, blob: CachedBlob) -> None:
        with self._lock:
            self._items[blob.key] = blob
            self._bump(blob.key)

    def delete(self, key: str) -> bool:
        with self._lock:
            self._order.pop(key, None)
            return self._items.pop(key, None) is not None

    def touch(self, key: str, accessed_at: float) -> None:
        with self._lock:
            blob = self._items.get(key)
            if blob is None:
                return
            self._items[key] = replace(blob, last_accessed_at=accessed_at)
            self._bump(key)

    def clear(self) -> int:
        with self._lock:
            count = len(self._items)
            self._items.clear()
            self._order.clear()
            return count

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def stats(self) -> Tuple[int, int]:
        with self._lock:
            return len(self._items), sum(blob.size_bytes for blob in self._items.values())

    def oldest_key(self) -> Optional[str]:
        with self._lock:
            if not self._items:
                return None
            return min(
                self._items,
                key=lambda k: (self._items[k].last_accessed_at, self._order.get(k, 0)),
            )


class SqliteBlobStore(BlobStore):
    """Single-file SQLite store; one table, one row per cached contract.

    A single connection is reused and guarded by a thread lock. Any sqlite
    failure is re-raised as ``BlobStoreError`` so callers handle one type.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._connection: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_db()
        except (sqlite3.Error, OSError) as exc:
            raise BlobStoreError(f"cannot open blob store at {self._db_path}: {exc}") from exc

    def _get_connection(self) -> sqlite3.Connection:
        if self._connection is None:
            self._connection = sqlite3.connect(
                str(self._db_path),
                timeout=30.0,
                check_same_thread=False,
            )
            self._connection.execute("PRAGMA journal_mode=WAL")
            self._connection.execute("PRAGMA synchronous=NORMAL")
            self._connection.row_factory = sqlite3.Row
        return self._connection

    def _init_db(self) -> None:
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS contract_blobs (
                    key TEXT PRIMARY KEY,
                    data BLOB NOT NULL,
                    source_url TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    content_type TEXT,
                    fetched_at REAL NOT NULL,
                    last_accessed_at REAL NOT NULL,
                    access_seq INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(contract_blobs)")}
            if "access_seq" not in columns:
                conn.execute("ALTER TABLE contract_blobs ADD COLUMN access_seq INTEGER NOT NULL DEFAULT 0")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_blobs_lru ON contract_blobs(last_accessed_at, access_seq)"
            )
            conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    def _execute(self, sql: str, params: Tuple = (), *, commit: bool = False) -> sqlite3.Cursor:
        try:
            conn = self._get_connection()
            cursor = conn.execute(sql, params)
            if commit:
                conn.commit()
            return cursor
        except sqlite3.Error as exc:
            raise BlobStoreError(str(exc)) from exc

    @staticmethod
    def _row_to_blob(row: sqlite3.Row) -> CachedBlob:
        return CachedBlob(
            key=row["key"],
            data=bytes(row["data"]),
            source_url=row["source_url"],
            size_bytes=int(row["size_bytes"]),
            content_type=row["content_type"],
            fetched_at=float(row["fetched_at"]),
            last_accessed_at=float(row["last_accessed_at"]),
        )

    def get(self, key: str) -> Optional[CachedBlob]:
        with self._lock:
            row = self._execute("SELECT * FROM contract_blobs WHERE key = ?", (key,)).fetchone()
        return self._row_to_blob(row) if row else None

    def put(self, blob: CachedBlob) -> None:
        with self._lock:
            self._execute(
                """
                INSERT OR REPLACE INTO contract_blobs
                (key, data, source_url, size_bytes, content_type, fetched_at, last_accessed_at, access_seq)
                VALUES (?, ?, ?, ?, ?, ?, ?, (SELECT COALESCE(MAX(access_seq), 0) + 1 FROM contract_blobs))
                """,
                (
                    blob.key,
                    sqlite3.Binary(blob.data),
                    blob.source_url,
                    blob.size_bytes,
                    blob.content_type,
                    blob.fetched_at,
                    blob.last_accessed_at,
                ),
                commit=True,
            )

    def delete(self, key: str) -> bool:
        with self._lock:
            cursor = self._execute("DELETE FROM contract_blobs WHERE key = ?", (key,), commit=True)
        return cursor.rowcount > 0

    def touch(self, key: str, accessed_at: float) -> None:
        with self._lock:
            self._execute(
                """
                UPDATE contract_blobs
                SET last_accessed_at = ?,
                    access_seq = (SELECT COALESCE(MAX(access_seq), 0) + 1 FROM contract_blobs)
                WHERE key = ?
                """,
                (accessed_at, key),
                commit=True,
            )

    def clear(self) -> int:
        with self._lock:
            cursor = self._execute("DELETE FROM contract_blobs", commit=True)
        return max(0, cursor.rowcount)

    def keys(self) -> List[str]:
        with self._lock:
            rows = self._execute("SELECT key FROM contract_blobs ORDER BY last_accessed_at, access_seq").fetchall()
        return [row["key"] for row in rows]

    def stats(self) -> Tuple[int, int]:
        with self._lock:
            row = self._execute(
                "SELECT COUNT(*) AS count, COALESCE(SUM(size_bytes), 0) AS total FROM contract_blobs"
            ).fetchone()
        return int(row["count"]), int(row["total"])

    def oldest_key(self) -> Optional[str]:
        with self._lock:
            row = self._execute(
                "SELECT key FROM contract_blobs ORDER BY last_accessed_at ASC, access_seq ASC LIMIT 1"
            ).fetchone()
        return row["key"] if row else None


__all__ = [
    "BlobStore",
    "BlobStoreError",
    "CachedBlob",
    "MemoryBlobStore",
    "SqliteBlobStore",
]
