"""
SQLite persistence backend for cache entries.

Keeps cache contents across process restarts. One row per entry; payloads
are stored as BLOB for bytes and as JSON text for everything else.
"""
import sqlite3
import json
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .core import CacheEntry, PersistenceError, Priority

logger = logging.getLogger("cache.persistence")

DEFAULT_DB_PATH = Path(__file__).parent.parent.parent / "data" / "cache.db"


SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value BLOB,
    value_kind TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT,
    hit_count INTEGER NOT NULL DEFAULT 0,
    tags TEXT,
    priority TEXT NOT NULL,
    format_version TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_cache_entries_expires ON cache_entries(expires_at);
"""


class PersistenceBackend(ABC):
    """Durable storage for a cache's entries."""

    @abstractmethod
    def load(self) -> Dict[str, CacheEntry]:
        """Load every stored entry keyed by cache key."""
        pass

    @abstractmethod
    def save(self, entries: Mapping[str, CacheEntry]) -> None:
        """Replace stored contents with the given entries."""
        pass


class SQLiteCacheStore(PersistenceBackend):
    """
    SQLite-based storage for cache entries.

    Rows written under a different format_version are ignored on load so a
    payload layout change never feeds stale shapes back into the cache.
    """

    def __init__(self, db_path: Optional[Path] = None, format_version: str = "1.0.0"):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.format_version = format_version
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        try:
            with self._get_connection() as conn:
                conn.executescript(SCHEMA)
                conn.commit()
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot initialize cache store at {self.db_path}: {e}") from e

    @contextmanager
    def _get_connection(self):
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # =========================================================================
    # Encoding
    # =========================================================================

    @staticmethod
    def _encode_value(value: Any):
        if isinstance(value, (bytes, bytearray, memoryview)):
            return sqlite3.Binary(bytes(value)), "bytes"
        return json.dumps(value, ensure_ascii=False), "json"

    @staticmethod
    def _decode_value(raw: Any, kind: str) -> Any:
        if kind == "bytes":
            return bytes(raw)
        return json.loads(raw)

    def _row_to_entry(self, row: sqlite3.Row) -> CacheEntry:
        return CacheEntry(
            key=row["key"],
            value=self._decode_value(row["value"], row["value_kind"]),
            size_bytes=row["size_bytes"],
            created_at=datetime.fromisoformat(row["created_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]) if row["expires_at"] else None,
            hit_count=row["hit_count"],
            tags=json.loads(row["tags"]) if row["tags"] else [],
            priority=Priority.coerce(row["priority"]),
        )

    # =========================================================================
    # Backend API
    # =========================================================================

    def load(self) -> Dict[str, CacheEntry]:
        entries: Dict[str, CacheEntry] = {}
        skipped_version = 0

        try:
            with self._get_connection() as conn:
                rows = conn.execute("SELECT * FROM cache_entries").fetchall()
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot read cache store {self.db_path}: {e}") from e

        for row in rows:
            if row["format_version"] != self.format_version:
                skipped_version += 1
                continue
            try:
                entries[row["key"]] = self._row_to_entry(row)
            except (ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable cache row {row['key']!r}: {e}")

        if skipped_version:
            logger.info(
                f"Ignored {skipped_version} cache rows from another format version "
                f"(current {self.format_version})"
            )
        logger.debug(f"Loaded {len(entries)} cache entries from {self.db_path}")
        return entries

    def save(self, entries: Mapping[str, CacheEntry]) -> None:
        rows = []
        for key, entry in entries.items():
            try:
                value, kind = self._encode_value(entry.value)
            except (TypeError, ValueError) as e:
                logger.warning(f"Not persisting {key!r}, value is not serializable: {e}")
                continue
            rows.append((
                key,
                value,
                kind,
                entry.size_bytes,
                entry.created_at.isoformat(),
                entry.expires_at.isoformat() if entry.expires_at else None,
                entry.hit_count,
                json.dumps(entry.tags),
                entry.priority.value,
                self.format_version,
            ))

        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM cache_entries")
                conn.executemany(
                    """
                    INSERT INTO cache_entries (
                        key, value, value_kind, size_bytes, created_at, expires_at,
                        hit_count, tags, priority, format_version
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                conn.commit()
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot write cache store {self.db_path}: {e}") from e

        logger.debug(f"Saved {len(rows)} cache entries to {self.db_path}")
