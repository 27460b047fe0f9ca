"""
Durable tier for the Sentinel Dispatch result cache

SQLite-backed persistent storage for cache entries with:
- Async operations via aiosqlite
- Write-ahead logging (WAL) for durability
- JSON-serialized values
- Corrupt rows surfaced as CacheReadCorruptionError
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiosqlite

from .errors import CacheReadCorruptionError, CacheTierUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A single cached analysis result."""
    key: str
    value: Any
    created_at: float = field(default_factory=time.time)
    analyzer_tag: str = ""
    source_path: str = ""
    accessed_at: float = 0.0

    def __post_init__(self) -> None:
        if not self.accessed_at:
            self.accessed_at = self.created_at

    def is_expired(self, ttl_seconds: float, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now - self.created_at > ttl_seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "value": self.value,
            "created_at": self.created_at,
            "analyzer_tag": self.analyzer_tag,
            "source_path": self.source_path,
            "accessed_at": self.accessed_at,
        }


@dataclass
class DurableStats:
    """Statistics about the durable tier."""
    entry_count: int = 0
    total_size_bytes: int = 0
    db_size_bytes: int = 0
    oldest_entry_at: float = 0
    newest_entry_at: float = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_count": self.entry_count,
            "total_size_bytes": self.total_size_bytes,
            "db_size": f"{self.db_size_bytes / 1024:.2f} KB",
            "oldest_entry_at": self.oldest_entry_at,
            "newest_entry_at": self.newest_entry_at,
        }


class DurableCacheStore:
    """
    Persistent cache tier with SQLite backend.

    The on-disk layout is private to this class; callers only see CacheEntry.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._db: aiosqlite.Connection | None = None

    @property
    def is_open(self) -> bool:
        return self._db is not None

    async def initialize(self) -> None:
        """
        Open the database connection and create the schema.

        Raises:
            CacheTierUnavailableError: If the directory or database cannot be opened
        """
        if self._db is not None:
            return

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheTierUnavailableError(
                f"Cannot create cache directory {self.db_path.parent}: {e}"
            ) from e

        try:
            self._db = await aiosqlite.connect(str(self.db_path))

            await self._db.execute("PRAGMA journal_mode=WAL")
            await self._db.execute("PRAGMA synchronous=NORMAL")
            await self._db.execute("PRAGMA temp_store=MEMORY")

            await self._create_schema()
        except (aiosqlite.Error, OSError) as e:
            await self.close()
            raise CacheTierUnavailableError(f"Cannot open cache database {self.db_path}: {e}") from e

    async def _create_schema(self) -> None:
        """Create database schema if not exists."""
        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY
            );

            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                analyzer TEXT NOT NULL DEFAULT '',
                source_path TEXT NOT NULL DEFAULT '',
                created_at REAL NOT NULL,
                accessed_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_cache_entries_created_at ON cache_entries(created_at);
        """)
        await self._db.commit()

        async with self._db.execute("SELECT version FROM schema_version") as cursor:
            row = await cursor.fetchone()
            if row is None:
                await self._db.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (self.SCHEMA_VERSION,)
                )
                await self._db.commit()

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise CacheTierUnavailableError("Durable cache tier is not initialized")
        return self._db

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def get(self, key: str) -> CacheEntry | None:
        """
        Get an entry by key.

        Raises:
            CacheReadCorruptionError: If the stored value cannot be decoded
        """
        db = self._require_db()

        async with db.execute(
            "SELECT key, value, analyzer, source_path, created_at, accessed_at FROM cache_entries WHERE key = ?",
            (key,)
        ) as cursor:
            row = await cursor.fetchone()

        if row is None:
            return None

        try:
            value = json.loads(row[1])
        except (TypeError, ValueError) as e:
            raise CacheReadCorruptionError(key, str(e)) from e

        return CacheEntry(
            key=row[0],
            value=value,
            analyzer_tag=row[2],
            source_path=row[3],
            created_at=row[4],
            accessed_at=row[5],
        )

    async def put(self, entry: CacheEntry) -> None:
        """
        Store an entry, replacing any existing one with the same key.

        Values are JSON-encoded and read back in JSON form.

        Raises:
            TypeError: If the value is not JSON-serializable
        """
        db = self._require_db()
        value = json.dumps(entry.value)

        await db.execute(
            """
            INSERT OR REPLACE INTO cache_entries (key, value, analyzer, source_path, created_at, accessed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (entry.key, value, entry.analyzer_tag, entry.source_path, entry.created_at, entry.accessed_at)
        )
        await db.commit()

    async def delete(self, key: str) -> bool:
        """Delete an entry by key."""
        db = self._require_db()
        cursor = await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
        await db.commit()
        return cursor.rowcount > 0

    async def delete_many(self, keys: list[str]) -> int:
        """Delete several entries in one transaction."""
        if not keys:
            return 0
        db = self._require_db()
        await db.executemany("DELETE FROM cache_entries WHERE key = ?", [(k,) for k in keys])
        await db.commit()
        return len(keys)

    async def keys(self) -> list[str]:
        """List every stored key."""
        db = self._require_db()
        async with db.execute("SELECT key FROM cache_entries") as cursor:
            return [row[0] async for row in cursor]

    async def clear(self) -> int:
        """Delete every entry."""
        db = self._require_db()
        cursor = await db.execute("DELETE FROM cache_entries")
        await db.commit()
        return cursor.rowcount

    async def purge_expired(self, cutoff: float) -> int:
        """Delete entries created before cutoff (wall-clock seconds)."""
        db = self._require_db()
        cursor = await db.execute("DELETE FROM cache_entries WHERE created_at < ?", (cutoff,))
        await db.commit()
        return cursor.rowcount

    async def get_stats(self) -> DurableStats:
        """Get durable tier statistics."""
        db = self._require_db()
        stats = DurableStats()

        async with db.execute(
            "SELECT COUNT(*), COALESCE(SUM(LENGTH(value)), 0), MIN(created_at), MAX(created_at) FROM cache_entries"
        ) as cursor:
            row = await cursor.fetchone()
            if row:
                stats.entry_count = row[0]
                stats.total_size_bytes = row[1]
                stats.oldest_entry_at = row[2] or 0
                stats.newest_entry_at = row[3] or 0

        try:
            stats.db_size_bytes = self.db_path.stat().st_size
        except OSError:
            stats.db_size_bytes = 0

        return stats
