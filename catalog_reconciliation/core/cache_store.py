"""
SQLite-backed cache for bulk export results.

Stores the raw JSONL of the last successful export together with the time
it was written. Every write replaces the whole entry inside one transaction,
so readers see either the previous export or the new one.
"""
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Protocol

import aiosqlite
import structlog

from catalog_reconciliation.models import CacheStatus

logger = structlog.get_logger(__name__)

CACHE_KEY = "bulk_export"


class CacheStore(Protocol):
    """Key-value store for the export cache."""

    async def read(self) -> Optional[str]:
        ...

    async def write(self, body: str) -> datetime:
        ...

    async def status(self) -> CacheStatus:
        ...

    async def clear(self) -> bool:
        ...


def build_status(last_modified: Optional[datetime]) -> CacheStatus:
    """Build a CacheStatus from the stored timestamp."""
    if last_modified is None:
        return CacheStatus(exists=False)
    age = (datetime.now(timezone.utc) - last_modified).total_seconds()
    return CacheStatus(exists=True, last_modified=last_modified, age_seconds=max(age, 0.0))


class SqliteCacheStore:
    """Export cache persisted in a local SQLite file."""

    def __init__(self, db_path: str = ".cache/bulk_export.db", key: str = CACHE_KEY):
        """
        Initialize cache store.

        Args:
            db_path: Path to SQLite database file
            key: Cache entry name
        """
        self.db_path = db_path
        self.key = key
        self._conn: Optional[aiosqlite.Connection] = None

    async def initialize(self) -> None:
        """Create the cache table if it doesn't exist."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row

        await self._conn.execute("""
            CREATE TABLE IF NOT EXISTS export_cache (
                cache_key TEXT PRIMARY KEY,
                body TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        await self._conn.commit()
        logger.info("cache_store_initialized", db_path=self.db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("SqliteCacheStore not initialized")
        return self._conn

    async def read(self) -> Optional[str]:
        """Return the cached export body, or None."""
        cursor = await self.conn.execute(
            "SELECT body FROM export_cache WHERE cache_key = ?", (self.key,)
        )
        row = await cursor.fetchone()
        return row["body"] if row else None

    async def write(self, body: str) -> datetime:
        """Replace the cached export body and stamp it."""
        now = datetime.now(timezone.utc)
        await self.conn.execute("""
            INSERT INTO export_cache (cache_key, body, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(cache_key) DO UPDATE SET body = excluded.body, updated_at = excluded.updated_at
        """, (self.key, body, now.isoformat()))
        await self.conn.commit()
        logger.info("cache_written", key=self.key, size=len(body))
        return now

    async def status(self) -> CacheStatus:
        """Report whether a cache exists and how old it is, without reading the body."""
        cursor = await self.conn.execute(
            "SELECT updated_at FROM export_cache WHERE cache_key = ?", (self.key,)
        )
        row = await cursor.fetchone()
        if row is None:
            return build_status(None)
        return build_status(datetime.fromisoformat(row["updated_at"]))

    async def clear(self) -> bool:
        """Drop the cache entry. Returns True if one existed."""
        cursor = await self.conn.execute(
            "DELETE FROM export_cache WHERE cache_key = ?", (self.key,)
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("cache_store_closed")
