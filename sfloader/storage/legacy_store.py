"""
Manages the SQLite database used as the legacy persistent payload tier.

It serves as the fallback store when the large-capacity file store is not
available, and keeps its own byte ceiling by dropping the oldest entries.
"""

import asyncio
import logging
import sqlite3
import time
from contextlib import closing
from pathlib import Path

log = logging.getLogger(__name__)


class LegacyStoreTier:
    """
    A SQLite payload store with a size ceiling and access statistics.
    """

    name = "legacy-store"

    def __init__(
        self,
        cache_dir_path: Path,
        max_bytes: int = 500 * 1024 * 1024,
        pool_size: int = 5,
    ):
        self.db_path = cache_dir_path / "legacy_cache.sqlite"
        self.max_bytes = max_bytes
        self._connection_semaphore = asyncio.Semaphore(pool_size)
        self.available = True
        try:
            cache_dir_path.mkdir(parents=True, exist_ok=True)
            self._initialize_db()
        except (OSError, sqlite3.Error) as e:
            log.warning(f"[yellow]Legacy store unavailable: {e}[/yellow]")
            self.available = False

    def _get_connection(self) -> sqlite3.Connection:
        """Gets a new database connection with optimized PRAGMA settings."""
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
        return conn

    def _initialize_db(self) -> None:
        """Creates the payload table and its indexes if they don't exist."""
        with closing(self._get_connection()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS payloads (
                    key TEXT PRIMARY KEY NOT NULL,
                    data BLOB NOT NULL,
                    source TEXT,
                    size INTEGER NOT NULL,
                    timestamp REAL NOT NULL,
                    access_count INTEGER NOT NULL DEFAULT 0,
                    last_accessed REAL NOT NULL
                );
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_timestamp ON payloads(timestamp);"
            )

    async def _run_in_executor(self, func, *args):
        """Runs a synchronous database function within the connection semaphore."""
        async with self._connection_semaphore:
            return await asyncio.to_thread(func, *args)

    def _get_sync(self, key: str) -> bytes | None:
        with closing(self._get_connection()) as conn, conn:
            row = conn.execute(
                "SELECT data FROM payloads WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE payloads SET access_count = access_count + 1, "
                "last_accessed = ? WHERE key = ?",
                (time.time(), key),
            )
            return bytes(row[0])

    async def get(self, key: str) -> bytes | None:
        if not self.available:
            return None
        return await self._run_in_executor(self._get_sync, key)

    def _put_sync(self, key: str, data: bytes, source: str | None) -> None:
        size = len(data)
        with closing(self._get_connection()) as conn, conn:
            current = conn.execute(
                "SELECT COALESCE(SUM(size), 0) FROM payloads WHERE key != ?", (key,)
            ).fetchone()[0]
            if current + size > self.max_bytes:
                log.debug("Legacy store is full, removing oldest entries...")
                self._clean_oldest(conn, current + size - self.max_bytes, key)
            now = time.time()
            conn.execute(
                "INSERT OR REPLACE INTO payloads "
                "(key, data, source, size, timestamp, access_count, last_accessed) "
                "VALUES (?, ?, ?, ?, ?, 0, ?)",
                (key, sqlite3.Binary(data), source, size, now, now),
            )

    async def put(self, key: str, data: bytes, source: str | None = None) -> None:
        if not self.available:
            return
        await self._run_in_executor(self._put_sync, key, data, source)

    @staticmethod
    def _clean_oldest(conn: sqlite3.Connection, required: int, keep: str) -> int:
        """Removes the oldest entries until at least `required` bytes are freed."""
        freed = 0
        rows = conn.execute(
            "SELECT key, size FROM payloads WHERE key != ? ORDER BY timestamp ASC",
            (keep,),
        ).fetchall()
        for old_key, size in rows:
            if freed >= required:
                break
            conn.execute("DELETE FROM payloads WHERE key = ?", (old_key,))
            freed += size
            log.debug(f"Removed '{old_key}' from legacy store ({size} bytes).")
        return freed

    def _delete_sync(self, key: str) -> bool:
        with closing(self._get_connection()) as conn, conn:
            cursor = conn.execute("DELETE FROM payloads WHERE key = ?", (key,))
            return cursor.rowcount > 0

    async def delete(self, key: str) -> bool:
        if not self.available:
            return False
        return await self._run_in_executor(self._delete_sync, key)

    def _clear_sync(self) -> None:
        with closing(self._get_connection()) as conn, conn:
            conn.execute("DELETE FROM payloads")
        log.info("Legacy store cleared.")

    async def clear(self) -> None:
        if not self.available:
            return
        await self._run_in_executor(self._clear_sync)

    def _sources_sync(self) -> dict[str, str | None]:
        with closing(self._get_connection()) as conn:
            return dict(conn.execute("SELECT key, source FROM payloads").fetchall())

    async def sources(self) -> dict[str, str | None]:
        if not self.available:
            return {}
        return await self._run_in_executor(self._sources_sync)

    def _stats_sync(self) -> dict:
        with closing(self._get_connection()) as conn:
            count, size, accesses = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(size), 0), "
                "COALESCE(SUM(access_count), 0) FROM payloads"
            ).fetchone()
            most_accessed = conn.execute(
                "SELECT key FROM payloads ORDER BY access_count DESC LIMIT 1"
            ).fetchone()
        return {
            "count": count,
            "size": size,
            "max_size": self.max_bytes,
            "total_accesses": accesses,
            "most_accessed": most_accessed[0] if most_accessed else None,
            "available": True,
        }

    async def stats(self) -> dict:
        if not self.available:
            return {"count": 0, "size": 0, "available": False}
        return await self._run_in_executor(self._stats_sync)
