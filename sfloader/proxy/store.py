"""
Manages the SQLite database holding the cache proxy's versioned response stores.

Each store is named after a category prefix plus the proxy version, e.g.
`sfloader-soundfonts-v1.0.4`. Stores from older versions stay on disk until the
proxy activates and migrates or removes them.
"""

import asyncio
import logging
import sqlite3
from contextlib import closing
from dataclasses import dataclass, field
from pathlib import Path

from sfloader import __version__
from sfloader.models.entry import CacheCategory, CacheEntry, now_ms

log = logging.getLogger(__name__)

STORE_PREFIXES = {
    CacheCategory.GENERIC: "sfloader-resources-v",
    CacheCategory.SOUNDFONT: "sfloader-soundfonts-v",
    CacheCategory.CRITICAL: "sfloader-critical-v",
}

_COLUMNS = (
    "url, content_type, size, cached_at, last_accessed, access_count, protected"
)


def store_name(category: CacheCategory, version: str = __version__) -> str:
    return f"{STORE_PREFIXES[category]}{version}"


def version_of(name: str, category: CacheCategory) -> str | None:
    """Extracts the version suffix of a store name, if it has the category prefix."""
    prefix = STORE_PREFIXES[category]
    if not name.startswith(prefix):
        return None
    return name[len(prefix) :] or None


@dataclass
class StoredResponse:
    """A cached response body together with its access metadata."""

    data: bytes = field(repr=False)
    content_type: str
    entry: CacheEntry


class ProxyStore:
    """
    A SQLite-backed set of named response stores with per-entry access metadata.
    """

    def __init__(self, cache_dir_path: Path, pool_size: int = 5):
        self.db_path = cache_dir_path / "proxy_cache.sqlite"
        self._connection_semaphore = asyncio.Semaphore(pool_size)
        cache_dir_path.mkdir(parents=True, exist_ok=True)
        self._initialize_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Gets a new database connection with optimized PRAGMA settings."""
        conn = sqlite3.connect(self.db_path, timeout=30, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
        return conn

    def _initialize_db(self) -> None:
        with closing(self._get_connection()) as conn, conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS entries (
                    store TEXT NOT NULL,
                    url TEXT NOT NULL,
                    data BLOB NOT NULL,
                    content_type TEXT,
                    size INTEGER NOT NULL,
                    cached_at INTEGER NOT NULL,
                    last_accessed INTEGER NOT NULL,
                    access_count INTEGER NOT NULL DEFAULT 1,
                    protected INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (store, url)
                );
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_url ON entries(url);")

    async def _run_in_executor(self, func, *args):
        """Runs a synchronous database function within the connection semaphore."""
        async with self._connection_semaphore:
            return await asyncio.to_thread(func, *args)

    @staticmethod
    def _to_entry(row, category: CacheCategory) -> CacheEntry:
        url, _, size, cached_at, last_accessed, access_count, protected = row
        return CacheEntry(
            key=url,
            size_bytes=size,
            cached_at=cached_at,
            last_accessed=last_accessed,
            access_count=access_count,
            protected=bool(protected),
            category=category,
        )

    @staticmethod
    def _category_of(store: str) -> CacheCategory:
        for category, prefix in STORE_PREFIXES.items():
            if store.startswith(prefix):
                return category
        return CacheCategory.GENERIC

    def _get_sync(self, store: str, url: str) -> StoredResponse | None:
        with closing(self._get_connection()) as conn:
            row = conn.execute(
                f"SELECT data, {_COLUMNS} FROM entries WHERE store = ? AND url = ?",  # noqa: S608
                (store, url),
            ).fetchone()
        if row is None:
            return None
        return StoredResponse(
            data=bytes(row[0]),
            content_type=row[2] or "application/octet-stream",
            entry=self._to_entry(row[1:], self._category_of(store)),
        )

    async def get(self, store: str, url: str) -> StoredResponse | None:
        return await self._run_in_executor(self._get_sync, store, url)

    def _find_sync(self, url: str) -> StoredResponse | None:
        with closing(self._get_connection()) as conn:
            row = conn.execute(
                "SELECT store FROM entries WHERE url = ? ORDER BY cached_at DESC LIMIT 1",
                (url,),
            ).fetchone()
        return self._get_sync(row[0], url) if row else None

    async def find(self, url: str) -> StoredResponse | None:
        """Looks a URL up in every store, newest copy first."""
        return await self._run_in_executor(self._find_sync, url)

    def _put_sync(
        self,
        store: str,
        url: str,
        data: bytes,
        content_type: str | None,
        protected: bool,
    ) -> None:
        now = now_ms()
        with closing(self._get_connection()) as conn, conn:
            conn.execute(
                "INSERT OR REPLACE INTO entries (store, url, data, content_type, size, "
                "cached_at, last_accessed, access_count, protected) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)",
                (
                    store,
                    url,
                    sqlite3.Binary(data),
                    content_type,
                    len(data),
                    now,
                    now,
                    int(protected),
                ),
            )

    async def put(
        self,
        store: str,
        url: str,
        data: bytes,
        content_type: str | None = None,
        protected: bool = False,
    ) -> None:
        """Stores a response, resetting its access metadata."""
        await self._run_in_executor(
            self._put_sync, store, url, data, content_type, protected
        )

    def _touch_sync(self, store: str, url: str, now: int) -> None:
        with closing(self._get_connection()) as conn, conn:
            conn.execute(
                "UPDATE entries SET access_count = access_count + 1, "
                "last_accessed = ? WHERE store = ? AND url = ?",
                (now, store, url),
            )

    async def touch(self, store: str, url: str, now: int | None = None) -> None:
        """Records one read access of an entry."""
        await self._run_in_executor(
            self._touch_sync, store, url, now if now is not None else now_ms()
        )

    def _delete_sync(self, store: str, url: str) -> bool:
        with closing(self._get_connection()) as conn, conn:
            cursor = conn.execute(
                "DELETE FROM entries WHERE store = ? AND url = ?", (store, url)
            )
            return cursor.rowcount > 0

    async def delete(self, store: str, url: str) -> bool:
        return await self._run_in_executor(self._delete_sync, store, url)

    def _entries_sync(self, store: str) -> list[CacheEntry]:
        category = self._category_of(store)
        with closing(self._get_connection()) as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM entries WHERE store = ?", (store,)  # noqa: S608
            ).fetchall()
        return [self._to_entry(row, category) for row in rows]

    async def entries(self, store: str) -> list[CacheEntry]:
        """Metadata of every entry in a store."""
        return await self._run_in_executor(self._entries_sync, store)

    def _set_protected_sync(self, store: str, identifier: str, protected: bool) -> int:
        with closing(self._get_connection()) as conn, conn:
            cursor = conn.execute(
                "UPDATE entries SET protected = ? WHERE store = ? AND instr(url, ?) > 0",
                (int(protected), store, identifier),
            )
            return cursor.rowcount

    async def set_protected(self, store: str, identifier: str, protected: bool) -> int:
        """Flags every entry whose URL contains `identifier` and returns the count."""
        return await self._run_in_executor(
            self._set_protected_sync, store, identifier, protected
        )

    def _store_names_sync(self) -> list[str]:
        with closing(self._get_connection()) as conn:
            rows = conn.execute("SELECT DISTINCT store FROM entries").fetchall()
        return sorted(row[0] for row in rows)

    async def store_names(self) -> list[str]:
        return await self._run_in_executor(self._store_names_sync)

    def _delete_store_sync(self, store: str) -> int:
        with closing(self._get_connection()) as conn, conn:
            return conn.execute("DELETE FROM entries WHERE store = ?", (store,)).rowcount

    async def delete_store(self, store: str) -> int:
        return await self._run_in_executor(self._delete_store_sync, store)

    def _migrate_sync(self, source: str, target: str) -> tuple[int, int]:
        with closing(self._get_connection()) as conn, conn:
            migrated, size = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(size), 0) FROM entries "
                "WHERE store = ? AND url NOT IN "
                "(SELECT url FROM entries WHERE store = ?)",
                (source, target),
            ).fetchone()
            conn.execute(
                "INSERT OR IGNORE INTO entries (store, url, data, content_type, size, "
                "cached_at, last_accessed, access_count, protected) "
                "SELECT ?, url, data, content_type, size, cached_at, last_accessed, "
                "access_count, protected FROM entries WHERE store = ?",
                (target, source),
            )
        return migrated, size

    async def migrate(self, source: str, target: str) -> tuple[int, int]:
        """
        Copies entries missing from `target` out of `source`.

        Returns:
            (migrated_count, migrated_bytes)
        """
        if source == target:
            return 0, 0
        return await self._run_in_executor(self._migrate_sync, source, target)

    def _usage_sync(self, soundfont_store: str, critical_store: str) -> dict[str, int]:
        with closing(self._get_connection()) as conn:
            total = conn.execute("SELECT COALESCE(SUM(size), 0) FROM entries").fetchone()[0]
            count, soundfont_size = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(size), 0) FROM entries WHERE store = ?",
                (soundfont_store,),
            ).fetchone()
            critical = conn.execute(
                "SELECT COALESCE(SUM(size), 0) FROM entries WHERE store = ?",
                (critical_store,),
            ).fetchone()[0]
        return {
            "totalSize": total,
            "soundfontCount": count,
            "soundfontSize": soundfont_size,
            "criticalSize": critical,
        }

    async def usage(self, soundfont_store: str, critical_store: str) -> dict[str, int]:
        """Bytes across all stores plus soundfont and critical store figures."""
        return await self._run_in_executor(
            self._usage_sync, soundfont_store, critical_store
        )
