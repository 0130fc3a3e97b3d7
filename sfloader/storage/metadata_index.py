"""
A lightweight, advisory JSON index mapping payload keys to where and when they
were fetched. Nothing relies on it for correctness: it can be rebuilt from the
tier contents at any time.

Changes are kept in memory and written out in batches: `schedule_flush` coalesces
the writes of a burst of downloads into one file replacement, and `close`
writes whatever is still pending.
"""

import asyncio
import json
import logging
import os
import time
from contextlib import suppress
from pathlib import Path

import aiofiles

log = logging.getLogger(__name__)


class MetadataIndex:
    """Key -> {source, timestamp} index persisted as a single JSON file."""

    def __init__(self, cache_dir_path: Path, flush_delay: float = 1.0):
        self.index_path = cache_dir_path / "index.json"
        self.flush_delay = flush_delay
        self._entries: dict[str, dict] = self._load()
        self._dirty = False
        self._flush_task: asyncio.Task | None = None

    def _load(self) -> dict[str, dict]:
        if not self.index_path.is_file():
            return {}
        try:
            with open(self.index_path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            log.warning(f"Metadata index unreadable, starting empty: {e}")
            return {}
        if not isinstance(data, dict):
            return {}
        return {k: v for k, v in data.items() if isinstance(v, dict)}

    @property
    def dirty(self) -> bool:
        return self._dirty

    async def flush(self) -> bool:
        """Writes the index if it changed since the last successful write."""
        if not self._dirty:
            return True
        text = json.dumps(self._entries)
        self._dirty = False
        tmp_path = self.index_path.with_suffix(".tmp")
        try:
            await asyncio.to_thread(
                self.index_path.parent.mkdir, parents=True, exist_ok=True
            )
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(text)
            await asyncio.to_thread(os.replace, tmp_path, self.index_path)
            return True
        except asyncio.CancelledError:
            self._dirty = True
            raise
        except OSError as e:
            self._dirty = True
            log.warning(f"Could not save metadata index: {e}")
            return False

    def schedule_flush(self) -> None:
        """Flushes after `flush_delay` seconds unless a flush is already pending."""
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._delayed_flush())

    async def _delayed_flush(self) -> None:
        await asyncio.sleep(self.flush_delay)
        await self.flush()

    async def close(self) -> None:
        """Cancels a pending delayed flush and writes outstanding changes now."""
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._flush_task
        self._flush_task = None
        await self.flush()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> dict | None:
        return self._entries.get(key)

    def source(self, key: str) -> str | None:
        entry = self._entries.get(key)
        return entry.get("source") if entry else None

    def record(self, key: str, source: str | None, timestamp: float | None = None):
        self._entries[key] = {
            "source": source,
            "timestamp": timestamp if timestamp is not None else time.time(),
        }
        self._dirty = True

    def remove(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self._dirty = True

    def clear(self) -> None:
        self._entries.clear()
        self._dirty = True

    def rebuild(self, sources: dict[str, str | None]) -> int:
        """Replaces the index with the given key -> source mapping."""
        now = time.time()
        previous = self._entries
        self._entries = {
            key: {
                "source": source or previous.get(key, {}).get("source"),
                "timestamp": previous.get(key, {}).get("timestamp", now),
            }
            for key, source in sources.items()
        }
        self._dirty = True
        log.debug(f"Metadata index rebuilt with {len(self._entries)} entries.")
        return len(self._entries)

    def prune(self, max_age_seconds: float) -> list[str]:
        """Drops entries older than max_age_seconds and returns their keys."""
        cutoff = time.time() - max_age_seconds
        stale = [
            key
            for key, entry in self._entries.items()
            if entry.get("timestamp", 0) < cutoff
        ]
        for key in stale:
            del self._entries[key]
        if stale:
            self._dirty = True
            log.debug(f"Metadata index: pruned {len(stale)} stale entries.")
        return stale
