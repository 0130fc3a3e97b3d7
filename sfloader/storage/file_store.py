"""
A large-capacity, file-based payload store.

Each payload is written as a binary file named after the hash of its key, next
to a small JSON sidecar holding the key and its provenance. Files are written
to a temporary name first and renamed into place, so a crash never leaves a
half-written payload behind.
"""

import asyncio
import hashlib
import json
import logging
import os
import time
from pathlib import Path

import aiofiles

from sfloader.exceptions import CacheTierError

log = logging.getLogger(__name__)


class FileStoreTier:
    """Persistent payload store on the local filesystem with a size ceiling."""

    name = "file-store"

    def __init__(self, cache_dir_path: Path, max_bytes: int = 2 * 1024**3):
        """
        Initializes the store.

        Args:
            cache_dir_path: Root cache directory; payloads go into 'soundfonts/'.
            max_bytes: Size ceiling. The oldest files are removed beyond it.
        """
        self.store_dir = cache_dir_path / "soundfonts"
        self.max_bytes = max_bytes
        self.available = True
        try:
            self.store_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.warning(
                f"[yellow]Large-capacity store unavailable at "
                f"'{self.store_dir}': {e}[/yellow]"
            )
            self.available = False

    def _paths(self, key: str) -> tuple[Path, Path]:
        """Generates safe data and metadata filenames for a given key."""
        hashed_key = hashlib.md5(key.encode("utf-8")).hexdigest()  # noqa: S324
        return (
            self.store_dir / f"{hashed_key}.bin",
            self.store_dir / f"{hashed_key}.json",
        )

    def _require_available(self) -> None:
        if not self.available:
            raise CacheTierError(f"Tier '{self.name}' is not available.")

    async def get(self, key: str) -> bytes | None:
        self._require_available()
        data_path, _ = self._paths(key)
        try:
            async with aiofiles.open(data_path, "rb") as f:
                data = await f.read()
        except FileNotFoundError:
            return None
        # Touch the file so size-based cleanup treats it as recently used
        await asyncio.to_thread(os.utime, data_path)
        return data

    async def put(self, key: str, data: bytes, source: str | None = None) -> None:
        self._require_available()
        data_path, meta_path = self._paths(key)
        tmp_path = data_path.with_suffix(".tmp")
        meta = {
            "key": key,
            "source": source,
            "size": len(data),
            "timestamp": time.time(),
        }
        async with aiofiles.open(tmp_path, "wb") as f:
            await f.write(data)
        await asyncio.to_thread(os.replace, tmp_path, data_path)
        async with aiofiles.open(meta_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(meta))

        if self.max_bytes:
            await asyncio.to_thread(self._enforce_limit, data_path)

    async def delete(self, key: str) -> bool:
        if not self.available:
            return False
        return await asyncio.to_thread(self._delete_sync, key)

    def _delete_sync(self, key: str) -> bool:
        removed = False
        for path in self._paths(key):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                pass
        return removed

    def _enforce_limit(self, keep: Path) -> None:
        """Removes the least recently used files until the store fits its ceiling."""
        files = []
        total = 0
        for data_file in self.store_dir.glob("*.bin"):
            try:
                stat = data_file.stat()
            except OSError:
                continue
            files.append((stat.st_mtime, stat.st_size, data_file))
            total += stat.st_size

        if total <= self.max_bytes:
            return

        files.sort()
        removed = 0
        for _, size, data_file in files:
            if total <= self.max_bytes:
                break
            if data_file == keep:
                continue
            try:
                data_file.unlink()
                data_file.with_suffix(".json").unlink(missing_ok=True)
            except OSError as e:
                log.warning(f"Failed to remove cached file {data_file.name}: {e}")
                continue
            total -= size
            removed += 1
        if removed:
            log.debug(f"File store cleanup: removed {removed} least recent payloads.")

    async def clear(self) -> None:
        if not self.available:
            return
        await asyncio.to_thread(self._clear_sync)

    def _clear_sync(self) -> None:
        log.info("Clearing large-capacity payload store...")
        for pattern in ("*.bin", "*.json", "*.tmp"):
            for path in self.store_dir.glob(pattern):
                path.unlink(missing_ok=True)

    async def sources(self) -> dict[str, str | None]:
        if not self.available:
            return {}
        return await asyncio.to_thread(self._sources_sync)

    def _sources_sync(self) -> dict[str, str | None]:
        result = {}
        for meta_path in self.store_dir.glob("*.json"):
            try:
                with open(meta_path, encoding="utf-8") as f:
                    meta = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                log.debug(f"Skipping unreadable metadata {meta_path.name}: {e}")
                continue
            if meta_path.with_suffix(".bin").is_file() and meta.get("key"):
                result[meta["key"]] = meta.get("source")
        return result

    async def stats(self) -> dict:
        if not self.available:
            return {"count": 0, "size": 0, "available": False}
        return await asyncio.to_thread(self._stats_sync)

    def _stats_sync(self) -> dict:
        sizes = [path.stat().st_size for path in self.store_dir.glob("*.bin")]
        return {"count": len(sizes), "size": sum(sizes), "available": True}
