"""
Cache tier interfaces and the in-process memory tier.
"""

import logging
from typing import Protocol

from sfloader.models.descriptor import Payload
from sfloader.models.entry import CacheEntry

log = logging.getLogger(__name__)


class PersistentTier(Protocol):
    """Port for a byte-oriented persistent cache tier."""

    name: str
    available: bool

    async def get(self, key: str) -> bytes | None:
        """Return the stored bytes for a key, or None on a miss."""
        ...

    async def put(self, key: str, data: bytes, source: str | None = None) -> None:
        """Store bytes under a key, replacing any previous value."""
        ...

    async def delete(self, key: str) -> bool:
        """Remove a key. Returns True if something was removed."""
        ...

    async def clear(self) -> None:
        """Remove every entry of the tier."""
        ...

    async def sources(self) -> dict[str, str | None]:
        """Map every stored key to the source URL it was fetched from, if known."""
        ...

    async def stats(self) -> dict:
        """Return at least 'count' and 'size' for the tier."""
        ...


class MemoryTier:
    """
    Volatile in-process tier holding decoded payloads.

    Lookups are plain dictionary operations and never touch persistent I/O.
    """

    name = "memory"
    available = True

    def __init__(self):
        self._payloads: dict[str, Payload] = {}
        self._entries: dict[str, CacheEntry] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._payloads

    def __len__(self) -> int:
        return len(self._payloads)

    def get(self, key: str) -> Payload | None:
        """Returns the payload and records the access, or None on a miss."""
        payload = self._payloads.get(key)
        if payload is not None:
            self._entries[key].touch()
        return payload

    def put(self, key: str, payload: Payload) -> None:
        self._payloads[key] = payload
        existing = self._entries.get(key)
        if existing is None:
            self._entries[key] = CacheEntry(key=key, size_bytes=payload.size)
        else:
            existing.size_bytes = payload.size

    def entry(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    def delete(self, key: str) -> bool:
        self._entries.pop(key, None)
        return self._payloads.pop(key, None) is not None

    def clear(self) -> None:
        self._payloads.clear()
        self._entries.clear()

    def keys(self) -> list[str]:
        return list(self._payloads)

    def stats(self) -> dict:
        return {
            "count": len(self._payloads),
            "size": sum(entry.size_bytes for entry in self._entries.values()),
        }
