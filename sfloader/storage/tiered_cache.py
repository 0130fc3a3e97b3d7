"""
An ordered stack of cache tiers: in-process memory, the large-capacity file
store and the legacy SQLite store.

Lookups walk the tiers top-down and promote a hit into every faster tier.
Writes go to every tier; a tier that fails is logged and skipped so the others
keep serving the key.
"""

import logging
import sqlite3
from collections.abc import Callable, Sequence
from contextlib import suppress

from sfloader.core.decoder import decode_payload
from sfloader.exceptions import CacheTierError, DecodeError
from sfloader.models.descriptor import Payload

from .metadata_index import MetadataIndex
from .tiers import MemoryTier, PersistentTier

log = logging.getLogger(__name__)

TIER_ERRORS = (CacheTierError, OSError, sqlite3.Error)


class TieredCache:
    """Memory tier on top of an ordered list of persistent tiers."""

    def __init__(
        self,
        memory: MemoryTier,
        persistent_tiers: Sequence[PersistentTier],
        index: MetadataIndex | None = None,
        decoder: Callable[[str, bytes, str | None], Payload] = decode_payload,
    ):
        self.memory = memory
        self.persistent_tiers = list(persistent_tiers)
        self.index = index
        self._decode = decoder

    @property
    def tier_names(self) -> list[str]:
        return [self.memory.name] + [tier.name for tier in self.persistent_tiers]

    async def lookup(self, key: str) -> Payload | None:
        """Returns the cached payload for a key, or None on a miss."""
        hit = await self.locate(key)
        return hit[0] if hit else None

    async def locate(self, key: str) -> tuple[Payload, str] | None:
        """
        Looks a key up top-down and returns (payload, tier_name) on a hit.

        A persistent hit is back-filled into the memory tier and every
        persistent tier above the one that hit.
        """
        payload = self.memory.get(key)
        if payload is not None:
            return payload, self.memory.name

        for depth, tier in enumerate(self.persistent_tiers):
            if not tier.available:
                continue
            try:
                data = await tier.get(key)
            except TIER_ERRORS as e:
                log.warning(f"Lookup of '{key}' in {tier.name} failed: {e}")
                continue
            if data is None:
                continue

            source = self.index.source(key) if self.index else None
            try:
                payload = self._decode(key, data, source)
            except DecodeError as e:
                log.warning(
                    f"[yellow]Dropping undecodable '{key}' from {tier.name}: "
                    f"{e.reason}[/yellow]"
                )
                with suppress(*TIER_ERRORS):
                    await tier.delete(key)
                continue

            self.memory.put(key, payload)
            for upper in self.persistent_tiers[:depth]:
                await self._safe_put(upper, key, payload)
            log.debug(f"Cache hit for '{key}' in {tier.name}, promoted upwards.")
            return payload, tier.name

        return None

    async def _safe_put(self, tier: PersistentTier, key: str, payload: Payload) -> bool:
        if not tier.available:
            return False
        try:
            await tier.put(key, payload.data, payload.source)
            return True
        except TIER_ERRORS as e:
            log.warning(f"Write of '{key}' to {tier.name} failed, skipping: {e}")
            return False

    async def write_through(self, key: str, payload: Payload) -> list[str]:
        """Writes a payload to every tier and returns the names that accepted it."""
        self.memory.put(key, payload)
        written = [self.memory.name]
        for tier in self.persistent_tiers:
            if await self._safe_put(tier, key, payload):
                written.append(tier.name)
        if self.index is not None:
            self.index.record(key, payload.source)
            self.index.schedule_flush()
        return written

    async def evict(self, key: str) -> None:
        """Removes a key from every tier and from the index."""
        self.memory.delete(key)
        for tier in self.persistent_tiers:
            if not tier.available:
                continue
            try:
                await tier.delete(key)
            except TIER_ERRORS as e:
                log.warning(f"Eviction of '{key}' from {tier.name} failed: {e}")
        if self.index is not None:
            self.index.remove(key)
            self.index.schedule_flush()

    async def clear(self) -> None:
        self.memory.clear()
        for tier in self.persistent_tiers:
            try:
                await tier.clear()
            except TIER_ERRORS as e:
                log.error(f"Failed to clear {tier.name}: {e}")
        if self.index is not None:
            self.index.clear()
            await self.index.flush()

    async def rebuild_index(self) -> int:
        """Reconstructs the metadata index from the persistent tiers' contents."""
        if self.index is None:
            return 0
        sources: dict[str, str | None] = {}
        for tier in reversed(self.persistent_tiers):
            try:
                sources.update(await tier.sources())
            except TIER_ERRORS as e:
                log.warning(f"Could not list {tier.name} while rebuilding index: {e}")
        for key in self.memory.keys():
            sources.setdefault(key, None)
        count = self.index.rebuild(sources)
        await self.index.flush()
        return count

    async def stats(self) -> dict[str, dict]:
        result = {self.memory.name: self.memory.stats()}
        for tier in self.persistent_tiers:
            try:
                result[tier.name] = await tier.stats()
            except TIER_ERRORS as e:
                result[tier.name] = {"count": 0, "size": 0, "error": str(e)}
        return result
