"""Tests for the tiered cache."""

import asyncio

from sfloader.core.decoder import decode_payload
from sfloader.exceptions import CacheTierError
from sfloader.storage.metadata_index import MetadataIndex
from sfloader.storage.tiered_cache import TieredCache
from sfloader.storage.tiers import MemoryTier

from .conftest import preset_bytes


class BrokenTier:
    """A persistent tier whose every operation fails."""

    name = "broken"
    available = True

    async def get(self, key):
        raise CacheTierError("disk on fire")

    async def put(self, key, data, source=None):
        raise OSError("read-only filesystem")

    async def delete(self, key):
        raise CacheTierError("disk on fire")

    async def clear(self):
        raise CacheTierError("disk on fire")

    async def sources(self):
        raise CacheTierError("disk on fire")

    async def stats(self):
        raise CacheTierError("disk on fire")


class TestLookup:
    """Test top-down lookups and promotion."""

    async def test_miss(self, tiered_cache):
        assert await tiered_cache.locate("piano") is None

    async def test_lower_hit_is_promoted(self, tiered_cache, file_tier, legacy_tier):
        """A hit in the legacy store back-fills the file store and memory."""
        data = preset_bytes("piano")
        await legacy_tier.put("piano", data, "https://m.example/p.json")

        payload, tier_name = await tiered_cache.locate("piano")

        assert tier_name == legacy_tier.name
        assert payload.data == data
        assert "piano" in tiered_cache.memory
        assert await file_tier.get("piano") == data

        _, tier_name = await tiered_cache.locate("piano")
        assert tier_name == "memory"

    async def test_undecodable_entry_is_dropped(self, tiered_cache, file_tier):
        await file_tier.put("piano", b"garbage")

        assert await tiered_cache.lookup("piano") is None
        assert await file_tier.get("piano") is None

    async def test_failing_tier_is_skipped(self, legacy_tier, index):
        cache = TieredCache(MemoryTier(), [BrokenTier(), legacy_tier], index)
        await legacy_tier.put("piano", preset_bytes("piano"))

        payload, tier_name = await cache.locate("piano")

        assert payload.key == "piano"
        assert tier_name == legacy_tier.name


class TestWrites:
    """Test write-through, eviction and index maintenance."""

    async def test_write_through_reaches_every_tier(
        self, tiered_cache, file_tier, legacy_tier, index
    ):
        payload = decode_payload("piano", preset_bytes(), "https://m.example/p.json")

        written = await tiered_cache.write_through("piano", payload)

        assert written == ["memory", file_tier.name, legacy_tier.name]
        assert await legacy_tier.get("piano") == payload.data
        assert index.source("piano") == "https://m.example/p.json"

    async def test_index_is_saved_after_the_burst(self, tiered_cache, index):
        for key in ("piano", "organ", "strings"):
            await tiered_cache.write_through(key, decode_payload(key, preset_bytes(key)))

        await asyncio.sleep(0.05)

        assert index.index_path.exists()
        assert not index.dirty
        assert len(MetadataIndex(index.index_path.parent)) == 3

    async def test_write_skips_failing_tier(self, legacy_tier, index):
        cache = TieredCache(MemoryTier(), [BrokenTier(), legacy_tier], index)
        payload = decode_payload("piano", preset_bytes())

        written = await cache.write_through("piano", payload)

        assert written == ["memory", legacy_tier.name]

    async def test_evict(self, tiered_cache, file_tier, legacy_tier, index):
        payload = decode_payload("piano", preset_bytes())
        await tiered_cache.write_through("piano", payload)

        await tiered_cache.evict("piano")

        assert "piano" not in tiered_cache.memory
        assert await file_tier.get("piano") is None
        assert await legacy_tier.get("piano") is None
        assert "piano" not in index

    async def test_rebuild_index(self, tiered_cache, file_tier, legacy_tier, index):
        await file_tier.put("piano", preset_bytes(), "https://a.example/p.json")
        await legacy_tier.put("organ", preset_bytes(), "https://b.example/o.json")

        assert await tiered_cache.rebuild_index() == 2
        assert index.source("organ") == "https://b.example/o.json"

    async def test_stats_report_tier_errors(self, legacy_tier):
        cache = TieredCache(MemoryTier(), [BrokenTier(), legacy_tier])
        stats = await cache.stats()
        assert stats["broken"]["error"] == "disk on fire"
        assert stats[legacy_tier.name]["count"] == 0
